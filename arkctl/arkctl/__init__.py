"""
Command-line client for the Ark agent.
"""
