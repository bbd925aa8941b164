"""
ark_agent package

This package contains the modules of the local Ark agent:
- __main__.py: entry point (ark-agent)
- lockfile.py: single-instance PID lock
- launcher.py: starting the agent as a detached background process
- storage.py: embedded store for config, credentials and cache entries
- gate.py / audit.py: policy gate client and audit emitter
- broker.py / api.py: credential broker and its HTTP API
- provider.py: thin AWS wrapper
- training.py: the backend's training gate rule
"""

import os

__version__ = "0.1.0"
__commit__ = os.environ.get("ARK_COMMIT_SHA", "unknown")
__build_date__ = os.environ.get("ARK_BUILD_DATE", "unknown")
