"""
Exception types shared by the Ark agent components.

The HTTP layer maps these onto status codes; see ark_agent.api.
"""


class ArkError(Exception):
    """Base class for all agent errors."""

    pass


class ValidationError(ArkError):
    """Missing or malformed request fields. Reported as a client error."""

    pass


class NotFoundError(ArkError):
    """Unknown profile, config key, cache key or lock owner."""

    pass


class LockError(ArkError):
    """Lock file could not be read, written or released."""

    pass


class AlreadyRunningError(LockError):
    """Another live agent holds the lock for this data directory."""

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"agent already running with PID {pid}")


class LaunchError(ArkError):
    """The agent executable could not be located or spawned."""

    pass


class RemoteUnavailableError(ArkError):
    """The policy or audit service could not be reached or answered garbage."""

    pass


class ProviderError(ArkError):
    """A cloud provider operation failed."""

    def __init__(self, message: str, code: str = ""):
        self.code = code
        self.message = message
        super().__init__(message)


class PersistenceError(ArkError):
    """The embedded store failed to read or write."""

    pass


class TrainingRequiredError(ArkError):
    """The policy gate blocked the action until training is completed."""

    def __init__(self, required_modules, message: str = ""):
        self.required_modules = list(required_modules)
        super().__init__(
            message or "Complete required training modules to perform this operation"
        )
