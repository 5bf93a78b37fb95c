"""Exception hierarchy shared by the queue, remote client and proxy."""


class NanoStudioError(Exception):
    """Base class for all nano-studio errors."""


class ConfigError(NanoStudioError):
    """Raised when configuration cannot be loaded or validated."""


class RemoteJobError(NanoStudioError):
    """Raised when a remote job call fails (transport error or non-2xx answer).

    Attributes:
        status_code: HTTP status returned by the proxy, if any
    """

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteResultError(RemoteJobError):
    """Raised when a remote answer arrives but has an unexpected shape."""
