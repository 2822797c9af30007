"""Exception types raised by Render Watch."""


class RenderWatchError(Exception):
    """Base class for errors reported back to whoever issued a command."""


class ValidationError(RenderWatchError):
    """A command carried a bad argument; state was left unchanged."""


class WatchTargetError(RenderWatchError):
    """The requested watch directory could not be prepared."""

    CANNOT_CREATE = "directory could not be created"
    PERMISSION_DENIED = "permission denied"

    def __init__(self, path: str, reason: str):
        super().__init__(f"{reason}: {path}")
        self.path = path
        self.reason = reason
