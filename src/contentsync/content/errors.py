"""Content engine errors."""


class ContentError(Exception):
    """Raised when a request is invalid for the current content state."""


class ServerShutdownError(ContentError):
    """Raised inside a task to stop the worker loop."""
