"""
Exception types raised by the sync pipeline.
"""


class WadashError(Exception):
    """Base class for service errors."""


class UpstreamError(WadashError):
    """A request to the messaging API failed."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class SyncError(WadashError):
    """
    A sync finished early because the upstream fetch failed.

    Pages merged before the failure stay in the cache; ``added`` reports how
    many messages made it in.
    """

    def __init__(self, message: str, mode: str, added: int = 0):
        super().__init__(message)
        self.mode = mode
        self.added = added
