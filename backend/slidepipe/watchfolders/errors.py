"""
Watch folder error hierarchy.

WatcherError is the only fatal one: the watcher stops emitting and does not
restart itself. Restart is an operational concern.
"""


class WatchFolderError(Exception):
    """Base exception for watch folder failures."""

    pass


class WatcherError(WatchFolderError):
    """Watched root became unreadable or the observer died. Fatal to the watcher."""

    def __init__(self, root: str, reason: str):
        self.root = root
        self.reason = reason
        super().__init__(f"Watcher stopped for {root}: {reason}")
