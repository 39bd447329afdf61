from __future__ import annotations


class ForestError(Exception):
    """Base class for errors raised while training, persisting or testing a forest."""


class ConfigurationError(ForestError, ValueError):
    pass


class DataError(ForestError, ValueError):
    pass


class ForestIOError(ForestError, OSError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message if path is None else f"{path}: {message}")
        self.path = path


class FormatError(ForestError, ValueError):
    def __init__(self, message: str, path: str | None = None, record: int | None = None) -> None:
        location = path or "<tree>"
        if record is not None:
            location = f"{location}:{record}"
        super().__init__(f"{location}: {message}")
        self.path = path
        self.record = record
