class BookmarkError(Exception):
    """Base class for every failure raised while bookmarking or restoring."""


class EncodingError(BookmarkError, ValueError):
    """A value has no serialization mapping, or a token cannot be decoded."""


class StorageError(BookmarkError, OSError):
    """The bookmark store could not be written or read in time."""


class NotFoundError(BookmarkError, LookupError):
    """No stored record exists for an identifier."""


class BookmarkBusyError(BookmarkError, RuntimeError):
    """Another bookmark or restore operation is still running for this session."""
