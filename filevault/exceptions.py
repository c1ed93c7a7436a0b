# exceptions.py


class PermanentError(Exception):
    """An error that will not be fixed by a retry (e.g., an invalid file name)."""
    pass


class TransientError(Exception):
    """A temporary error (e.g., a network failure) that might resolve on a retry."""
    pass


class ValidationError(PermanentError):
    """A file or folder record has the wrong shape."""
    pass


class InvalidNameError(ValidationError):
    """A file or folder name is empty, reserved or otherwise unusable."""
    pass


class QuotaExceededError(PermanentError):
    """Local quota is exhausted and no personal drive is authorized."""
    pass


class NotFoundError(PermanentError):
    """A row is absent or owned by another user. Both look the same to callers."""
    pass


class BackendNotConfiguredError(PermanentError):
    """A storage backend was asked to work without its credentials."""
    pass


class UploadError(TransientError):
    """The physical write to a storage backend failed."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class StorageDeleteError(TransientError):
    """The physical delete failed. The metadata row is left untouched."""
    pass


class MetadataStoreError(TransientError):
    """The metadata store rejected or failed a read or write."""
    pass


class FinalizationError(PermanentError):
    """
    The object was uploaded but its metadata row could not be saved.
    Raised after the uploaded object has been cleaned up.
    """

    def __init__(self, message: str, cause: Exception, storage_type=None, storage_path=None):
        super().__init__(message)
        self.cause = cause
        self.storage_type = storage_type
        self.storage_path = storage_path


class OrphanedObjectError(FinalizationError):
    """
    Finalization failed and the compensating delete failed too, so the object
    is left at its backend with no metadata row. Needs out-of-band cleanup.
    """

    def __init__(self, message: str, cause: Exception, cleanup_error: Exception,
                 storage_type=None, storage_path=None):
        super().__init__(message, cause, storage_type=storage_type, storage_path=storage_path)
        self.cleanup_error = cleanup_error


class InconsistentStateError(PermanentError):
    """The physical object is gone but its metadata row could not be removed."""
    pass
