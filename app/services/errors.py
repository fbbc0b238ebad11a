from __future__ import annotations


class LogbookError(Exception):
    """Base class for checklist engine failures."""


class StoreUnavailableError(LogbookError):
    """The remote document store could not be read or written. Always retryable."""


class PhotoUploadError(LogbookError):
    pass


class ContentAuditError(LogbookError):
    pass


class CameraAccessError(LogbookError):
    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class InvalidTransitionError(LogbookError, ValueError):
    pass


class ReadOnlySubmissionError(LogbookError, PermissionError):
    pass


class FinalizeBlockedError(LogbookError):
    def __init__(self, message: str, *, task_ids: list[str]) -> None:
        super().__init__(message)
        self.task_ids = task_ids


class FinalizeConfirmationRequired(LogbookError):
    def __init__(self, message: str, *, task_ids: list[str]) -> None:
        super().__init__(message)
        self.task_ids = task_ids


class PhotoRequiredError(LogbookError):
    def __init__(self, message: str, *, task_id: str, missing: int) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.missing = missing
