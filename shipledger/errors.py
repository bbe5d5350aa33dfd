from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class StoreError(Exception):
    """Single failure type raised by every store, mirror and snapshot call."""

    default_code = "STORE_ERROR"
    default_retryable = True

    def __init__(self, message: str, *, code: str | None = None, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.retryable = self.default_retryable if retryable is None else retryable


class StoreUnavailableError(StoreError):
    default_code = "STORE_UNAVAILABLE"
    default_retryable = False


class RecordWriteError(StoreError):
    default_code = "RECORD_WRITE_FAILED"


class StoreQuotaExceededError(StoreError):
    default_code = "STORE_QUOTA_EXCEEDED"
    default_retryable = False


class RemoteMirrorError(StoreError):
    default_code = "REMOTE_MIRROR_FAILED"


class SnapshotFormatError(StoreError):
    default_code = "SNAPSHOT_INVALID"
    default_retryable = False
