"""
Standardised error handling for ArchivedV.
"""


class ErrorCode:
    # Non-retryable
    FEED_NOT_FOUND = "ERR_FEED_NOT_FOUND"
    FEED_HTTP = "ERR_FEED_HTTP"
    FEED_PARSE = "ERR_FEED_PARSE"
    INVALID_URL = "ERR_INVALID_URL"
    INVALID_FLAGS = "ERR_INVALID_FLAGS"
    AUTH_REQUIRED = "ERR_AUTH_REQUIRED"
    CANCELLED = "ERR_CANCELLED"
    MERGE_FAILED = "ERR_MERGE_FAILED"

    # Retryable
    FEED_TRANSIENT = "ERR_FEED_TRANSIENT"
    CAPTURE_LAUNCH = "ERR_CAPTURE_LAUNCH"
    CAPTURE_FAILED = "ERR_CAPTURE_FAILED"
    STUCK_PROCESS = "ERR_STUCK_PROCESS"


RETRYABLE_ERRORS = {
    ErrorCode.FEED_TRANSIENT,
    ErrorCode.CAPTURE_LAUNCH,
    ErrorCode.CAPTURE_FAILED,
    ErrorCode.STUCK_PROCESS,
}


class ArchiverError(Exception):
    """Raised when the orchestrator hits a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class FeedError(ArchiverError):
    """Feed retrieval failure; carries the HTTP status when there was one."""

    def __init__(self, code: str, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(code, message)


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS
