"""
Error taxonomy for the license service.

Source reads never raise; these exceptions come from the stores and the
sync writer and are translated into HTTP envelopes by the API layer.
"""
from typing import Optional


class LicenseError(Exception):
    """Base exception carrying a machine-readable ``code``."""

    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailedError(LicenseError):
    """Raised when a non-empty batch contains no valid license record."""

    code = "validation_failed"

    def __init__(self, message: str = "No valid license records in submission", rejected: int = 0):
        super().__init__(message)
        self.rejected = rejected


class ConflictError(LicenseError):
    """Raised when the backing store rejects a write because its version moved."""

    code = "conflict"

    def __init__(self, message: str = "The license file was changed concurrently, resubmit to retry"):
        super().__init__(message)


class RateLimitedError(LicenseError):
    """Raised when an upstream store throttles us."""

    code = "rate_limited"

    def __init__(self, message: str = "Upstream rate limit exceeded", retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RemoteStoreError(LicenseError):
    """Raised on any other unsuccessful response from a store."""

    code = "remote_store_error"

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


class StoreNotConfiguredError(LicenseError):
    """Raised when a write is requested against a store without credentials."""

    code = "not_configured"
