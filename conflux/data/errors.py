"""
CONFLUX™ — Data Provider Error Taxonomy
"""
from typing import Any, List, Optional


class DataProviderError(Exception):
    """Vendor network or API failure."""

    def __init__(
        self,
        message: str,
        code: str,
        vendor: str,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.vendor = vendor
        self.status_code = status_code
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.status_code is not None and (self.status_code == 429 or self.status_code >= 500)

    def __str__(self) -> str:
        status = f" HTTP {self.status_code}" if self.status_code is not None else ""
        return f"[{self.vendor}:{self.code}{status}] {self.message}"


class ValidationError(Exception):
    """A vendor payload that cannot be turned into a usable entity."""

    def __init__(self, message: str, field: str, value: Any = None, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.value = value
        self.errors = list(errors or [])

    def __str__(self) -> str:
        detail = f": {'; '.join(self.errors)}" if self.errors else ""
        return f"{self.message} ({self.field}={self.value!r}){detail}"


class AllProvidersFailedError(DataProviderError):
    """Both the primary and the secondary vendor failed for one operation."""

    def __init__(self, operation: str, primary_error: BaseException, secondary_error: BaseException):
        message = (
            f"All providers failed for {operation}: "
            f"primary: {primary_error}; secondary: {secondary_error}"
        )
        super().__init__(message, "ALL_PROVIDERS_FAILED", "hybrid", cause=secondary_error)
        self.operation = operation
        self.primary_error = primary_error
        self.secondary_error = secondary_error
