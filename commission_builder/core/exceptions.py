"""Exception hierarchy for the commission structure builder."""

from typing import Optional


class AppError(Exception):
    """Base exception for application errors."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error


class ValidationError(AppError):
    """Raised when a record fails validation.

    Record-scoped: inside the assembler it is collected and the offending
    records are skipped. It is only fatal when it escapes a pipeline step.
    """
    def __init__(
        self,
        message: str,
        certificate_id: Optional[str] = None,
        group_id: Optional[str] = None,
        split_sequence: Optional[int] = None,
        original_error: Exception = None,
    ):
        super().__init__(message, original_error)
        self.certificate_id = certificate_id
        self.group_id = group_id
        self.split_sequence = split_sequence


class IntegrityError(AppError):
    """Raised on structural corruption (hash collision, overlapping proposals).

    Always run-fatal.
    """
    def __init__(self, message: str, digest: Optional[str] = None, original_error: Exception = None):
        super().__init__(message, original_error)
        self.digest = digest


class TransientInfrastructureError(AppError):
    """Raised for connection loss, timeouts and deadlocks. Retryable."""
    pass


class PipelineStateError(AppError):
    """Raised on an illegal run/step transition or a non-resumable run."""
    pass


class DatabaseError(AppError):
    """Raised when a database operation fails."""
    pass


class ConfigurationError(AppError):
    """Raised when configuration is invalid or missing."""
    pass
