# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - ERROR TAXONOMY
# =============================================================================
"""
Error Taxonomy

Shared exception hierarchy for the orchestration core. Client modules
define their own, more specific exceptions on top of these classes so
callers can catch by concern (storage, external service, parsing) without
knowing which client raised.

Hierarchy:
    ADLError
    ├── ConfigurationError      missing/invalid setting, fatal at startup
    ├── ExternalServiceError    non-2xx from the source host or task agent
    ├── StaleReferenceError     404 on a previously valid session reference
    ├── ParseError              malformed LLM output
    │   └── AuditParseError     no usable signal in an audit answer
    ├── StagingError            repository clone failed
    ├── StorageError            state persistence failed
    │   └── StateConflictError  optimistic write lost a race
    ├── InvocationError         LLM subprocess failed or printed garbage
    └── ModelError              LLM tool reported a structured error
        └── QuotaExceededError  quota / capacity / 429 condition
"""

from typing import Optional


class ADLError(Exception):
    """Base exception for the autonomous development loop."""
    pass


class ConfigurationError(ADLError):
    """Raised when a required setting is missing or invalid."""

    def __init__(self, message: str, missing: Optional[list] = None):
        super().__init__(message)
        self.missing = missing or []


class ExternalServiceError(ADLError):
    """Raised when an external service answers with an error status."""

    def __init__(self, message: str, service: str = "external", status_code: int = None):
        super().__init__(message)
        self.service = service
        self.status_code = status_code

    def __str__(self):
        if self.status_code:
            return f"[{self.status_code}] {super().__str__()}"
        return super().__str__()


class StaleReferenceError(ADLError):
    """Raised when a stored reference points to something that is gone."""
    pass


class ParseError(ADLError):
    """Raised when LLM output cannot be interpreted."""
    pass


class AuditParseError(ParseError):
    """Raised when an audit answer carries neither JSON nor textual signal."""
    pass


class StagingError(ADLError):
    """Raised when a repository working copy cannot be staged."""
    pass


class StorageError(ADLError):
    """Raised when the lifecycle state cannot be read or written."""
    pass


class StateConflictError(StorageError):
    """Raised when a conditional write finds a newer version in storage."""

    def __init__(self, message: str, expected_version: int = None, actual_version: int = None):
        super().__init__(message)
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvocationError(ADLError):
    """Raised when the LLM subprocess exits non-zero or prints unparseable output."""

    def __init__(self, message: str, exit_code: int = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class ModelError(ADLError):
    """Raised when the LLM tool returns a structured error payload."""

    def __init__(self, message: str, error_type: str = "", code: int = None):
        super().__init__(message)
        self.error_type = error_type
        self.code = code


class QuotaExceededError(ModelError):
    """Raised when the LLM tool reports a quota or capacity condition."""
    pass


__all__ = [
    "ADLError",
    "ConfigurationError",
    "ExternalServiceError",
    "StaleReferenceError",
    "ParseError",
    "AuditParseError",
    "StagingError",
    "StorageError",
    "StateConflictError",
    "InvocationError",
    "ModelError",
    "QuotaExceededError",
]
