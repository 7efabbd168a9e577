"""
CryWatch - Exception Hierarchy

Structured exceptions for consistent error handling across the analysis core.
All exceptions carry an error code so callers can report them uniformly.
"""

from typing import Optional


class CryWatchError(Exception):
    """Base exception for all CryWatch errors."""

    code: str = "UNKNOWN_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(CryWatchError):
    """Input validation error."""
    code = "VALIDATION_ERROR"


class InvalidAudioError(ValidationError):
    """Audio buffer or sample rate is structurally invalid."""
    code = "INVALID_AUDIO"


# =============================================================================
# Storage Errors
# =============================================================================

class StorageError(CryWatchError):
    """Error in the persistence layer."""
    code = "STORAGE_ERROR"


class StorageQuotaExceededError(StorageError):
    """Storage backend refused a write because its capacity is exhausted."""
    code = "STORAGE_QUOTA_EXCEEDED"


class AudioDecodeError(StorageError):
    """Stored audio payload could not be decoded."""
    code = "AUDIO_DECODE_ERROR"


class HistoryCorruptedError(StorageError):
    """Persisted detection history could not be parsed."""
    code = "HISTORY_CORRUPTED"


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(CryWatchError):
    """Configuration error."""
    code = "CONFIGURATION_ERROR"
