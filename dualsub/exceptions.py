"""Custom Exceptions for the DualSub application."""

class DualSubError(Exception):
    """Base class for exceptions in this module."""
    pass

class ConfigurationError(DualSubError):
    """Exception raised for errors in configuration loading or validation."""
    pass

class AudioProcessingError(DualSubError):
    """Exception raised when audio cannot be decoded or sliced."""
    pass

class TranscriptionError(DualSubError):
    """Exception raised for errors during transcription."""
    pass

class TranslationError(DualSubError):
    """Exception raised for errors during translation."""
    pass

class FormattingError(DualSubError):
    """Exception raised for errors during subtitle formatting."""
    pass

class FileSystemError(DualSubError):
    """Exception raised for file system related errors (permissions, not found etc)."""
    pass

class TransientServiceError(DualSubError):
    """Exception raised for rate-limit / overload responses that are worth retrying."""
    pass

class RetryExhaustedError(DualSubError):
    """Exception raised when a transient failure persists after every retry attempt."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts

class ModelOutputError(DualSubError):
    """Exception raised when model output cannot be parsed, even after continuation."""
    pass

class OperationCancelledError(DualSubError):
    """Exception raised when the cancel signal is observed before an external call."""
    pass
