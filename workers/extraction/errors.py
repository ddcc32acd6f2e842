"""Exception classes for the lab report pipeline."""


class LabPipelineError(Exception):
    """Base exception for all pipeline errors."""

    pass


class ConfigurationError(LabPipelineError):
    """Raised when a required setting (API key, standards file) is missing."""

    pass


class AuthorizationError(LabPipelineError):
    """Raised when a caller touches a document or job it does not own."""

    pass


class DocumentValidationError(LabPipelineError):
    """Raised when a storage path or the document bytes cannot be processed."""

    pass


class ExtractionError(LabPipelineError):
    """Raised when the extraction capability fails for a chunk."""

    def __init__(self, message: str, page_number: int = None):
        super().__init__(message)
        self.page_number = page_number


class ExtractionTimeoutError(ExtractionError):
    """Raised when the extraction capability exceeds its time budget."""

    pass


class JobNotFoundError(LabPipelineError):
    pass


class JobConflictError(LabPipelineError):
    """Raised when a run is requested for a job that is already processing."""

    pass


class InvalidTransitionError(LabPipelineError):
    """Raised on an update that the job's current status does not allow."""

    pass


class StandardsError(LabPipelineError):
    """Raised when the standards table cannot be loaded or matching blows up."""

    pass
