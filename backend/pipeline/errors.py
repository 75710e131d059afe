class PipelineError(Exception):
    """Base class for failures surfaced by the upload pipeline.

    Carries everything the HTTP layer needs to build the error envelope:
    the stage that failed, the status class, and a coarse category the UI
    uses to pick its message ("input", "dependency" or "internal").
    """

    status_code = 500
    category = "internal"
    error_type = "InternalError"

    def __init__(self, message: str, stage: str | None = None, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.cause = cause

    def to_envelope(self) -> dict:
        payload = {
            "success": False,
            "error": self.message,
            "errorType": self.error_type,
            "category": self.category,
        }
        if self.stage:
            payload["stage"] = self.stage
        return payload


# --- Client input ---


class ValidationError(PipelineError):
    status_code = 400
    category = "input"
    error_type = "ValidationError"


class MissingFile(ValidationError):
    error_type = "MissingFile"


class UnsupportedMediaType(ValidationError):
    error_type = "UnsupportedMediaType"


class PayloadTooLarge(ValidationError):
    error_type = "PayloadTooLarge"


class ImageTooLarge(ValidationError):
    """Raised when the decoded pixel count exceeds the configured ceiling."""

    error_type = "ImageTooLarge"


# --- Preprocessing ---


class PreprocessingError(PipelineError):
    error_type = "PreprocessingError"


class CorruptImage(PreprocessingError):
    status_code = 400
    category = "input"
    error_type = "CorruptImage"


class ImageTransformError(PreprocessingError):
    """Raised when a decodable image fails to resize or re-encode."""


# --- Remote dependency ---


class UpstreamError(PipelineError):
    """A remote model call failed after retries were exhausted."""

    status_code = 502
    category = "dependency"

    def __init__(self, message: str, stage: str | None = None, cause: Exception | None = None):
        super().__init__(message, stage=stage, cause=cause)
        # Expose the underlying classification (RemoteUnavailable,
        # MalformedResponse) rather than the wrapper's own name.
        root = getattr(cause, "cause", None) or cause
        self.error_type = getattr(root, "error_type", self.error_type)


class AnalysisError(UpstreamError):
    error_type = "AnalysisError"


class CostingError(UpstreamError):
    error_type = "CostingError"


class PipelineTimeout(PipelineError):
    status_code = 504
    category = "dependency"
    error_type = "Timeout"
