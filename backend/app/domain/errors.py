class PipelineError(RuntimeError):
    error_code: str = "pipeline_error"

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code


class VerificationError(PipelineError):
    error_code = "verification_failed"


class NormalizationError(PipelineError):
    error_code = "normalization_failed"


class ApplicationError(PipelineError):
    error_code = "application_failed"


class InvalidStateTransition(PipelineError):
    error_code = "invalid_state_transition"


class UnknownProviderError(PipelineError):
    error_code = "unknown_provider"


class DeliveryError(PipelineError):
    error_code = "delivery_failed"

    def __init__(self, message: str, *, status_code: int | None = None, response_body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
