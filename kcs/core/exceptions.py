"""
Error taxonomy shared by the intake endpoint and the pipeline stages.
"""


class IntakeError(Exception):
    """Base class for errors reported synchronously to the submitting partner."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        body = {"code": self.code}
        if self.message:
            body["message"] = self.message
        return body


class ValidationError(IntakeError):
    status_code = 400
    code = "invalid_request"

    def __init__(self, message: str = "Invalid request", field_errors: dict | None = None):
        super().__init__(message)
        self.field_errors = field_errors or {}

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.field_errors:
            body["field_errors"] = self.field_errors
        return body


class UnauthorizedError(IntakeError):
    status_code = 401
    code = "unauthorized"


class ConflictError(IntakeError):
    status_code = 409
    code = "conflict"


class PipelineIntegrityError(Exception):
    """
    A stage found upstream state it cannot work with.

    Not retried: it means an earlier stage did not persist what it should have.
    """


class ProviderError(Exception):
    """A provider call failed and will not succeed on retry."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class TransientProviderError(ProviderError):
    """Rate limits, timeouts and 5xx responses. Safe to retry."""
