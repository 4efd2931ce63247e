"""Domain errors. Each carries a stable code and the HTTP status it maps to."""


class ResolveError(Exception):
    code = "RESOLVE_ERROR"
    http_status = 400

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class NotFoundError(ResolveError):
    """Entity is absent or belongs to another operator. Callers cannot tell which."""

    code = "NOT_FOUND"
    http_status = 404


class AuthorizationError(ResolveError):
    """Caller is not a party to the entity being mutated."""

    code = "NOT_AUTHORIZED"
    http_status = 403


class StateConflictError(ResolveError):
    """Requested transition is illegal from the entity's current status."""

    code = "STATE_CONFLICT"
    http_status = 409


class InvalidStateError(StateConflictError):
    code = "INVALID_STATE"


class DuplicateAgentError(StateConflictError):
    code = "DUPLICATE_AGENT"


class DuplicateDisputeError(StateConflictError):
    code = "DUPLICATE_DISPUTE"


class DuplicateFeedbackError(StateConflictError):
    code = "FEEDBACK_ALREADY_SUBMITTED"


class ExpiredError(ResolveError):
    code = "EXPIRED"
    http_status = 410


class ValidationError(ResolveError):
    code = "VALIDATION_ERROR"
    http_status = 422


class ExternalServiceError(ResolveError):
    """Oracle or credit ledger call failed or timed out."""

    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502


class InsufficientCreditsError(ResolveError):
    code = "INSUFFICIENT_CREDITS"
    http_status = 402
