"""
Error taxonomy shared by services, routes and the batch runner.

Services raise these; admin orchestration and the batch runner turn them into
structured results; routes map ``code`` to an HTTP status.
"""


class ServiceError(ValueError):
    code = "ERROR"
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Malformed input: out-of-range score, missing rejection comments."""
    code = "VALIDATION_ERROR"
    http_status = 400


class ConflictError(ServiceError):
    """Precondition violated: claim race, double submission, wrong status."""
    code = "CONFLICT"
    http_status = 409


class NotFoundError(ServiceError):
    code = "NOT_FOUND"
    http_status = 404


class AuthorizationError(ServiceError):
    """The acting user may not perform this action on this record."""
    code = "FORBIDDEN"
    http_status = 403


class IdempotencySkip(ServiceError):
    """Not a failure: the work was already done (e.g. settlement exists for the period)."""
    code = "ALREADY_EXISTS"
    http_status = 200

    def __init__(self, message: str, existing_id=None):
        super().__init__(message)
        self.existing_id = existing_id
