"""Domain errors raised by the service layer.

Each error carries the HTTP status the API answers with; ``main.py`` turns
them into ``{"statusCode": ..., "message": ...}`` bodies.
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Missing or malformed input, or a rule the request breaks."""
    status_code = 400


class AuthorizationError(ServiceError):
    """Missing identity header, wrong role or bad credentials."""
    status_code = 401


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    """A unique field is already taken."""
    status_code = 409


class UpstreamError(ServiceError):
    """An external collaborator (the AI provider or the mail server) failed."""
    status_code = 502
