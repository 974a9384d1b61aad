"""Error taxonomy shared by the services and rendered by the API layer."""


class AppError(Exception):
    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.code = code or self.default_code


class ValidationError(AppError):
    """Malformed or duplicate input."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    """Bad credentials, invalid or expired token, expired OAuth state."""

    status_code = 401
    default_code = "AUTHENTICATION_ERROR"


class ForbiddenError(AppError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code = 404
    default_code = "NOT_FOUND"


class ExternalApiError(AppError):
    """A call to the OAuth provider failed.

    ``status_code`` mirrors the provider's HTTP status when there is one.
    """

    status_code = 500
    default_code = "EXTERNAL_API_ERROR"


class StorageError(AppError):
    """A required write to the database or cache failed."""

    status_code = 500
    default_code = "STORAGE_ERROR"
