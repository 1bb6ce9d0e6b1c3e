"""
API error taxonomy. Every error response carries {error, code}.
"""


class ApiError(Exception):
    """Operational error with an HTTP status and a stable machine-readable code."""
    status_code = 500
    code = 'INTERNAL_ERROR'

    def __init__(self, message, code=None, status_code=None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'error': self.message, 'code': self.code}


class ConfigurationError(ApiError):
    """Missing or weak secret. Fatal at startup."""
    code = 'CONFIG_ERROR'


class ValidationError(ApiError):
    status_code = 400
    code = 'VALIDATION_ERROR'


class AuthenticationError(ApiError):
    status_code = 401
    code = 'UNAUTHORIZED'


class TokenExpiredError(AuthenticationError):
    code = 'TOKEN_EXPIRED'


class InvalidTokenError(AuthenticationError):
    code = 'INVALID_TOKEN'


class ForbiddenError(ApiError):
    status_code = 403
    code = 'FORBIDDEN'


class NotFoundError(ApiError):
    status_code = 404
    code = 'NOT_FOUND'


class ConflictError(ApiError):
    status_code = 409
    code = 'CONFLICT'


class ExternalServiceError(ApiError):
    """Provisioning panel or payment gateway failure."""
    status_code = 502
    code = 'EXTERNAL_SERVICE_ERROR'
