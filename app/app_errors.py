"""
Domain exceptions raised by the services and translated to the error
envelope by the API layer.
"""


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFoundException(AppError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class ValidationException(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Validation error"


class UnauthorizedException(AppError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Not authenticated"


class ForbiddenException(AppError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Access forbidden"


class BusinessRuleException(AppError):
    status_code = 400
    code = "BUSINESS_RULE_ERROR"
    default_message = "Business rule violated"


class InfrastructureException(AppError):
    status_code = 500
    code = "INFRASTRUCTURE_ERROR"
    default_message = "Infrastructure error"
