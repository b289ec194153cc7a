"""Error kinds raised by the shop services and mapped to HTTP responses."""


class ApiError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message=None, status_code=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"message": self.message}


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Unauthorized"


class InvalidToken(ApiError):
    status_code = 403
    default_message = "Invalid token"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(ApiError):
    status_code = 404
    default_message = "Not found"


class InvalidIdentifierFormat(ApiError):
    status_code = 400
    default_message = "Invalid identifier"


class ValidationError(ApiError):
    status_code = 400
    default_message = "Invalid request"


class AmountMismatch(ApiError):
    status_code = 400
    default_message = "Amount mismatch"


class AlreadyPaid(ApiError):
    status_code = 409
    default_message = "Order already paid"


class PaymentProcessorError(ApiError):
    status_code = 502
    default_message = "Payment processor error"


class ServerError(ApiError):
    status_code = 500
    default_message = "Internal server error"
