from __future__ import annotations


class ConsultError(Exception):
    status_code = 400
    code = "consult_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ConsultError):
    status_code = 400
    code = "validation_error"


class NotFound(ConsultError):
    status_code = 404
    code = "not_found"


class Forbidden(ConsultError):
    status_code = 403
    code = "forbidden"


class ModelUnavailable(ConsultError):
    status_code = 503
    code = "model_unavailable"


class RateLimited(ConsultError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PayloadTooLarge(ConsultError):
    status_code = 413
    code = "payload_too_large"
