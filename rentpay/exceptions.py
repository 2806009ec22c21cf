"""
Error taxonomy for the payment-link pipeline.

Every error carries the HTTP status it is reported with; the handlers in
``rentpay.main`` turn them into ``{"error": ..., "details": ...}`` bodies.

    RentpayError
    ├── ValidationError     400  malformed caller input
    ├── Unauthorized        401  missing or wrong credential
    ├── NotFoundError       404  unknown attempt / no staged renewal
    ├── ConflictError       409  account not available for checkout
    ├── ConfigurationError  500  missing secret or credential
    └── UpstreamError       4xx/5xx  Bold rejected the call or answered garbage
"""


class RentpayError(Exception):
    status_code = 500

    def __init__(self, message, details=None, status_code=None):
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self):
        body = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(RentpayError):
    status_code = 400


class Unauthorized(RentpayError):
    status_code = 401


class NotFoundError(RentpayError):
    status_code = 404


class ConflictError(RentpayError):
    status_code = 409


class ConfigurationError(RentpayError):
    status_code = 500


class UpstreamError(RentpayError):
    """Bold answered with a non-success status or an unusable body."""

    status_code = 502
