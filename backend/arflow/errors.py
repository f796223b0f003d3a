"""Domain errors raised by services.

All errors subclass `ValueError` so callers that only know about the
generic "bad input" contract keep working; the HTTP layer maps each
class to its `status_code`.
"""


class ARFlowError(ValueError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ARFlowError):
    status_code = 400


class NotFoundError(ARFlowError):
    status_code = 404


class PermissionDeniedError(ARFlowError):
    status_code = 403


class GatewayError(ARFlowError):
    """An external system (payment gateway, ERP) rejected or failed a call."""
    status_code = 502
