"""
Error categories raised by the billing layer.

Each error carries the HTTP status the API reports it with, so routes can
simply let them propagate to the registered error handler.
"""


class BillingError(Exception):
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'error': self.message}


class ValidationError(BillingError):
    """Missing or malformed input (no student selected, bad month, ...)"""
    status_code = 400


class ConfigurationError(BillingError):
    """A student's monthly amount cannot be determined"""
    status_code = 400


class RangeError(BillingError):
    """Requested months fall outside the school year"""
    status_code = 400


class NotFoundError(BillingError):
    status_code = 404


class ConflictError(BillingError):
    """Duplicate payment or a transition out of a terminal status"""
    status_code = 409
