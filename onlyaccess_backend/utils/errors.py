"""
Domain exceptions shared by services and blueprints.

Services raise these; blueprints turn them into the standard
{'success': False, 'message': ..., 'errors': {...}} response.
"""


class PlatformError(Exception):
    status_code = 500
    error_key = 'general'

    def __init__(self, message, errors=None, status_code=None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {self.error_key: [message]}
        if status_code is not None:
            self.status_code = status_code

    def to_response(self):
        return {
            'success': False,
            'message': self.message,
            'errors': self.errors
        }


class ValidationError(PlatformError):
    status_code = 400
    error_key = 'validation'


class PermissionDeniedError(PlatformError):
    status_code = 403
    error_key = 'permission'


class NotFoundError(PlatformError):
    status_code = 404
    error_key = 'not_found'


class ConflictError(PlatformError):
    status_code = 409
    error_key = 'conflict'


class InsufficientFundsError(PlatformError):
    status_code = 400
    error_key = 'balance'


class PaymentProviderError(PlatformError):
    """The payment provider could not be reached or refused the request."""
    status_code = 502
    error_key = 'provider'


class PaymentVerificationError(PlatformError):
    status_code = 400
    error_key = 'verification'


class AmountMismatchError(PaymentVerificationError):
    error_key = 'amount'


class PaymentStateError(PlatformError):
    status_code = 409
    error_key = 'state'


class PaymentProviderUnavailableError(PaymentProviderError):
    """No usable answer from the provider; the request may still have been applied."""
