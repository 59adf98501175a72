
class PaymentError(Exception):
    retryable = False
    public_message = "Payment could not be processed"

    def __init__(self, message=None):
        super().__init__(message or self.public_message)


# --- Gateway errors ---

class GatewayError(PaymentError):
    public_message = "Payment gateway error"

    def __init__(self, message=None, status_code=None, body=None):
        super().__init__(message)
        self.status_code = status_code
        # raw gateway body, for logs only
        self.body = body


class GatewayUnauthorized(GatewayError):
    """Credentials missing or rejected. Fatal until the configuration is fixed."""
    public_message = "Payment integration is misconfigured"


class GatewayUnavailable(GatewayError):
    retryable = True
    public_message = "Payment gateway is temporarily unavailable"


class GatewayTimeout(GatewayUnavailable):
    pass


class GatewayValidationError(GatewayError):
    public_message = "Payment gateway rejected the request"


class GatewayNotFound(GatewayValidationError):
    public_message = "Payment gateway does not know this order"


# --- Order creation ---

class OrderValidationError(PaymentError):
    public_message = "Invalid order"


# --- Reconciliation ---

class ReconciliationError(PaymentError):
    def __init__(self, message=None, order_id=None):
        super().__init__(message)
        self.order_id = order_id


class OrderNotFound(ReconciliationError):
    public_message = "Order not found"


class InvalidSignature(ReconciliationError):
    public_message = "Payment signature is invalid"


class RetryableVerificationError(ReconciliationError):
    retryable = True
    public_message = "Payment could not be verified yet, please retry"


class VerificationFailed(ReconciliationError):
    public_message = "Payment verification failed"


class AmountMismatch(ReconciliationError):
    public_message = "Paid amount does not match the order"


class PaymentNotCompleted(ReconciliationError):
    public_message = "Payment has not been completed"
