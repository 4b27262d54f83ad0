class SettlementError(Exception):
    pass


class ValidationError(SettlementError):
    """Input rejected before any side effect took place."""


class CurrencyMismatchError(ValidationError):
    pass


class EmptyCartError(ValidationError):
    pass


class SellerLookupError(ValidationError):
    pass


class NotFoundError(SettlementError):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class IntentNotFoundError(NotFoundError):
    pass


class LedgerServiceError(SettlementError):
    pass


class InvalidStateError(LedgerServiceError):
    pass


class AlreadyReleasedError(InvalidStateError):
    pass


class AlreadyRefundedError(InvalidStateError):
    pass


class DuplicateHoldError(LedgerServiceError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    pass


class TransitionError(InvalidStateError):
    """Illegal order status transition."""


class PaymentError(SettlementError):
    pass


class ProviderError(PaymentError):
    pass


class ProviderTimeoutError(PaymentError):
    pass


class IntentConflictError(PaymentError):
    pass


class MaxRetriesExceededError(PaymentError):
    def __init__(self, order_id: str, attempts: int):
        super().__init__(
            f"Order {order_id} reached the maximum of {attempts} payment attempts. "
            "Contact support or choose a different payment method."
        )
        self.order_id = order_id
        self.attempts = attempts
