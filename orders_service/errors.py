from fastapi import status

from shared.utils import AppException, ServiceUnavailableException


class Forbidden(AppException):
    code = "FORBIDDEN"

    def __init__(self, detail: str = "You are not allowed to perform this action"):
        super().__init__(status.HTTP_403_FORBIDDEN, detail)


class InvalidQuantity(AppException):
    code = "INVALID_QUANTITY"

    def __init__(self, detail: str = "Quantity must be at least 1"):
        super().__init__(422, detail)


class OutOfStock(AppException):
    code = "OUT_OF_STOCK"

    def __init__(self, listing_id: str, requested: int, available: int):
        self.listing_id = listing_id
        super().__init__(
            status.HTTP_409_CONFLICT,
            f"Requested {requested} of listing {listing_id} but only {available} available",
        )


class StockConflict(AppException):
    code = "STOCK_CONFLICT"

    def __init__(self, listing_id: str, requested: int, available: int):
        self.listing_id = listing_id
        super().__init__(
            status.HTTP_409_CONFLICT,
            f"Listing {listing_id} no longer has {requested} in stock ({available} left)",
        )


class InvalidTransition(AppException):
    code = "INVALID_TRANSITION"

    def __init__(self, action: str, current_status: str):
        self.action = action
        self.current_status = current_status
        super().__init__(
            status.HTTP_409_CONFLICT,
            f"Cannot {action} an order that is {current_status}",
        )


class InvalidOrderState(AppException):
    code = "INVALID_ORDER_STATE"

    def __init__(self, order_status: str, payment_status: str):
        super().__init__(
            status.HTTP_409_CONFLICT,
            f"Order is {order_status}/{payment_status}; payment requires SHIPPED/PENDING",
        )


class PaymentMismatch(AppException):
    code = "PAYMENT_MISMATCH"

    def __init__(self, detail: str = "Payment reference does not belong to this order"):
        super().__init__(status.HTTP_400_BAD_REQUEST, detail)


class PaymentNotCompleted(AppException):
    code = "PAYMENT_NOT_COMPLETED"

    def __init__(self, processor_status: str):
        self.processor_status = processor_status
        super().__init__(
            status.HTTP_402_PAYMENT_REQUIRED,
            f"Payment has not succeeded (processor status: {processor_status})",
        )


class PaymentProcessorError(AppException):
    code = "PAYMENT_PROCESSOR_ERROR"

    def __init__(self, detail: str = "Payment processor rejected the request"):
        super().__init__(status.HTTP_502_BAD_GATEWAY, detail)


class ProcessorUnavailable(ServiceUnavailableException):
    code = "PAYMENT_PROVIDER_UNAVAILABLE"

    def __init__(self, detail: str = "Payment provider timed out or is unreachable"):
        super().__init__(detail)


class AlreadyPaid(Exception):
    """Raised when an order is already PAID; callers treat it as success."""

    def __init__(self, order):
        self.order = order
        super().__init__(f"Order {order.id} is already paid")


class EmptyCart(AppException):
    code = "EMPTY_CART"

    def __init__(self, detail: str = "No cart entries selected"):
        super().__init__(status.HTTP_400_BAD_REQUEST, detail)
