class OrderServiceError(Exception):
    """Base class for every failure raised by the order pipeline."""


class OrderValidationError(OrderServiceError):
    pass


class UnknownOperationError(OrderValidationError):
    pass


class OrderNotFound(OrderServiceError):
    def __init__(self, order_uid):
        self.order_uid = order_uid
        super().__init__(f"Order {order_uid} not found")


class TransportError(OrderServiceError):
    pass


class SerializationError(OrderServiceError):
    pass


class TransactionError(OrderServiceError):
    pass


class BulkOperationError(OrderServiceError):
    """Raised when a bulk request aborted its transaction.

    The failure that triggered the rollback is available as ``__cause__``.
    """

    def __init__(self, operation, index, order_uid, reason):
        self.operation = operation
        self.index = index
        self.order_uid = order_uid
        super().__init__(
            f"Operation #{index} '{operation}' on order {order_uid} failed: {reason}"
        )
