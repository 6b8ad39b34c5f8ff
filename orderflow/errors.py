"""
Error taxonomy.

HTTP-facing errors carry the status code and error code they are answered
with; consumer-side errors never reach an HTTP caller.
"""


class OrderflowError(Exception):
    status_code = 500
    code = "InternalError"

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "message": self.message, **self.details}


class InvalidRequest(OrderflowError):
    """Client input rejected before any remote call."""

    status_code = 400
    code = "InvalidRequest"


class ProductNotFound(OrderflowError):
    status_code = 404
    code = "ProductNotFound"


class OrderNotFound(OrderflowError):
    status_code = 404
    code = "OrderNotFound"


class InsufficientStock(OrderflowError):
    status_code = 400
    code = "InsufficientStock"


class UpstreamUnavailable(OrderflowError):
    """The product-owning service errored, timed out or answered garbage."""

    status_code = 502
    code = "UpstreamUnavailable"


class PersistenceError(OrderflowError):
    """A ledger write failed; nothing downstream has run."""

    status_code = 500
    code = "PersistenceError"


class BrokerUnavailable(OrderflowError):
    """The broker could not be reached (connect or publish)."""

    status_code = 503
    code = "BrokerUnavailable"


class ProcessingError(OrderflowError):
    """A consumer failed to apply its effect; the message is requeued."""

    code = "ProcessingError"
