from typing import List, Optional


class AppError(Exception):
    """Base for failures rendered as `{success: false, message, errors}`."""

    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[str]] = None):
        if message is not None:
            self.message = message
        self.errors = list(errors) if errors else [self.message]
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Validation failed"


class AuthenticationError(AppError):
    status_code = 401
    code = "AUTHENTICATION_ERROR"
    message = "Access denied"


class AuthorizationError(AppError):
    status_code = 403
    code = "AUTHORIZATION_ERROR"
    message = "Access forbidden"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Resource not found"


class ProductNotFound(NotFoundError):
    code = "PRODUCT_NOT_FOUND"
    message = "Product not found"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(errors=[f"Product with ID {product_id} does not exist"])


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"
    message = "Resource conflict"


class RateLimited(AppError):
    status_code = 429
    code = "RATE_LIMITED"
    message = "Too many authentication attempts"


class InsufficientStock(AppError):
    status_code = 400
    code = "INSUFFICIENT_STOCK"
    message = "Insufficient stock"

    def __init__(self, product_id: str, name: str, requested: int, available: Optional[int] = None):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        if available is None:
            # lost a race at decrement time, the current level is unknown
            detail = f"Insufficient stock for {name}. Requested: {requested}"
        else:
            detail = f"Insufficient stock for {name}. Available: {available}, Requested: {requested}"
        super().__init__(errors=[detail])


class InternalError(AppError):
    pass


def format_validation_errors(details: List[dict]) -> List[str]:
    """One `"path.to.field: reason"` line per pydantic error entry."""
    messages = []
    for detail in details:
        loc = [str(part) for part in detail.get("loc", ())]
        if loc and loc[0] == "body":
            loc = loc[1:]
        messages.append(f"{'.'.join(loc)}: {detail['msg']}" if loc else detail["msg"])
    return messages


class StoreError(Exception):
    """The backing store failed; the message is for logs, not clients."""


class TransactionTimeout(StoreError):
    pass
