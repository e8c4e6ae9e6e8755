"""
Error taxonomy for the cake shop API.

Every failure the API reports is an AppError subclass. The class name is the
stable machine-readable ``kind`` sent to clients; ``status_code`` is the HTTP
status the exception handler in main.py answers with.
"""

from typing import Any, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        error = {"kind": self.kind}
        if self.details is not None:
            error["details"] = self.details
        return {"success": False, "message": self.message, "error": error}


# 400 - user-correctable input problems

class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class ValidationFailed(ValidationError):
    pass


class ImageRequired(ValidationError):
    default_message = "Image is required"


class FlavorRequired(ValidationError):
    default_message = "At least one flavor is required"


class InvalidDeliveryDate(ValidationError):
    default_message = "Delivery date must be at least 1 day from today"


class InvalidStatus(ValidationError):
    default_message = "Invalid status. Must be Order Placed, Completed, or Cancelled"


class MissingCancellationReason(ValidationError):
    default_message = "Cancellation reason is required when cancelling an order"


# 400 - business rules broken by a named catalog entity

class ConflictError(AppError):
    status_code = 400
    default_message = "Request conflicts with current catalog state"


class CatalogItemNotFound(ConflictError):
    def __init__(self, cake_id: str):
        super().__init__(f"Cake with ID {cake_id} not found", {"cakeId": cake_id})


class CatalogItemUnavailable(ConflictError):
    def __init__(self, cake_id: str, name: str):
        super().__init__(
            f'Cake "{name}" is currently unavailable',
            {"cakeId": cake_id, "name": name},
        )


class WeightOptionUnavailable(ConflictError):
    def __init__(self, cake_id: str, name: str, weight: str):
        super().__init__(
            f'Weight option "{weight}" not available for "{name}"',
            {"cakeId": cake_id, "name": name, "weight": weight},
        )


# 403 / 404

class ForbiddenError(AppError):
    status_code = 403
    default_message = "Access denied"


class ForbiddenRole(ForbiddenError):
    pass


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class CakeNotFound(NotFoundError):
    default_message = "Cake not found"


class OrderNotFound(NotFoundError):
    default_message = "Order not found"


# 503 / 504 - safe for the client to retry

class TransientStoreError(AppError):
    status_code = 503
    default_message = "Database connection error - please try again"


class StoreUnavailable(TransientStoreError):
    pass


class StoreTimeout(TransientStoreError):
    status_code = 504
    default_message = "Request timeout - please try again"


class PersistenceError(TransientStoreError):
    default_message = "Could not save the order - please try again"


class InternalError(AppError):
    status_code = 500


def schema_errors(exc) -> list:
    """Field-level details from a pydantic ValidationError."""
    return [
        {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
        for e in exc.errors()
    ]
