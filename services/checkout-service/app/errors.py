from fastapi import status

from shared.utils import AppException


class ValidationError(AppException):
    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


# --- Catalog mismatches: the customer has to refresh their cart ---
class ProductNotFound(AppException):
    def __init__(self, product_id: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A product in your cart is no longer available. Please refresh your cart.",
        )
        self.product_id = product_id


class ProductUnavailable(AppException):
    def __init__(self, product_name: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{product_name} is currently unavailable. Please remove it from your cart.",
        )
        self.product_name = product_name


class ModifierUnavailable(AppException):
    def __init__(self, product_name: str, modifier_name: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Option '{modifier_name}' is no longer available for {product_name}. Please refresh your cart.",
        )
        self.product_name = product_name
        self.modifier_name = modifier_name


class PriceMismatch(AppException):
    def __init__(self, product_name: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"The price of {product_name} has changed. Please refresh your cart.",
        )
        self.product_name = product_name


class AmountOutOfRange(AppException):
    def __init__(self, detail: str = "Order total out of acceptable range"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class SignatureInvalid(AppException):
    def __init__(self, detail: str = "Invalid signature"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class InvalidStatusTransition(AppException):
    def __init__(self, current: str, requested: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot move order from {current} to {requested}",
        )


# --- Collaborator failures: never expose upstream detail ---
class UpstreamFailure(AppException):
    def __init__(self, detail: str = "Failed to process checkout. Please try again."):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


class PersistenceFailure(AppException):
    def __init__(self, detail: str = "Failed to create order"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)
