"""
Request schemas

Bodies are validated here before any handler touches the database. Every
model allows extra fields: whatever the client sends beyond the declared
fields is stored as-is, the way the collections have always been written.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class RequestModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_document(self):
        document = self.model_dump(by_alias=True, exclude_none=True)
        document.pop("_id", None)
        return document


class TokenRequest(RequestModel):
    email: Optional[str] = None


class UserCreate(RequestModel):
    email: str = Field(..., min_length=1, description="Unique account email")
    name: Optional[str] = None
    role: Optional[Literal["user", "seller", "admin"]] = None


class ProductCreate(RequestModel):
    price: float = Field(..., ge=0, description="Unit price in dollars")
    available: int = Field(0, ge=0, description="Units left for sale")
    name: Optional[str] = None


class ProductUpdate(RequestModel):
    price: Optional[float] = Field(None, ge=0)
    available: Optional[int] = Field(None, ge=0)
    name: Optional[str] = None


class SelectionCreate(RequestModel):
    email: str = Field(..., min_length=1, description="Owner of the cart line")
    product_item_id: Optional[str] = Field(None, alias="ProductItemId")


class SelectedPayment(RequestModel):
    id: Optional[str] = Field(None, alias="_id")
    product_item_id: Optional[str] = Field(None, alias="ProductItemId")


class PaymentCreate(RequestModel):
    email: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1, alias="transactionId")
    price: float = Field(..., ge=0)
    cart_items: List[str] = Field(default_factory=list, alias="cartItems")
    selected_payment: Optional[SelectedPayment] = Field(None, alias="selectedPayment")

    def settled_selection_ids(self) -> List[str]:
        identifiers = [str(item) for item in self.cart_items]
        if self.selected_payment and self.selected_payment.id:
            identifiers.append(str(self.selected_payment.id))
        return list(dict.fromkeys(identifiers))


class PaymentIntentCreate(RequestModel):
    price: float = Field(..., gt=0)
