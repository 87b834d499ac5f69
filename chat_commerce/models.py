"""
Pydantic models for the conversational order-taking engine.

Defines data validation schemas for products, orders, conversations and the
transient values exchanged between the agent loop and its tools.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field, field_validator, model_validator
import uuid


CENT = Decimal("0.01")


def to_money(value: Decimal) -> Decimal:
    """Round a decimal amount to cents."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Author of a transcript message."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class OrderStatus(str, Enum):
    """Enumeration for order status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    FULFILLED = "fulfilled"


class UnavailableReason(str, Enum):
    """Why an order line cannot be served."""
    NOT_FOUND = "not_found"
    INSUFFICIENT_STOCK = "insufficient_stock"


class Product(BaseModel):
    """
    Catalog product.

    Attributes:
        id: Unique identifier for the product
        name: Product name (minimum 2 characters)
        description: Free-text description
        price: Unit price (non-negative, rounded to cents)
        stock: Units available (must be >= 0)
    """
    id: str = Field(..., min_length=1, description="Unique product identifier")
    name: str = Field(..., min_length=2, description="Product name")
    description: str = Field("", description="Product description")
    price: Decimal = Field(..., ge=0, description="Unit price")
    stock: int = Field(..., ge=0, description="Units in stock")

    @field_validator('price')
    @classmethod
    def validate_price(cls, v: Decimal) -> Decimal:
        """Ensure price has at most 2 decimal places."""
        return to_money(v)


class MatchCandidate(BaseModel):
    """A product mentioned in free text, not yet checked against stock."""
    product: Product
    quantity: int = Field(..., ge=1, description="Requested quantity")
    confidence: float = Field(..., ge=0, le=1, description="Weakest name-token similarity")


class OrderLine(BaseModel):
    """One requested (product, quantity) pair."""
    product_id: str = Field(..., min_length=1, description="ID of the product")
    quantity: int = Field(..., gt=0, description="Units requested")


class OrderItem(BaseModel):
    """
    Individual item within an order.

    Attributes:
        product_id: Reference to the product
        product_name: Name of the product at order time
        quantity: Number of items ordered (must be >= 1)
        price: Unit price snapshot taken when the order was created
        subtotal: Total for this line item
    """
    product_id: str = Field(..., min_length=1, description="Product identifier")
    product_name: str = Field(..., min_length=1, description="Product name")
    quantity: int = Field(..., ge=1, description="Quantity ordered")
    price: Decimal = Field(..., ge=0, description="Price per unit")
    subtotal: Decimal = Field(Decimal("0"), ge=0, description="Line item total")

    @model_validator(mode='after')
    def calculate_subtotal(self) -> 'OrderItem':
        """Derive subtotal from quantity and the unit price snapshot."""
        self.subtotal = self.price * self.quantity
        return self


class Order(BaseModel):
    """
    Persisted order.

    The total is fixed when the order is created from the item price
    snapshots; it is never recomputed from live catalog prices.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique order ID")
    customer_id: str = Field(..., min_length=1, description="Customer (sender) identifier")
    items: List[OrderItem] = Field(..., min_length=1, description="Order items")
    total: Decimal = Field(..., ge=0, description="Total order amount")
    status: OrderStatus = Field(default=OrderStatus.PENDING, description="Order status")
    created_at: datetime = Field(default_factory=_utcnow, description="Creation timestamp")

    @model_validator(mode='after')
    def validate_total(self) -> 'Order':
        """Reject totals that differ from the sum of item subtotals."""
        calculated_total = sum((item.subtotal for item in self.items), Decimal("0"))
        if self.total != calculated_total:
            raise ValueError(
                f"Order total {self.total} does not match item subtotals {calculated_total}"
            )
        return self


class UnavailableItem(BaseModel):
    """An order line that cannot be served."""
    product_id: str
    name: Optional[str] = None
    reason: UnavailableReason
    requested: int
    available: Optional[int] = None


class OrderResult(BaseModel):
    """Outcome of an order creation attempt."""
    success: bool
    order_id: Optional[str] = None
    customer_id: Optional[str] = None
    total: Optional[Decimal] = None
    items: List[OrderItem] = Field(default_factory=list)
    unavailable_items: List[UnavailableItem] = Field(default_factory=list)

    @classmethod
    def created(cls, order: Order) -> 'OrderResult':
        return cls(
            success=True,
            order_id=order.id,
            customer_id=order.customer_id,
            total=order.total,
            items=order.items,
        )

    @classmethod
    def rejected(cls, unavailable: List[UnavailableItem]) -> 'OrderResult':
        return cls(success=False, unavailable_items=unavailable)


class Message(BaseModel):
    """
    Model for individual chat messages in conversation history.
    """
    role: Role = Field(..., description="Message role")
    content: str = Field(..., description="Message content")
    created_at: datetime = Field(default_factory=_utcnow, description="Message timestamp")


class Conversation(BaseModel):
    """
    Append-only transcript for one sender.

    The system message, if present, is the first message and appears once.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Conversation ID")
    sender_id: str = Field(..., min_length=1, description="Sender identifier")
    messages: List[Message] = Field(default_factory=list, description="Chat history")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode='after')
    def validate_system_position(self) -> 'Conversation':
        """Only the first message may carry the system role."""
        for position, message in enumerate(self.messages):
            if message.role == Role.SYSTEM and position != 0:
                raise ValueError("System message must be the first message and appear once")
        return self


class InboundMessage(BaseModel):
    """Event delivered by the messaging transport."""
    sender_id: str = Field(..., min_length=1)
    message_id: str = Field(..., min_length=1)
    kind: str = Field("text", description="Transport message type")
    text: str = Field("", description="Message body for text messages")


class ToolCall(BaseModel):
    """A tool invocation requested by the language model."""
    id: str
    name: str
    arguments: Union[Dict[str, Any], str] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """JSON-serializable tool output tagged with the tool name."""
    tool_name: str
    payload: Dict[str, Any]
    is_error: bool = False
