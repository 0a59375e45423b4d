"""
Pydantic Schemas for Request/Response Validation

The HTTP surface speaks camelCase JSON (``restaurantId``, ``inviteCode``);
the Python side uses snake_case field names. Every model accepts both forms
on input and serializes by alias.

Successful responses are wrapped as ``{"success": true, "data": ...}``,
failures as ``{"success": false, "error": ..., "message": ...}``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# ENVELOPES
# =============================================================================

class ApiResponse(CamelModel, Generic[T]):
    """Standard success envelope."""
    success: bool = True
    data: T


class ErrorResponse(CamelModel):
    """Standard error response."""
    success: bool = False
    error: str
    message: str


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class GroupOrderSettingsIn(CamelModel):
    max_participants: Optional[int] = Field(None, examples=[6])
    allow_anonymous: bool = True


class CreateGroupOrderRequest(CamelModel):
    """Request schema for opening a group order at a table."""
    restaurant_id: str = Field(..., examples=["rest_42"])
    table_id: str = Field(..., examples=["table_7"])
    expiration_minutes: Optional[int] = Field(None, examples=[60])
    settings: Optional[GroupOrderSettingsIn] = None


class JoinGroupOrderRequest(CamelModel):
    invite_code: str = Field(..., examples=["K7QM-3XPA"])
    user_name: Optional[str] = Field(None, max_length=100, examples=["Ana"])
    user_email: Optional[str] = Field(None, examples=["ana@example.com"])
    payment_method_id: Optional[str] = Field(None, examples=["pm_card_visa"])


class UpdateParticipantRequest(CamelModel):
    """A participant changing their own details; omitted fields are kept."""
    participant_id: str
    user_name: Optional[str] = Field(None, max_length=100)
    user_email: Optional[str] = None
    payment_method_id: Optional[str] = None


class SpendingLimitsIn(CamelModel):
    enabled: bool
    default_limit: Optional[Decimal] = Field(None, examples=[25.00])
    participant_limits: dict[str, Decimal] = Field(default_factory=dict)


class UpdateSpendingLimitsRequest(CamelModel):
    spending_limits: SpendingLimitsIn


class UpdateParticipantLimitRequest(CamelModel):
    """Override for one participant; ``null`` falls back to the default limit."""
    limit: Optional[Decimal] = Field(None, examples=[30.00])


class UpdatePaymentStructureRequest(CamelModel):
    """
    Switch how the bill is divided.

    ``customSplits`` maps participant id to a percentage and is required for
    ``custom_split``; ``payerId`` only applies to ``pay_all``.
    """
    payment_structure: str = Field(..., examples=["equal_split"])
    custom_splits: Optional[dict[str, Decimal]] = None
    payer_id: Optional[str] = None


class OrderItemIn(CamelModel):
    """Single menu item added to the shared order."""
    menu_item_id: str = Field(..., examples=["margherita"])
    name: Optional[str] = Field(None, max_length=100, examples=["Pizza Margherita"])
    quantity: int = Field(1, examples=[2])
    price: Decimal = Field(..., examples=[14.99])
    customizations: list[str] = Field(default_factory=list)
    special_requests: Optional[str] = Field(None, max_length=200)


class AddItemsRequest(CamelModel):
    participant_id: str
    items: list[OrderItemIn]


class RemoveItemsRequest(CamelModel):
    participant_id: str
    item_ids: list[str]


class LeaveGroupOrderRequest(CamelModel):
    participant_id: str


class CancelGroupOrderRequest(CamelModel):
    reason: Optional[str] = Field(None, max_length=200)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class CreateGroupOrderData(CamelModel):
    group_order_id: str
    invite_code: str
    display_code: str
    expires_at: datetime


class JoinGroupOrderData(CamelModel):
    participant_id: str
    group_order_id: str
    name: str
    is_leader: bool = False


class LeaveGroupOrderData(CamelModel):
    participant_id: str


class SpendingLimitsOut(CamelModel):
    enabled: bool
    default_limit: Optional[float] = None
    participant_limits: dict[str, float] = Field(default_factory=dict)


class PaymentStructureOut(CamelModel):
    payment_structure: str
    custom_splits: Optional[dict[str, float]] = None
    payer_id: Optional[str] = None


class OrderLineOut(CamelModel):
    id: str
    menu_item_id: str
    name: str
    quantity: int
    price: float
    total: float
    customizations: list[str]
    special_requests: Optional[str] = None
    added_at: datetime


class SpendingStatusOut(CamelModel):
    current_spending: float
    limit: Optional[float] = None
    percentage_used: Optional[float] = None
    status: str


class ParticipantOut(CamelModel):
    id: str
    name: str
    email: Optional[str] = None
    joined_at: datetime
    items: list[OrderLineOut]
    spent_amount: float
    payment_status: str
    payment_intent_id: Optional[str] = None
    has_payment_method: bool = False
    paid_at: Optional[datetime] = None
    is_leader: bool = False
    spending: Optional[SpendingStatusOut] = None


class GroupOrderSettingsOut(CamelModel):
    max_participants: int
    allow_anonymous: bool


class TotalsOut(CamelModel):
    subtotal: float
    item_count: int
    participant_count: int


class GroupOrderResponse(CamelModel):
    """Full group order projection."""
    id: str
    restaurant_id: str
    table_id: str
    invite_code: str
    status: str
    version: int
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None
    checkout_in_progress: bool
    leader_id: Optional[str] = None
    settings: GroupOrderSettingsOut
    spending_limits: SpendingLimitsOut
    payment_structure: str
    custom_splits: Optional[dict[str, float]] = None
    payer_id: Optional[str] = None
    participants: list[ParticipantOut]
    totals: TotalsOut
    settlement: dict[str, float]


class GroupOrderSummary(CamelModel):
    """Public view returned while validating an invite code."""
    id: str
    restaurant_id: str
    table_id: str
    participant_count: int
    max_participants: int
    status: str
    expires_at: datetime


class ValidateJoinCodeData(CamelModel):
    is_valid: bool
    group_order: Optional[GroupOrderSummary] = None


class SettlementData(CamelModel):
    payment_structure: str
    total: float
    settlement: dict[str, float]


class PaymentOut(CamelModel):
    participant_id: str
    amount: float
    success: bool
    payment_intent_id: Optional[str] = None
    error_message: Optional[str] = None


class CheckoutData(CamelModel):
    group_order_id: str
    status: str
    finalized: bool
    settlement: dict[str, float]
    payments: list[PaymentOut]


class ParticipantPaymentOut(CamelModel):
    participant_id: str
    name: str
    amount: float
    payment_status: str
    payment_intent_id: Optional[str] = None
    paid_at: Optional[datetime] = None


class PaymentStatusData(CamelModel):
    group_order_id: str
    status: str
    payment_structure: str
    total: float
    checkout_in_progress: bool
    all_paid: bool
    participants: list[ParticipantPaymentOut]


class MenuItemTotalOut(CamelModel):
    menu_item_id: str
    name: str
    quantity: int
    total: float


class PaymentBreakdownOut(CamelModel):
    participant_id: str
    participant_name: str
    amount: float
    status: str


class OrderSummaryData(CamelModel):
    """Group-wide display summary."""
    group_order_id: str
    status: str
    leader_id: Optional[str] = None
    total_items: int
    total_amount: float
    participant_count: int
    items_by_menu_item: list[MenuItemTotalOut]
    payment_breakdown: list[PaymentBreakdownOut]


class HealthResponse(CamelModel):
    """Health check response."""
    status: str
    database: str
    payment_service: str
    active_group_orders: int
    timestamp: datetime
