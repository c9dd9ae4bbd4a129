from pydantic import AliasChoices, BaseModel, Field, model_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any

from .listings import REQUIRED_FIELDS


class AuthRequest(BaseModel):
    user_id: str
    password: str


class AuthResponse(BaseModel):
    token: str


class CreateListingRequest(BaseModel):
    make: str
    model: str
    year: int
    mileage: int = 0
    vin: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    auction_end_time: datetime
    reserve_price: Optional[Decimal] = Field(default=None, ge=0)
    starting_bid: Decimal = Field(default=Decimal("0"), ge=0)


class UpdateListingRequest(BaseModel):
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    mileage: Optional[int] = None
    vin: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    images: Optional[List[str]] = None
    auction_end_time: Optional[datetime] = None
    reserve_price: Optional[Decimal] = Field(default=None, ge=0)
    starting_bid: Optional[Decimal] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def no_cleared_required_fields(self):
        """Omit a field to leave it alone; only optional details can be set to null."""
        cleared = sorted(f for f in REQUIRED_FIELDS & self.model_fields_set if getattr(self, f) is None)
        if cleared:
            raise ValueError(f"Fields cannot be null: {', '.join(cleared)}")
        return self


class ListingResponse(BaseModel):
    id: int
    seller_id: str
    make: str
    model: str
    year: int
    mileage: int
    vin: Optional[str]
    description: Optional[str]
    image_url: Optional[str]
    images: List[str]
    auction_end_time: datetime
    reserve_price: Optional[Decimal]
    starting_bid: Decimal
    current_bid: Decimal
    bid_count: int
    status: str
    approval_status: str
    admin_notes: Optional[str]
    reserve_met: bool
    minimum_bid: Optional[Decimal] = None

    model_config = {"from_attributes": True}


class ApprovalRequest(BaseModel):
    approval_status: str
    admin_notes: Optional[str] = None


class PlaceBidRequest(BaseModel):
    amount: Decimal


class PlaceBidResponse(BaseModel):
    bid_id: int
    vehicle_id: int
    amount: Decimal
    current_bid: Decimal
    bid_count: int


class BidErrorResponse(BaseModel):
    code: str
    message: str
    minimum_required: Optional[Decimal] = None


class BidResponse(BaseModel):
    id: int
    vehicle_id: int
    bidder_id: str
    amount: Decimal
    created_at: datetime

    model_config = {"from_attributes": True}


class WatchRequest(BaseModel):
    notify_on_sale: Optional[bool] = None
    notify_on_bid: Optional[bool] = None


class WatchResponse(BaseModel):
    vehicle_id: int
    notify_on_sale: bool
    notify_on_bid: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationResponse(BaseModel):
    id: int
    vehicle_id: int
    type: str
    message: str
    # "metadata" is reserved on ORM models, so the column is mapped as payload
    payload: Optional[Dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("payload", "metadata"),
        serialization_alias="metadata",
    )
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class CommentRequest(BaseModel):
    content: str = Field(min_length=1)


class CommentResponse(BaseModel):
    id: int
    vehicle_id: int
    user_id: str
    content: str
    created_at: datetime

    model_config = {"from_attributes": True}


class SweepResponse(BaseModel):
    ended: int
    sold: int
    ending_notifications: int
    ended_notifications: int
    errors: int
