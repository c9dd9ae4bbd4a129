from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, Text, Boolean, JSON,
    UniqueConstraint, Index, text,
)
from sqlalchemy.orm import declarative_base, relationship
from enum import Enum

Base = declarative_base()


class ListingStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"
    SOLD = "sold"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class NotificationType(str, Enum):
    AUCTION_ENDING = "auction_ending"
    AUCTION_ENDED = "auction_ended"
    NEW_BID = "new_bid"
    NEW_COMMENT = "new_comment"


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


# At most one of these per (user, vehicle, type)
LIFECYCLE_NOTIFICATION_TYPES = (
    NotificationType.AUCTION_ENDING.value,
    NotificationType.AUCTION_ENDED.value,
)

_LIFECYCLE_WHERE = text("type IN ('auction_ending', 'auction_ended')")


class Listing(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(String, nullable=False, index=True)
    make = Column(String, nullable=False)
    model = Column(String, nullable=False)
    year = Column(Integer, nullable=False)
    mileage = Column(Integer, nullable=False, default=0)
    vin = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    image_url = Column(String, nullable=True)
    images = Column(JSON, nullable=False, default=list)
    auction_end_time = Column(DateTime, nullable=False, index=True)
    reserve_price = Column(Numeric(12, 2), nullable=True)
    starting_bid = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    # Derived from the bid ledger; written only by bid admission
    current_bid = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    bid_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=ListingStatus.ACTIVE.value, index=True)
    approval_status = Column(String, nullable=False, default=ApprovalStatus.PENDING.value, index=True)
    admin_notes = Column(Text, nullable=True)
    # Compare-and-swap key for writes to current_bid / bid_count / status
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    bids = relationship("Bid", back_populates="listing", order_by="Bid.id")
    watches = relationship("Watch", back_populates="listing", cascade="all, delete-orphan")
    comments = relationship("Comment", back_populates="listing", cascade="all, delete-orphan")

    @property
    def title(self) -> str:
        return f"{self.year} {self.make} {self.model}"

    @property
    def reserve_met(self) -> bool:
        """Informational only; does not gate finalization."""
        if self.reserve_price is None:
            return True
        return Decimal(self.current_bid or 0) >= Decimal(self.reserve_price)


class Bid(Base):
    """Append-only ledger row. Never updated or deleted."""

    __tablename__ = "bids"

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)
    bidder_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    listing = relationship("Listing", back_populates="bids")


class Watch(Base):
    __tablename__ = "watched_vehicles"
    __table_args__ = (UniqueConstraint("user_id", "vehicle_id", name="uq_watch_user_vehicle"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)
    notify_on_sale = Column(Boolean, nullable=False, default=True)
    notify_on_bid = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    listing = relationship("Listing", back_populates="watches")


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index(
            "uq_notifications_lifecycle",
            "user_id", "vehicle_id", "type",
            unique=True,
            sqlite_where=_LIFECYCLE_WHERE,
            postgresql_where=_LIFECYCLE_WHERE,
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    payload = Column("metadata", JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_role"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    role = Column(String, nullable=False, default=Role.USER.value)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Comment(Base):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    listing = relationship("Listing", back_populates="comments")
