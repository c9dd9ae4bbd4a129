"""
Listing, moderation, watchlist and comment operations that sit around the
bidding core. None of these ever write current_bid or bid_count.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import (
    Listing, Bid, Watch, Comment, Notification, UserRole,
    ListingStatus, ApprovalStatus, NotificationType, Role,
)
from .clock import utcnow
from .notifications import NotificationFanout, new_comment_message

logger = logging.getLogger(__name__)

# Fields a seller controls; everything else is derived or set by moderation
EDITABLE_FIELDS = {
    "make", "model", "year", "mileage", "vin", "description", "image_url", "images",
    "auction_end_time", "reserve_price", "starting_bid",
}
# NOT NULL columns among them; an edit may change these but never clear them
REQUIRED_FIELDS = {"make", "model", "year", "mileage", "images", "auction_end_time", "starting_bid"}


class ListingNotFound(LookupError):
    pass


class PermissionDenied(PermissionError):
    pass


class InvalidListingState(ValueError):
    pass


def is_admin(db: Session, user_id: str) -> bool:
    return db.query(UserRole.id).filter(
        UserRole.user_id == user_id,
        UserRole.role == Role.ADMIN.value,
    ).first() is not None


def grant_admin(db: Session, user_id: str) -> UserRole:
    existing = db.query(UserRole).filter(
        UserRole.user_id == user_id,
        UserRole.role == Role.ADMIN.value,
    ).first()
    if existing:
        return existing
    role = UserRole(user_id=user_id, role=Role.ADMIN.value)
    db.add(role)
    db.commit()
    db.refresh(role)
    return role


def _require_listing(db: Session, listing_id: int) -> Listing:
    listing = db.query(Listing).filter(Listing.id == listing_id).first()
    if not listing:
        raise ListingNotFound(f"Vehicle {listing_id} not found")
    return listing


def get_listing(db: Session, listing_id: int) -> Optional[Listing]:
    return db.query(Listing).filter(Listing.id == listing_id).first()


def list_listings(
    db: Session,
    status: Optional[str] = None,
    approval_status: Optional[str] = ApprovalStatus.APPROVED.value,
    seller_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
) -> List[Listing]:
    """Listings ordered by auction end time. Defaults to the public (approved) view."""
    query = db.query(Listing)
    if status:
        query = query.filter(Listing.status == status)
    if approval_status:
        query = query.filter(Listing.approval_status == approval_status)
    if seller_id:
        query = query.filter(Listing.seller_id == seller_id)
    return query.order_by(Listing.auction_end_time, Listing.id).offset(skip).limit(limit).all()


def create_listing(db: Session, seller_id: str, data: Dict[str, Any], now: Optional[datetime] = None) -> Listing:
    """Create a listing awaiting moderation, with an empty bid ledger."""
    now = now or utcnow()
    unknown = set(data) - EDITABLE_FIELDS
    if unknown:
        raise InvalidListingState(f"Fields cannot be set on a listing: {', '.join(sorted(unknown))}")
    if data["auction_end_time"] <= now:
        raise InvalidListingState("Auction end time must be in the future")

    listing = Listing(
        seller_id=seller_id,
        status=ListingStatus.ACTIVE.value,
        approval_status=ApprovalStatus.PENDING.value,
        current_bid=0,
        bid_count=0,
        version=0,
        **data,
    )
    if listing.images is None:
        listing.images = []
    db.add(listing)
    db.commit()
    db.refresh(listing)
    logger.info(f"Vehicle {listing.id} listed by {seller_id}, pending approval")
    return listing


def update_listing(db: Session, listing_id: int, seller_id: str, changes: Dict[str, Any], now: Optional[datetime] = None) -> Listing:
    """
    Seller edit. Only allowed before approval (pending or declined) while the
    auction is still open; an edit of a declined listing sends it back to
    pending review.
    """
    listing = _require_listing(db, listing_id)
    if listing.seller_id != seller_id:
        raise PermissionDenied("Only the seller can edit this listing")
    if listing.approval_status == ApprovalStatus.APPROVED.value:
        raise InvalidListingState("Approved listings can no longer be edited")
    if listing.status != ListingStatus.ACTIVE.value:
        raise InvalidListingState(f"Auction already closed ({listing.status}); create a new listing instead")

    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise InvalidListingState(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
    cleared = sorted(field for field in REQUIRED_FIELDS & set(changes) if changes[field] is None)
    if cleared:
        raise InvalidListingState(f"Fields cannot be cleared: {', '.join(cleared)}")
    end_time = changes.get("auction_end_time")
    if end_time is not None and end_time <= (now or utcnow()):
        raise InvalidListingState("Auction end time must be in the future")

    for field, value in changes.items():
        setattr(listing, field, value)
    if listing.approval_status == ApprovalStatus.DECLINED.value:
        listing.approval_status = ApprovalStatus.PENDING.value
    db.commit()
    db.refresh(listing)
    return listing


def set_approval_status(db: Session, listing_id: int, actor_id: str, status: str, admin_notes: Optional[str] = None) -> Listing:
    """Admin moderation decision. Decisions may be reversed at any time."""
    if not is_admin(db, actor_id):
        raise PermissionDenied("Only administrators can moderate listings")
    if status not in (ApprovalStatus.APPROVED.value, ApprovalStatus.DECLINED.value):
        raise InvalidListingState(f"Invalid approval status: {status}")

    listing = _require_listing(db, listing_id)
    listing.approval_status = status
    listing.admin_notes = admin_notes or None
    db.commit()
    db.refresh(listing)
    logger.info(f"Vehicle {listing_id} {status} by {actor_id}")
    return listing


def delete_listing(db: Session, listing_id: int, seller_id: str):
    """Seller removes their listing; never once the ledger has a bid."""
    listing = _require_listing(db, listing_id)
    if listing.seller_id != seller_id:
        raise PermissionDenied("Only the seller can delete this listing")
    if listing.bid_count > 0 or db.query(Bid.id).filter(Bid.vehicle_id == listing_id).first():
        raise InvalidListingState("Listings with bids cannot be deleted")
    db.query(Notification).filter(Notification.vehicle_id == listing_id).delete(synchronize_session=False)
    db.delete(listing)
    db.commit()
    logger.info(f"Vehicle {listing_id} deleted by {seller_id}")


def bid_history(db: Session, vehicle_id: int, limit: Optional[int] = None) -> List[Bid]:
    query = db.query(Bid).filter(Bid.vehicle_id == vehicle_id).order_by(Bid.amount.desc(), Bid.id.desc())
    if limit:
        query = query.limit(limit)
    return query.all()


def bids_by_user(db: Session, user_id: str) -> List[Bid]:
    return db.query(Bid).filter(Bid.bidder_id == user_id).order_by(Bid.created_at.desc(), Bid.id.desc()).all()


def watch(
    db: Session,
    user_id: str,
    vehicle_id: int,
    notify_on_sale: Optional[bool] = None,
    notify_on_bid: Optional[bool] = None,
) -> Watch:
    """Start watching, or update preferences of an existing watch."""
    _require_listing(db, vehicle_id)
    existing = db.query(Watch).filter(Watch.user_id == user_id, Watch.vehicle_id == vehicle_id).first()
    if existing is None:
        existing = Watch(user_id=user_id, vehicle_id=vehicle_id)
        db.add(existing)
    if notify_on_sale is not None:
        existing.notify_on_sale = notify_on_sale
    if notify_on_bid is not None:
        existing.notify_on_bid = notify_on_bid

    try:
        db.commit()
    except IntegrityError:
        # Concurrent first watch by the same user; apply preferences to theirs
        db.rollback()
        return watch(db, user_id, vehicle_id, notify_on_sale, notify_on_bid)
    db.refresh(existing)
    return existing


def update_watch_preferences(
    db: Session,
    user_id: str,
    vehicle_id: int,
    notify_on_sale: Optional[bool] = None,
    notify_on_bid: Optional[bool] = None,
) -> Watch:
    """Change preferences on an existing watch without creating one."""
    existing = db.query(Watch).filter(Watch.user_id == user_id, Watch.vehicle_id == vehicle_id).first()
    if existing is None:
        raise ListingNotFound(f"Not watching vehicle {vehicle_id}")
    if notify_on_sale is not None:
        existing.notify_on_sale = notify_on_sale
    if notify_on_bid is not None:
        existing.notify_on_bid = notify_on_bid
    db.commit()
    db.refresh(existing)
    return existing


def unwatch(db: Session, user_id: str, vehicle_id: int) -> bool:
    rows_deleted = db.query(Watch).filter(
        Watch.user_id == user_id,
        Watch.vehicle_id == vehicle_id,
    ).delete(synchronize_session=False)
    db.commit()
    return rows_deleted > 0


def watchlist(db: Session, user_id: str) -> List[Watch]:
    return db.query(Watch).filter(Watch.user_id == user_id).order_by(Watch.created_at.desc(), Watch.id.desc()).all()


def add_comment(
    db: Session,
    vehicle_id: int,
    user_id: str,
    content: str,
    fanout: Optional[NotificationFanout] = None,
) -> Comment:
    listing = _require_listing(db, vehicle_id)
    content = content.strip()
    if not content:
        raise InvalidListingState("Comment cannot be empty")

    comment = Comment(vehicle_id=vehicle_id, user_id=user_id, content=content)
    db.add(comment)
    db.commit()
    db.refresh(comment)

    message = new_comment_message(listing)
    (fanout or NotificationFanout()).notify(
        db,
        vehicle_id,
        NotificationType.NEW_COMMENT.value,
        message,
        actor_id=user_id,
        metadata={"comment_id": comment.id},
    )
    db.refresh(comment)
    return comment


def delete_comment(db: Session, comment_id: int, user_id: str):
    comment = db.query(Comment).filter(Comment.id == comment_id).first()
    if not comment:
        raise ListingNotFound(f"Comment {comment_id} not found")
    if comment.user_id != user_id and not is_admin(db, user_id):
        raise PermissionDenied("Only the author can delete this comment")
    db.delete(comment)
    db.commit()


def comments_for(db: Session, vehicle_id: int) -> List[Comment]:
    return db.query(Comment).filter(Comment.vehicle_id == vehicle_id).order_by(Comment.created_at, Comment.id).all()
