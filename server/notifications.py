"""
Notification fan-out: turns one listing event into per-watcher rows.

Runs only after the listing write has committed and never raises back
into it.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import Listing, Notification, NotificationType, Watch
from database.models import LIFECYCLE_NOTIFICATION_TYPES

logger = logging.getLogger(__name__)

# Event families and the watch preference that gates each
SALE_EVENTS = {NotificationType.AUCTION_ENDING.value, NotificationType.AUCTION_ENDED.value}
ACTIVITY_EVENTS = {NotificationType.NEW_BID.value, NotificationType.NEW_COMMENT.value}


def _money(amount) -> str:
    return f"${Decimal(amount or 0):,.2f}"


def ending_soon_message(listing: Listing) -> str:
    return f"Auction ending soon: {listing.title}"


def ended_message(listing: Listing, sold: bool) -> str:
    if sold:
        return f"Auction sold: {listing.title} for {_money(listing.current_bid)}"
    return f"Auction ended: {listing.title} (no bids)"


def new_bid_message(listing: Listing, amount) -> str:
    return f"New bid of {_money(amount)} on {listing.title}"


def new_comment_message(listing: Listing) -> str:
    return f"New comment on {listing.title}"


class NotificationFanout:
    """Resolves interested watchers and materializes one notification each."""

    def recipients(self, db: Session, vehicle_id: int, event_type: str, actor_id: Optional[str] = None) -> List[str]:
        """User ids that should hear about event_type on vehicle_id."""
        query = db.query(Watch.user_id).filter(Watch.vehicle_id == vehicle_id)
        if event_type in SALE_EVENTS:
            query = query.filter(Watch.notify_on_sale.is_(True))
        elif event_type in ACTIVITY_EVENTS:
            query = query.filter(Watch.notify_on_bid.is_(True))
        else:
            raise ValueError(f"Unknown notification type: {event_type}")

        return [row.user_id for row in query.order_by(Watch.id).all() if row.user_id != actor_id]

    def _already_sent(self, db: Session, user_id: str, vehicle_id: int, event_type: str) -> bool:
        return db.query(Notification.id).filter(
            Notification.user_id == user_id,
            Notification.vehicle_id == vehicle_id,
            Notification.type == event_type,
        ).first() is not None

    def notify(
        self,
        db: Session,
        vehicle_id: int,
        event_type: str,
        message: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Create notifications for vehicle_id's interested watchers.

        Lifecycle types (auction_ending, auction_ended) are deduplicated per
        (user, vehicle, type). Each row commits on its own, so one failing
        recipient does not cost the others theirs.

        Returns:
            Number of notifications created
        """
        try:
            user_ids = self.recipients(db, vehicle_id, event_type, actor_id)
        except Exception as e:
            logger.error(f"Could not resolve recipients for {event_type} on vehicle {vehicle_id}: {e}", exc_info=True)
            db.rollback()
            return 0

        dedup = event_type in LIFECYCLE_NOTIFICATION_TYPES
        created = 0
        for user_id in user_ids:
            try:
                if dedup and self._already_sent(db, user_id, vehicle_id, event_type):
                    continue
                db.add(Notification(
                    user_id=user_id,
                    vehicle_id=vehicle_id,
                    type=event_type,
                    message=message,
                    payload=metadata,
                ))
                db.commit()
                created += 1
            except IntegrityError:
                # Lost a race with a concurrent sweep for the same lifecycle row
                db.rollback()
                logger.info(f"Skipped duplicate {event_type} notification for user {user_id} on vehicle {vehicle_id}")
            except Exception as e:
                db.rollback()
                logger.error(f"Failed to create {event_type} notification for user {user_id} on vehicle {vehicle_id}: {e}", exc_info=True)

        if created:
            logger.info(f"Created {created} {event_type} notifications for vehicle {vehicle_id}")
        return created


def list_notifications(db: Session, user_id: str, unread_only: bool = False, limit: Optional[int] = None) -> List[Notification]:
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    query = query.order_by(Notification.created_at.desc(), Notification.id.desc())
    if limit:
        query = query.limit(limit)
    return query.all()


def mark_read(db: Session, user_id: str, notification_id: int) -> Optional[Notification]:
    """Mark one of user_id's notifications read. None if it is not theirs."""
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == user_id,
    ).first()
    if not notification:
        return None
    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification


def mark_all_read(db: Session, user_id: str) -> int:
    rows_updated = db.query(Notification).filter(
        Notification.user_id == user_id,
        Notification.is_read.is_(False),
    ).update({"is_read": True}, synchronize_session=False)
    db.commit()
    return rows_updated
