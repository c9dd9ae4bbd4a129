import pytest
from datetime import timedelta
from decimal import Decimal
from sqlalchemy.exc import IntegrityError
from database.models import (
    Listing, Bid, Watch, Notification, UserRole,
    ListingStatus, ApprovalStatus, NotificationType, Role,
)
from server.clock import utcnow


def test_listing_defaults(db_session):
    """A freshly inserted listing starts active, pending, with an empty ledger."""
    listing = Listing(
        seller_id="seller",
        make="BMW",
        model="M3",
        year=2004,
        auction_end_time=utcnow() + timedelta(days=1),
    )
    db_session.add(listing)
    db_session.commit()
    db_session.refresh(listing)

    assert listing.id is not None
    assert listing.status == ListingStatus.ACTIVE.value
    assert listing.approval_status == ApprovalStatus.PENDING.value
    assert listing.current_bid == Decimal("0")
    assert listing.bid_count == 0
    assert listing.version == 0
    assert listing.images == []
    assert listing.title == "2004 BMW M3"


def test_reserve_met(listing_factory):
    no_reserve = listing_factory()
    assert no_reserve.reserve_met is True

    under = listing_factory(reserve_price=Decimal("5000"), current_bid=Decimal("4900"), bid_count=2)
    assert under.reserve_met is False

    exact = listing_factory(reserve_price=Decimal("5000"), current_bid=Decimal("5000"), bid_count=3)
    assert exact.reserve_met is True


def test_bid_listing_relationship(db_session, approved_listing):
    bid = Bid(vehicle_id=approved_listing.id, bidder_id="testuser", amount=Decimal("100.00"))
    db_session.add(bid)
    db_session.commit()

    db_session.refresh(approved_listing)
    assert [b.id for b in approved_listing.bids] == [bid.id]
    assert bid.listing.id == approved_listing.id


def test_watch_defaults_and_uniqueness(db_session, approved_listing):
    watch = Watch(user_id="testuser", vehicle_id=approved_listing.id)
    db_session.add(watch)
    db_session.commit()
    assert watch.notify_on_sale is True
    assert watch.notify_on_bid is False

    db_session.add(Watch(user_id="testuser", vehicle_id=approved_listing.id))
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_lifecycle_notifications_unique_per_user_vehicle(db_session, approved_listing):
    """auction_ending / auction_ended may exist at most once per (user, vehicle)."""
    def add(kind):
        db_session.add(Notification(user_id="testuser", vehicle_id=approved_listing.id, type=kind, message="m"))
        db_session.commit()

    add(NotificationType.AUCTION_ENDING.value)
    with pytest.raises(IntegrityError):
        add(NotificationType.AUCTION_ENDING.value)
    db_session.rollback()


def test_activity_notifications_not_deduplicated(db_session, approved_listing):
    for _ in range(2):
        db_session.add(Notification(
            user_id="testuser",
            vehicle_id=approved_listing.id,
            type=NotificationType.NEW_BID.value,
            message="New bid",
        ))
        db_session.commit()

    assert db_session.query(Notification).count() == 2


def test_notification_metadata_column(db_session, approved_listing):
    db_session.add(Notification(
        user_id="testuser",
        vehicle_id=approved_listing.id,
        type=NotificationType.NEW_BID.value,
        message="New bid",
        payload={"amount": "100.00"},
    ))
    db_session.commit()

    notification = db_session.query(Notification).one()
    assert notification.payload == {"amount": "100.00"}
    assert notification.is_read is False
    assert "metadata" in Notification.__table__.columns


def test_user_role_unique(db_session):
    db_session.add(UserRole(user_id="admin", role=Role.ADMIN.value))
    db_session.commit()
    db_session.add(UserRole(user_id="admin", role=Role.ADMIN.value))
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_enum_values():
    assert ListingStatus.ACTIVE.value == "active"
    assert ListingStatus.ENDED.value == "ended"
    assert ListingStatus.SOLD.value == "sold"
    assert ApprovalStatus.DECLINED.value == "declined"
    assert NotificationType.AUCTION_ENDING.value == "auction_ending"
    assert NotificationType.NEW_COMMENT.value == "new_comment"
