import pytest
from decimal import Decimal
from unittest.mock import patch

from database.models import Watch, Notification, NotificationType
from server import notifications as notification_service
from server.notifications import NotificationFanout


@pytest.fixture
def fanout():
    return NotificationFanout()


@pytest.fixture
def watched_listing(db_session, approved_listing):
    """alice: defaults (sale only), bob: sale and bids, carol: bids only."""
    db_session.add_all([
        Watch(user_id="alice", vehicle_id=approved_listing.id),
        Watch(user_id="bob", vehicle_id=approved_listing.id, notify_on_bid=True),
        Watch(user_id="carol", vehicle_id=approved_listing.id, notify_on_sale=False, notify_on_bid=True),
    ])
    db_session.commit()
    return approved_listing


def test_recipients_follow_preferences(db_session, fanout, watched_listing):
    vid = watched_listing.id
    assert fanout.recipients(db_session, vid, NotificationType.AUCTION_ENDING.value) == ["alice", "bob"]
    assert fanout.recipients(db_session, vid, NotificationType.AUCTION_ENDED.value) == ["alice", "bob"]
    assert fanout.recipients(db_session, vid, NotificationType.NEW_BID.value) == ["bob", "carol"]
    assert fanout.recipients(db_session, vid, NotificationType.NEW_COMMENT.value) == ["bob", "carol"]


def test_actor_excluded(db_session, fanout, watched_listing):
    assert fanout.recipients(db_session, watched_listing.id, NotificationType.NEW_BID.value, actor_id="bob") == ["carol"]


def test_unknown_type_rejected(db_session, fanout, watched_listing):
    with pytest.raises(ValueError):
        fanout.recipients(db_session, watched_listing.id, "price_drop")


def test_notify_creates_one_row_per_recipient(db_session, fanout, watched_listing):
    created = fanout.notify(
        db_session,
        watched_listing.id,
        NotificationType.NEW_BID.value,
        "New bid of $100.00 on 1989 Porsche 911",
        actor_id="carol",
        metadata={"amount": "100.00"},
    )

    assert created == 1
    notification = db_session.query(Notification).one()
    assert notification.user_id == "bob"
    assert notification.payload == {"amount": "100.00"}


def test_lifecycle_notification_deduplicated(db_session, fanout, watched_listing):
    first = fanout.notify(db_session, watched_listing.id, NotificationType.AUCTION_ENDING.value, "Auction ending soon")
    second = fanout.notify(db_session, watched_listing.id, NotificationType.AUCTION_ENDING.value, "Auction ending soon")

    assert first == 2
    assert second == 0
    assert db_session.query(Notification).count() == 2


def test_activity_notifications_repeat(db_session, fanout, watched_listing):
    fanout.notify(db_session, watched_listing.id, NotificationType.NEW_BID.value, "bid 1")
    fanout.notify(db_session, watched_listing.id, NotificationType.NEW_BID.value, "bid 2")
    assert db_session.query(Notification).filter(Notification.user_id == "bob").count() == 2


def test_duplicate_race_skipped(db_session, fanout, watched_listing):
    """A concurrent sweep inserting the same lifecycle row first costs only that row."""
    with patch.object(fanout, "_already_sent", return_value=False):
        fanout.notify(db_session, watched_listing.id, NotificationType.AUCTION_ENDED.value, "Auction ended")
        created = fanout.notify(db_session, watched_listing.id, NotificationType.AUCTION_ENDED.value, "Auction ended")

    assert created == 0
    assert db_session.query(Notification).count() == 2


def test_notify_never_raises(db_session, fanout, watched_listing):
    with patch.object(fanout, "recipients", side_effect=RuntimeError("db gone")):
        assert fanout.notify(db_session, watched_listing.id, NotificationType.NEW_BID.value, "bid") == 0


def test_no_watchers(db_session, fanout, approved_listing):
    assert fanout.notify(db_session, approved_listing.id, NotificationType.AUCTION_ENDED.value, "Auction ended") == 0


def test_list_and_mark_read(db_session, fanout, watched_listing):
    fanout.notify(db_session, watched_listing.id, NotificationType.NEW_BID.value, "bid 1")
    fanout.notify(db_session, watched_listing.id, NotificationType.NEW_BID.value, "bid 2")

    rows = notification_service.list_notifications(db_session, "bob")
    assert [n.message for n in rows] == ["bid 2", "bid 1"]

    marked = notification_service.mark_read(db_session, "bob", rows[0].id)
    assert marked.is_read is True
    assert [n.message for n in notification_service.list_notifications(db_session, "bob", unread_only=True)] == ["bid 1"]

    # Someone else's notification
    assert notification_service.mark_read(db_session, "carol", rows[1].id) is None

    assert notification_service.mark_all_read(db_session, "bob") == 1
    assert notification_service.list_notifications(db_session, "bob", unread_only=True) == []
    assert len(notification_service.list_notifications(db_session, "carol", limit=1)) == 1


def test_messages(listing_factory):
    listing = listing_factory(current_bid=Decimal("12500"), bid_count=4)
    assert notification_service.ended_message(listing, sold=True) == "Auction sold: 1989 Porsche 911 for $12,500.00"
    assert notification_service.ended_message(listing, sold=False) == "Auction ended: 1989 Porsche 911 (no bids)"
    assert notification_service.new_comment_message(listing) == "New comment on 1989 Porsche 911"
