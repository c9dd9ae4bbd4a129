"""
Bid admission: the only writer of a listing's current_bid / bid_count.

A bid is admitted by one transaction that appends the ledger row and
advances the listing with a compare-and-swap on its version column, so two
bids can never both be admitted against the same current_bid. Rejections
come back as BidResult values carrying a BidError, never as exceptions.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
import logging

from sqlalchemy.exc import SQLAlchemyError, OperationalError
from sqlalchemy.orm import Session

from database import Listing, Bid, ListingStatus, ApprovalStatus, NotificationType
from . import config
from .clock import SystemClock
from .events import AuctionEvent, EventBus, BID_PLACED, event_bus
from .listings import is_admin
from .locks import KeyedLocks, listing_locks
from .notifications import NotificationFanout, new_bid_message

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# Postgres serialization_failure / deadlock_detected
_RETRYABLE_PGCODES = {"40001", "40P01"}


class BidErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    NOT_APPROVED = "not_approved"
    AUCTION_ENDED = "auction_ended"
    SELF_BID_FORBIDDEN = "self_bid_forbidden"
    ADMIN_CANNOT_BID = "admin_cannot_bid"
    BID_TOO_LOW = "bid_too_low"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    STORAGE_UNAVAILABLE = "storage_unavailable"


@dataclass(frozen=True)
class BidError:
    code: BidErrorCode
    message: str
    minimum_required: Optional[Decimal] = None


@dataclass(frozen=True)
class BidPlacement:
    bid_id: int
    vehicle_id: int
    bidder_id: str
    amount: Decimal
    current_bid: Decimal
    bid_count: int


@dataclass(frozen=True)
class BidResult:
    placement: Optional[BidPlacement] = None
    error: Optional[BidError] = None

    @property
    def ok(self) -> bool:
        return self.placement is not None


def minimum_bid(listing: Listing, min_increment: Decimal = None, min_first_bid: Decimal = None) -> Decimal:
    """Smallest amount the next bid on listing may carry."""
    min_increment = config.MIN_INCREMENT if min_increment is None else min_increment
    min_first_bid = config.MIN_FIRST_BID if min_first_bid is None else min_first_bid

    current_bid = Decimal(listing.current_bid or 0)
    if current_bid > 0:
        return current_bid + min_increment
    return max(Decimal(listing.starting_bid or 0), min_first_bid)


def _is_transient(error: SQLAlchemyError) -> bool:
    """Write conflicts the database asks us to retry."""
    if not isinstance(error, OperationalError):
        return False
    orig = getattr(error, "orig", None)
    if getattr(orig, "pgcode", None) in _RETRYABLE_PGCODES:
        return True
    return "database is locked" in str(orig)


class BidAdmissionEngine:
    """Validates and atomically admits bids."""

    def __init__(
        self,
        clock=None,
        fanout: Optional[NotificationFanout] = None,
        bus: Optional[EventBus] = None,
        locks: Optional[KeyedLocks] = None,
        min_increment: Optional[Decimal] = None,
        min_first_bid: Optional[Decimal] = None,
        max_retries: Optional[int] = None,
    ):
        self.clock = clock or SystemClock()
        self.fanout = fanout or NotificationFanout()
        self.bus = bus or event_bus
        self.locks = locks or listing_locks
        self.min_increment = config.MIN_INCREMENT if min_increment is None else min_increment
        self.min_first_bid = config.MIN_FIRST_BID if min_first_bid is None else min_first_bid
        self.max_retries = config.BID_MAX_RETRIES if max_retries is None else max_retries

    def minimum_bid(self, listing: Listing) -> Decimal:
        return minimum_bid(listing, self.min_increment, self.min_first_bid)

    def _check(self, db: Session, listing: Listing, bidder_id: str, amount: Decimal, now) -> Optional[BidError]:
        """Checks after the listing is known to exist; first failure wins."""
        if listing.approval_status != ApprovalStatus.APPROVED.value:
            return BidError(BidErrorCode.NOT_APPROVED, "This vehicle is pending approval and cannot receive bids")

        if listing.status != ListingStatus.ACTIVE.value or now >= listing.auction_end_time:
            return BidError(BidErrorCode.AUCTION_ENDED, "This auction has ended")

        if bidder_id == listing.seller_id:
            return BidError(BidErrorCode.SELF_BID_FORBIDDEN, "You cannot bid on your own listing")

        if is_admin(db, bidder_id):
            return BidError(BidErrorCode.ADMIN_CANNOT_BID, "Administrators cannot place bids")

        minimum = self.minimum_bid(listing)
        if amount <= 0 or amount < minimum:
            return BidError(
                BidErrorCode.BID_TOO_LOW,
                f"Minimum bid is ${minimum:,.2f}",
                minimum_required=minimum,
            )
        return None

    def _try_admit(self, db: Session, vehicle_id: int, bidder_id: str, amount: Decimal) -> Optional[BidResult]:
        """
        One read-check-write attempt.

        Returns:
            BidResult, or None when the compare-and-swap lost to a concurrent writer
        """
        now = self.clock.now()
        listing = db.query(Listing).populate_existing().filter(Listing.id == vehicle_id).first()
        if not listing:
            db.rollback()
            return BidResult(error=BidError(BidErrorCode.NOT_FOUND, "Vehicle not found"))

        error = self._check(db, listing, bidder_id, amount, now)
        if error:
            db.rollback()
            return BidResult(error=error)

        expected_version = listing.version
        new_bid_count = listing.bid_count + 1

        # Atomic update: only applies if nobody wrote the listing since we read it
        rows_updated = db.query(Listing).filter(
            Listing.id == vehicle_id,
            Listing.version == expected_version,
            Listing.status == ListingStatus.ACTIVE.value,
            Listing.auction_end_time > now,
        ).update({
            "current_bid": amount,
            "bid_count": Listing.bid_count + 1,
            "version": Listing.version + 1,
            "updated_at": now,
        }, synchronize_session=False)

        if rows_updated == 0:
            db.rollback()
            return None

        bid = Bid(vehicle_id=vehicle_id, bidder_id=bidder_id, amount=amount, created_at=now)
        db.add(bid)
        db.flush()
        bid_id = bid.id
        db.commit()

        return BidResult(placement=BidPlacement(
            bid_id=bid_id,
            vehicle_id=vehicle_id,
            bidder_id=bidder_id,
            amount=amount,
            current_bid=amount,
            bid_count=new_bid_count,
        ))

    def _admit(self, db: Session, vehicle_id: int, bidder_id: str, amount: Decimal) -> BidResult:
        for attempt in range(self.max_retries):
            try:
                result = self._try_admit(db, vehicle_id, bidder_id, amount)
            except SQLAlchemyError as e:
                db.rollback()
                if not _is_transient(e):
                    logger.error(f"Storage error placing bid on vehicle {vehicle_id}: {e}", exc_info=True)
                    return BidResult(error=BidError(
                        BidErrorCode.STORAGE_UNAVAILABLE,
                        "Bidding is temporarily unavailable, please try again",
                    ))
                result = None

            if result is not None:
                return result
            logger.warning(
                f"{BidErrorCode.CONCURRENT_MODIFICATION.value} on vehicle {vehicle_id}, "
                f"attempt {attempt + 1}/{self.max_retries}"
            )

        return BidResult(error=BidError(
            BidErrorCode.STORAGE_UNAVAILABLE,
            "The auction is busy; check the current bid and try again",
        ))

    def _after_commit(self, db: Session, placement: BidPlacement):
        """Real-time event and watcher fan-out. Failures never reach the bidder."""
        try:
            self.bus.publish(AuctionEvent(
                vehicle_id=placement.vehicle_id,
                kind=BID_PLACED,
                data={
                    "bid_id": placement.bid_id,
                    "bidder_id": placement.bidder_id,
                    "amount": str(placement.amount),
                    "current_bid": str(placement.current_bid),
                    "bid_count": placement.bid_count,
                },
            ))
        except Exception as e:
            logger.error(f"Failed to publish bid event for vehicle {placement.vehicle_id}: {e}", exc_info=True)

        try:
            listing = db.get(Listing, placement.vehicle_id)
            self.fanout.notify(
                db,
                placement.vehicle_id,
                NotificationType.NEW_BID.value,
                new_bid_message(listing, placement.amount),
                actor_id=placement.bidder_id,
                metadata={"amount": str(placement.amount), "bid_count": placement.bid_count},
            )
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to notify watchers of bid on vehicle {placement.vehicle_id}: {e}", exc_info=True)

    def place_bid(self, db: Session, vehicle_id: int, bidder_id: str, amount) -> BidResult:
        """
        Admit amount from bidder_id on vehicle_id, or say precisely why not.

        Checks, in order: listing exists, approved, active and not past its
        end time, bidder is not the seller, bidder is not an admin, amount
        meets the minimum. A lost compare-and-swap re-runs every check
        against fresh state, up to max_retries times.
        """
        if not isinstance(amount, Decimal):
            amount = Decimal(str(amount))
        amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)

        with self.locks.hold(vehicle_id):
            result = self._admit(db, vehicle_id, bidder_id, amount)

        if result.ok:
            logger.info(f"Bid {result.placement.bid_id} of {amount} admitted on vehicle {vehicle_id} (bid #{result.placement.bid_count})")
            self._after_commit(db, result.placement)
        else:
            logger.info(f"Bid of {amount} on vehicle {vehicle_id} by {bidder_id} rejected: {result.error.code.value}")
        return result
