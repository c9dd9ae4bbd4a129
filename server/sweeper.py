import threading
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case
from sqlalchemy.orm import Session

from database import Listing, ListingStatus, ApprovalStatus, NotificationType
from database.session import session_scope
from . import config
from .clock import SystemClock
from .events import AuctionEvent, EventBus, STATUS_CHANGED, event_bus
from .notifications import NotificationFanout, ending_soon_message, ended_message

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    ended: int = 0
    sold: int = 0
    ending_notifications: int = 0
    ended_notifications: int = 0
    errors: int = 0

    @property
    def finalized(self) -> int:
        return self.ended + self.sold


class AuctionSweeper:
    """Periodic finalizer for auctions past their end time."""

    def __init__(
        self,
        clock=None,
        fanout: Optional[NotificationFanout] = None,
        bus: Optional[EventBus] = None,
        ending_soon_window: Optional[timedelta] = None,
        interval_seconds: Optional[float] = None,
        session_factory=None,
    ):
        self.clock = clock or SystemClock()
        self.fanout = fanout or NotificationFanout()
        self.bus = bus or event_bus
        self.ending_soon_window = ending_soon_window or timedelta(hours=config.ENDING_SOON_WINDOW_HOURS)
        self.interval_seconds = config.SWEEP_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self.session_factory = session_factory
        self.running = False
        self._stop_event = threading.Event()

    def _announce_ending_soon(self, db: Session, listing: Listing) -> int:
        return self.fanout.notify(
            db,
            listing.id,
            NotificationType.AUCTION_ENDING.value,
            ending_soon_message(listing),
            metadata={
                "auction_end_time": listing.auction_end_time.isoformat(),
                "vehicle_make": listing.make,
                "vehicle_model": listing.model,
            },
        )

    def _finalize(self, db: Session, listing_id: int, now: datetime) -> Optional[Listing]:
        """
        Move one expired listing out of active.

        The sold/ended choice is made inside the UPDATE from the row's own
        bid_count, so a bid committed just before the sweep is counted.
        Returns the finalized listing, or None if it was no longer active.
        """
        rows_updated = db.query(Listing).filter(
            Listing.id == listing_id,
            Listing.status == ListingStatus.ACTIVE.value,
            Listing.auction_end_time <= now,
        ).update({
            "status": case(
                (Listing.bid_count > 0, ListingStatus.SOLD.value),
                else_=ListingStatus.ENDED.value,
            ),
            "version": Listing.version + 1,
            "updated_at": now,
        }, synchronize_session=False)
        db.commit()

        if rows_updated == 0:
            return None
        return db.query(Listing).populate_existing().filter(Listing.id == listing_id).first()

    def _after_finalize(self, db: Session, listing: Listing) -> int:
        sold = listing.status == ListingStatus.SOLD.value
        try:
            self.bus.publish(AuctionEvent(
                vehicle_id=listing.id,
                kind=STATUS_CHANGED,
                data={"status": listing.status, "current_bid": str(listing.current_bid), "bid_count": listing.bid_count},
            ))
        except Exception as e:
            logger.error(f"Failed to publish status change for vehicle {listing.id}: {e}", exc_info=True)

        return self.fanout.notify(
            db,
            listing.id,
            NotificationType.AUCTION_ENDED.value,
            ended_message(listing, sold),
            metadata={
                "final_bid": str(listing.current_bid),
                "status": listing.status,
                "reserve_met": listing.reserve_met,
                "vehicle_make": listing.make,
                "vehicle_model": listing.model,
            },
        )

    def run_once(self, db: Session) -> SweepReport:
        """
        One sweep: announce auctions ending within the window, then finalize
        every active auction whose end time has passed. Each listing is
        handled on its own; a failure is logged and the sweep moves on.
        """
        report = SweepReport()
        now = self.clock.now()
        window_end = now + self.ending_soon_window

        try:
            ending_soon_ids = [row.id for row in db.query(Listing.id).filter(
                Listing.status == ListingStatus.ACTIVE.value,
                Listing.approval_status == ApprovalStatus.APPROVED.value,
                Listing.auction_end_time > now,
                Listing.auction_end_time <= window_end,
            ).all()]
        except Exception as e:
            logger.error(f"Error fetching auctions ending soon: {e}", exc_info=True)
            db.rollback()
            report.errors += 1
            ending_soon_ids = []

        for listing_id in ending_soon_ids:
            try:
                listing = db.get(Listing, listing_id)
                if listing is not None:
                    report.ending_notifications += self._announce_ending_soon(db, listing)
            except Exception as e:
                logger.error(f"Error announcing end of vehicle {listing_id}: {e}", exc_info=True)
                db.rollback()
                report.errors += 1

        try:
            expired_ids = [row.id for row in db.query(Listing.id).filter(
                Listing.status == ListingStatus.ACTIVE.value,
                Listing.auction_end_time <= now,
            ).order_by(Listing.auction_end_time).all()]
        except Exception as e:
            logger.error(f"Error fetching ended auctions: {e}", exc_info=True)
            db.rollback()
            report.errors += 1
            return report

        if expired_ids:
            logger.info(f"Found {len(expired_ids)} ended auctions to process")

        for listing_id in expired_ids:
            try:
                listing = self._finalize(db, listing_id, now)
            except Exception as e:
                logger.error(f"Error finalizing vehicle {listing_id}: {e}", exc_info=True)
                db.rollback()
                report.errors += 1
                continue

            if listing is None:
                # Finalized by an overlapping sweep
                continue

            if listing.status == ListingStatus.SOLD.value:
                report.sold += 1
            else:
                report.ended += 1
            logger.info(f"Updated vehicle {listing.id} status to {listing.status}")

            try:
                report.ended_notifications += self._after_finalize(db, listing)
            except Exception as e:
                logger.error(f"Error notifying watchers of vehicle {listing_id}: {e}", exc_info=True)
                db.rollback()
                report.errors += 1

        return report

    def run_loop(self):
        """Main sweeper loop. Each run gets its own session."""
        self.running = True
        self._stop_event.clear()
        logger.info(f"Sweeper loop started (every {self.interval_seconds}s)")

        while self.running:
            try:
                with session_scope(self.session_factory) as db:
                    report = self.run_once(db)
                if report.finalized or report.ending_notifications or report.errors:
                    logger.info(
                        f"Sweep finished: {report.sold} sold, {report.ended} ended, "
                        f"{report.ending_notifications} ending-soon notifications, {report.errors} errors"
                    )
            except KeyboardInterrupt:
                logger.info("Sweeper loop interrupted")
                self.running = False
                break
            except Exception as e:
                logger.error(f"Error in sweeper loop: {e}", exc_info=True)

            self._stop_event.wait(self.interval_seconds)

    def stop(self):
        """Stop the sweeper loop."""
        self.running = False
        self._stop_event.set()
