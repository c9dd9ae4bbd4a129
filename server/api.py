from fastapi import FastAPI, Depends, HTTPException, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from datetime import datetime, timedelta, timezone
from typing import Optional, List
import jwt
import logging

from database import get_db, ListingStatus, ApprovalStatus
from . import config
from . import listings as listing_service
from . import notifications as notification_service
from .bidding import BidAdmissionEngine, BidErrorCode
from .listings import ListingNotFound, PermissionDenied, InvalidListingState
from .models import (
    AuthRequest, AuthResponse, CreateListingRequest, UpdateListingRequest, ListingResponse,
    ApprovalRequest, PlaceBidRequest, PlaceBidResponse, BidErrorResponse, BidResponse,
    WatchRequest, WatchResponse, NotificationResponse, CommentRequest, CommentResponse,
    SweepResponse,
)
from .sweeper import AuctionSweeper

logger = logging.getLogger(__name__)

app = FastAPI(title="Vehicle Auction Engine")
bid_engine = BidAdmissionEngine()
sweeper = AuctionSweeper()

BID_ERROR_STATUS = {
    BidErrorCode.NOT_FOUND: 404,
    BidErrorCode.NOT_APPROVED: 403,
    BidErrorCode.AUCTION_ENDED: 409,
    BidErrorCode.SELF_BID_FORBIDDEN: 403,
    BidErrorCode.ADMIN_CANNOT_BID: 403,
    BidErrorCode.BID_TOO_LOW: 400,
    BidErrorCode.CONCURRENT_MODIFICATION: 409,
    BidErrorCode.STORAGE_UNAVAILABLE: 503,
}


@app.exception_handler(ListingNotFound)
def _not_found_handler(request: Request, exc: ListingNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(PermissionDenied)
def _permission_handler(request: Request, exc: PermissionDenied):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(InvalidListingState)
def _invalid_state_handler(request: Request, exc: InvalidListingState):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def verify_token(authorization: str = Header(None)) -> str:
    """Verify the bearer token and return the caller's user id."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")

    token = authorization.split(" ")[1]
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


def require_admin(user_id: str = Depends(verify_token), db: Session = Depends(get_db)) -> str:
    if not listing_service.is_admin(db, user_id):
        raise HTTPException(status_code=403, detail="Administrator role required")
    return user_id


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC; accept aware input from clients."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _listing_response(listing) -> ListingResponse:
    response = ListingResponse.model_validate(listing)
    if listing.status == ListingStatus.ACTIVE.value:
        response.minimum_bid = bid_engine.minimum_bid(listing)
    return response


def _visible_to(listing, user_id: str, db: Session) -> bool:
    """Unapproved listings are visible to their seller and to admins only."""
    if listing.approval_status == ApprovalStatus.APPROVED.value:
        return True
    return listing.seller_id == user_id or listing_service.is_admin(db, user_id)


def _visible_listing(db: Session, vehicle_id: int, user_id: str):
    """The listing, or 404 when it does not exist or the caller cannot see it."""
    listing = listing_service.get_listing(db, vehicle_id)
    if not listing or not _visible_to(listing, user_id, db):
        raise HTTPException(status_code=404, detail="Vehicle not found")
    return listing


@app.post("/auth", response_model=AuthResponse)
def auth(request: AuthRequest):
    """Issue an API token for a user id."""
    # Stand-in for the external identity provider: any credentials are accepted
    token = jwt.encode(
        {"sub": request.user_id, "exp": datetime.now(timezone.utc) + timedelta(days=config.TOKEN_TTL_DAYS)},
        config.SECRET_KEY,
        algorithm="HS256"
    )
    return AuthResponse(token=token)


@app.post("/vehicles", response_model=ListingResponse)
def create_vehicle(request: CreateListingRequest, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    """List a vehicle; it stays pending until an admin approves it."""
    data = request.model_dump()
    data["auction_end_time"] = _naive_utc(data["auction_end_time"])
    listing = listing_service.create_listing(db, user_id, data)
    return _listing_response(listing)


@app.get("/vehicles", response_model=List[ListingResponse])
def list_vehicles(
    status: Optional[str] = None,
    approval_status: Optional[str] = ApprovalStatus.APPROVED.value,
    seller_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
    db: Session = Depends(get_db),
    user_id: str = Depends(verify_token),
):
    """List vehicles. Non-approved listings are only listed for their seller or admins."""
    if approval_status != ApprovalStatus.APPROVED.value and seller_id != user_id:
        if not listing_service.is_admin(db, user_id):
            raise HTTPException(status_code=403, detail="Only approved listings are public")
    rows = listing_service.list_listings(
        db, status=status, approval_status=approval_status, seller_id=seller_id, skip=skip, limit=min(limit, 200)
    )
    return [_listing_response(listing) for listing in rows]


@app.get("/vehicles/{vehicle_id}", response_model=ListingResponse)
def get_vehicle(vehicle_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    return _listing_response(_visible_listing(db, vehicle_id, user_id))


@app.patch("/vehicles/{vehicle_id}", response_model=ListingResponse)
def update_vehicle(vehicle_id: int, request: UpdateListingRequest, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    changes = request.model_dump(exclude_unset=True)
    if "auction_end_time" in changes:
        changes["auction_end_time"] = _naive_utc(changes["auction_end_time"])
    listing = listing_service.update_listing(db, vehicle_id, user_id, changes)
    return _listing_response(listing)


@app.delete("/vehicles/{vehicle_id}")
def delete_vehicle(vehicle_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    listing_service.delete_listing(db, vehicle_id, user_id)
    return {"message": "Listing deleted"}


@app.post("/vehicles/{vehicle_id}/approval", response_model=ListingResponse)
def moderate_vehicle(vehicle_id: int, request: ApprovalRequest, db: Session = Depends(get_db), admin_id: str = Depends(require_admin)):
    """Approve or decline a listing. Declining requires a note for the seller."""
    if request.approval_status == ApprovalStatus.DECLINED.value and not (request.admin_notes or "").strip():
        raise HTTPException(status_code=422, detail="A note is required when declining a listing")
    listing = listing_service.set_approval_status(db, vehicle_id, admin_id, request.approval_status, request.admin_notes)
    return _listing_response(listing)


@app.post("/vehicles/{vehicle_id}/bids", response_model=PlaceBidResponse, responses={400: {"model": BidErrorResponse}})
def place_bid(vehicle_id: int, request: PlaceBidRequest, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    """Place a bid. Rejections carry a machine-readable code and, for low bids, the live minimum."""
    result = bid_engine.place_bid(db, vehicle_id, user_id, request.amount)
    if not result.ok:
        error = BidErrorResponse(
            code=result.error.code.value,
            message=result.error.message,
            minimum_required=result.error.minimum_required,
        )
        raise HTTPException(status_code=BID_ERROR_STATUS[result.error.code], detail=error.model_dump(mode="json"))

    placement = result.placement
    return PlaceBidResponse(
        bid_id=placement.bid_id,
        vehicle_id=placement.vehicle_id,
        amount=placement.amount,
        current_bid=placement.current_bid,
        bid_count=placement.bid_count,
    )


@app.get("/vehicles/{vehicle_id}/bids", response_model=List[BidResponse])
def get_bids(vehicle_id: int, limit: Optional[int] = None, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    """Bid history, highest first."""
    _visible_listing(db, vehicle_id, user_id)
    return [BidResponse.model_validate(b) for b in listing_service.bid_history(db, vehicle_id, limit)]


@app.get("/me/bids", response_model=List[BidResponse])
def my_bids(db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    return [BidResponse.model_validate(b) for b in listing_service.bids_by_user(db, user_id)]


@app.put("/vehicles/{vehicle_id}/watch", response_model=WatchResponse)
def watch_vehicle(vehicle_id: int, request: WatchRequest, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    """Watch a vehicle, or change notification preferences on an existing watch."""
    _visible_listing(db, vehicle_id, user_id)
    watch = listing_service.watch(db, user_id, vehicle_id, request.notify_on_sale, request.notify_on_bid)
    return WatchResponse.model_validate(watch)


@app.patch("/vehicles/{vehicle_id}/watch", response_model=WatchResponse)
def update_watch(vehicle_id: int, request: WatchRequest, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    _visible_listing(db, vehicle_id, user_id)
    watch = listing_service.update_watch_preferences(db, user_id, vehicle_id, request.notify_on_sale, request.notify_on_bid)
    return WatchResponse.model_validate(watch)


@app.delete("/vehicles/{vehicle_id}/watch")
def unwatch_vehicle(vehicle_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    if not listing_service.unwatch(db, user_id, vehicle_id):
        raise HTTPException(status_code=404, detail="Not watching this vehicle")
    return {"message": "Removed from watchlist"}


@app.get("/me/watchlist", response_model=List[WatchResponse])
def my_watchlist(db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    return [WatchResponse.model_validate(w) for w in listing_service.watchlist(db, user_id)]


@app.get("/me/notifications", response_model=List[NotificationResponse])
def my_notifications(unread_only: bool = False, limit: Optional[int] = None, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    rows = notification_service.list_notifications(db, user_id, unread_only=unread_only, limit=limit)
    return [NotificationResponse.model_validate(n) for n in rows]


@app.post("/me/notifications/read-all")
def read_all_notifications(db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    updated = notification_service.mark_all_read(db, user_id)
    return {"updated": updated}


@app.post("/me/notifications/{notification_id}/read", response_model=NotificationResponse)
def read_notification(notification_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    notification = notification_service.mark_read(db, user_id, notification_id)
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return NotificationResponse.model_validate(notification)


@app.post("/vehicles/{vehicle_id}/comments", response_model=CommentResponse)
def comment_on_vehicle(vehicle_id: int, request: CommentRequest, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    _visible_listing(db, vehicle_id, user_id)
    comment = listing_service.add_comment(db, vehicle_id, user_id, request.content, fanout=bid_engine.fanout)
    return CommentResponse.model_validate(comment)


@app.get("/vehicles/{vehicle_id}/comments", response_model=List[CommentResponse])
def get_comments(vehicle_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    _visible_listing(db, vehicle_id, user_id)
    return [CommentResponse.model_validate(c) for c in listing_service.comments_for(db, vehicle_id)]


@app.delete("/comments/{comment_id}")
def remove_comment(comment_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    listing_service.delete_comment(db, comment_id, user_id)
    return {"message": "Comment deleted"}


@app.post("/admin/sweep", response_model=SweepResponse)
def run_sweep(db: Session = Depends(get_db), admin_id: str = Depends(require_admin)):
    """Run one lifecycle sweep now instead of waiting for the background loop."""
    report = sweeper.run_once(db)
    logger.info(f"Manual sweep by {admin_id}: {report.sold} sold, {report.ended} ended")
    return SweepResponse(
        ended=report.ended,
        sold=report.sold,
        ending_notifications=report.ending_notifications,
        ended_notifications=report.ended_notifications,
        errors=report.errors,
    )
