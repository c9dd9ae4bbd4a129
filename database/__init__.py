from .models import (
    Listing, Bid, Watch, Notification, UserRole, Comment,
    ListingStatus, ApprovalStatus, NotificationType, Role,
)
from .session import init_db, get_db, SessionLocal

__all__ = [
    "Listing", "Bid", "Watch", "Notification", "UserRole", "Comment",
    "ListingStatus", "ApprovalStatus", "NotificationType", "Role",
    "init_db", "get_db", "SessionLocal",
]
