import requests
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
import pytz
from .config import SERVER_URL, REQUEST_TIMEOUT_SECONDS, get_token, get_timezone


class BidRejected(Exception):
    """The server refused the bid; code says why."""

    def __init__(self, code: str, message: str, minimum_required: Optional[Decimal] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.minimum_required = minimum_required


class BidOutcomeUnknown(Exception):
    """
    The bid request timed out. The server may still have committed it, so
    the listing was re-read instead of assuming failure.
    """

    def __init__(self, vehicle_id: int, amount: Decimal, listing: Optional[Dict[str, Any]]):
        super().__init__(f"Outcome of bid {amount} on vehicle {vehicle_id} is unknown")
        self.vehicle_id = vehicle_id
        self.amount = amount
        self.listing = listing

    @property
    def probably_admitted(self) -> bool:
        if not self.listing:
            return False
        return Decimal(str(self.listing["current_bid"])) == Decimal(self.amount)


def _as_decimal(value) -> Decimal:
    return Decimal(str(value))


class AuctionClient:
    """Client for communicating with the auction server."""

    def __init__(self):
        self.server_url = SERVER_URL
        self.token: Optional[str] = get_token()
        self.timezone = pytz.timezone(get_timezone())
        self.timeout = REQUEST_TIMEOUT_SECONDS

    def _get_headers(self) -> Dict[str, str]:
        """Get headers with authentication."""
        if not self.token:
            raise ValueError("Not authenticated. Run 'auction auth' first.")
        return {"Authorization": f"Bearer {self.token}"}

    def _check(self, response: requests.Response):
        """Raise with the server's error detail instead of a bare status line."""
        if response.ok:
            return
        try:
            error_msg = response.json().get("detail", response.text)
        except ValueError:
            response.raise_for_status()
            return
        if isinstance(error_msg, dict):
            error_msg = error_msg.get("message", str(error_msg))
        raise requests.exceptions.HTTPError(f"{response.status_code} {response.reason}: {error_msg}", response=response)

    def _get(self, path: str, **params):
        response = requests.get(f"{self.server_url}{path}", params=params or None, headers=self._get_headers(), timeout=self.timeout)
        self._check(response)
        return response.json()

    def _send(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None):
        response = requests.request(method, f"{self.server_url}{path}", json=payload, headers=self._get_headers(), timeout=self.timeout)
        self._check(response)
        return response.json()

    def authenticate(self, user_id: str, password: str) -> str:
        """Authenticate and return token."""
        response = requests.post(
            f"{self.server_url}/auth",
            json={"user_id": user_id, "password": password},
            timeout=self.timeout,
        )
        response.raise_for_status()
        self.token = response.json()["token"]
        return self.token

    def list_vehicles(self, status: Optional[str] = None, approval_status: Optional[str] = None, seller_id: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {k: v for k, v in {"status": status, "approval_status": approval_status, "seller_id": seller_id}.items() if v}
        return self._get("/vehicles", **params)

    def get_vehicle(self, vehicle_id: int) -> Dict[str, Any]:
        return self._get(f"/vehicles/{vehicle_id}")

    def place_bid(self, vehicle_id: int, amount: Decimal) -> Dict[str, Any]:
        """
        Submit a bid exactly once.

        Raises:
            BidRejected: the server refused the bid
            BidOutcomeUnknown: the request timed out; never retried blindly
        """
        try:
            response = requests.post(
                f"{self.server_url}/vehicles/{vehicle_id}/bids",
                json={"amount": str(amount)},
                headers=self._get_headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            try:
                listing = self.get_vehicle(vehicle_id)
            except requests.exceptions.RequestException:
                listing = None
            raise BidOutcomeUnknown(vehicle_id, amount, listing)

        if not response.ok:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = None
            if isinstance(detail, dict) and "code" in detail:
                minimum = detail.get("minimum_required")
                raise BidRejected(detail["code"], detail.get("message", ""), _as_decimal(minimum) if minimum is not None else None)
            self._check(response)
        return response.json()

    def bid_history(self, vehicle_id: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if limit:
            return self._get(f"/vehicles/{vehicle_id}/bids", limit=limit)
        return self._get(f"/vehicles/{vehicle_id}/bids")

    def watch(self, vehicle_id: int, notify_on_sale: Optional[bool] = None, notify_on_bid: Optional[bool] = None) -> Dict[str, Any]:
        return self._send("PUT", f"/vehicles/{vehicle_id}/watch", {"notify_on_sale": notify_on_sale, "notify_on_bid": notify_on_bid})

    def unwatch(self, vehicle_id: int) -> Dict[str, Any]:
        return self._send("DELETE", f"/vehicles/{vehicle_id}/watch")

    def notifications(self, unread_only: bool = False) -> List[Dict[str, Any]]:
        if unread_only:
            return self._get("/me/notifications", unread_only="true")
        return self._get("/me/notifications")

    def mark_read(self, notification_id: Optional[int] = None) -> Dict[str, Any]:
        if notification_id is None:
            return self._send("POST", "/me/notifications/read-all")
        return self._send("POST", f"/me/notifications/{notification_id}/read")

    def moderate(self, vehicle_id: int, approval_status: str, admin_notes: Optional[str] = None) -> Dict[str, Any]:
        return self._send("POST", f"/vehicles/{vehicle_id}/approval", {"approval_status": approval_status, "admin_notes": admin_notes})

    def sweep(self) -> Dict[str, Any]:
        return self._send("POST", "/admin/sweep")

    def to_local_time(self, utc_time_str: str) -> str:
        """Convert UTC time string to local timezone string."""
        dt_utc = datetime.fromisoformat(utc_time_str.replace("Z", "+00:00"))
        if dt_utc.tzinfo is None:
            dt_utc = pytz.UTC.localize(dt_utc)
        return dt_utc.astimezone(self.timezone).strftime("%Y-%m-%d %H:%M:%S")

    def time_remaining(self, auction_end_time: str, now: Optional[datetime] = None) -> str:
        """Compact countdown: "2d 3h", "3h 5m", "5m", or "Ended"."""
        dt_end = datetime.fromisoformat(auction_end_time.replace("Z", "+00:00"))
        if dt_end.tzinfo is None:
            dt_end = pytz.UTC.localize(dt_end)
        now = now or datetime.now(pytz.UTC)

        total_seconds = int((dt_end - now).total_seconds())
        if total_seconds <= 0:
            return "Ended"

        days, remainder = divmod(total_seconds, 86400)
        hours, remainder = divmod(remainder, 3600)
        minutes = remainder // 60
        if days > 0:
            return f"{days}d {hours}h"
        if hours > 0:
            return f"{hours}h {minutes}m"
        return f"{minutes}m"
