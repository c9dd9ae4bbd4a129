#!/usr/bin/env python3
import click
from decimal import Decimal, InvalidOperation
from .client import AuctionClient, BidRejected, BidOutcomeUnknown
from .config import save_token
import sys


def _money(value) -> str:
    return f"${Decimal(str(value)):,.2f}"


def _parse_amount(value: str) -> Decimal:
    return Decimal(value.replace("$", "").replace(",", ""))


def _print_table(headers, rows, min_widths=None):
    """Box-drawn table; columns sized to the widest cell."""
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(str(cell))) for w, cell in zip(widths, row)]
    if min_widths:
        widths = [max(w, m) for w, m in zip(widths, min_widths)]

    def build_separator(left, middle, right):
        return left + middle.join("─" * (w + 2) for w in widths) + right

    def build_row(cells):
        return "│ " + " │ ".join(f"{str(cell):<{widths[i]}}" for i, cell in enumerate(cells)) + " │"

    click.echo(build_separator("┌", "┬", "┐"))
    click.echo(build_row(headers))
    click.echo(build_separator("├", "┼", "┤"))
    for row in rows:
        click.echo(build_row(row))
    click.echo(build_separator("└", "┴", "┘"))


@click.group()
def cli():
    """Vehicle Auction CLI"""
    pass


@cli.command()
@click.option("--user-id", prompt="User ID")
@click.option("--password", prompt="Password", hide_input=True)
def auth(user_id, password):
    """Authenticate with the server."""
    try:
        client = AuctionClient()
        token = client.authenticate(user_id, password)
        save_token(token)
        click.echo("Authentication successful!")
    except Exception as e:
        click.echo(f"Authentication failed: {e}", err=True)
        sys.exit(1)


@cli.command("list")
@click.option("--status", type=click.Choice(["active", "ended", "sold"]), default=None)
@click.option("--approval", type=click.Choice(["pending", "approved", "declined"]), default=None,
              help="Moderation state (non-approved requires admin or --seller of your own id)")
@click.option("--seller", default=None, help="Only listings by this seller")
def list_vehicles(status, approval, seller):
    """List vehicle auctions, soonest ending first."""
    try:
        client = AuctionClient()
        vehicles = client.list_vehicles(status=status, approval_status=approval, seller_id=seller)
        if not vehicles:
            click.echo("No listings found.")
            return

        rows = []
        for v in vehicles:
            title = f"{v['year']} {v['make']} {v['model']}"
            if len(title) > 40:
                title = title[:37] + "..."
            rows.append((
                str(v["id"]),
                v["status"],
                v["approval_status"],
                _money(v["current_bid"]),
                str(v["bid_count"]),
                client.time_remaining(v["auction_end_time"]) if v["status"] == "active" else "Ended",
                title,
            ))
        _print_table(["ID", "Status", "Approval", "Current", "Bids", "Ends In", "Vehicle"], rows, min_widths=[4, 6, 8, 10, 4, 7, 20])
    except Exception as e:
        click.echo(f"Failed to list vehicles: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("vehicle_id", type=int)
def show(vehicle_id):
    """Show detailed information for a listing."""
    try:
        client = AuctionClient()
        v = client.get_vehicle(vehicle_id)

        rows = [
            ("ID", str(v["id"])),
            ("Vehicle", f"{v['year']} {v['make']} {v['model']}"),
            ("Mileage", f"{v['mileage']:,}"),
            ("Seller", v["seller_id"]),
            ("Status", v["status"]),
            ("Approval", v["approval_status"]),
            ("Current Bid", _money(v["current_bid"])),
            ("Bids", str(v["bid_count"])),
            ("Starting Bid", _money(v["starting_bid"])),
            ("Reserve", ("Met" if v["reserve_met"] else "Not met") if v.get("reserve_price") is not None else "None"),
            ("Ends At", client.to_local_time(v["auction_end_time"])),
            ("Ends In", client.time_remaining(v["auction_end_time"])),
        ]
        if v.get("minimum_bid") is not None:
            rows.append(("Minimum Bid", _money(v["minimum_bid"])))
        if v.get("admin_notes"):
            rows.append(("Admin Notes", v["admin_notes"]))
        _print_table(["Field", "Value"], rows, min_widths=[14, 40])
    except Exception as e:
        click.echo(f"Failed to show vehicle: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("vehicle_id", type=int)
@click.argument("amount", type=str)
def bid(vehicle_id, amount):
    """Place a bid on a vehicle."""
    try:
        amount_decimal = _parse_amount(amount)
    except InvalidOperation:
        click.echo(f"Invalid amount format: {amount}", err=True)
        sys.exit(1)

    client = AuctionClient()
    try:
        result = client.place_bid(vehicle_id, amount_decimal)
        click.echo(f"Bid of {_money(result['amount'])} placed on vehicle {vehicle_id}.")
        click.echo(f"Current bid: {_money(result['current_bid'])} ({result['bid_count']} bids)")
    except BidRejected as e:
        click.echo(f"Bid rejected: {e.message}", err=True)
        if e.minimum_required is not None:
            click.echo(f"Minimum bid is now {_money(e.minimum_required)}", err=True)
        sys.exit(1)
    except BidOutcomeUnknown as e:
        click.echo("The bid request timed out; it may or may not have been placed.", err=True)
        if e.listing:
            click.echo(f"Current bid is now {_money(e.listing['current_bid'])} ({e.listing['bid_count']} bids).", err=True)
            if e.probably_admitted:
                click.echo("The current bid matches your amount, so your bid was most likely admitted.", err=True)
        else:
            click.echo("Could not re-read the listing either.", err=True)
        click.echo(f"Check 'auction history {vehicle_id}' before bidding again.", err=True)
        sys.exit(2)
    except Exception as e:
        click.echo(f"Failed to place bid: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("vehicle_id", type=int)
@click.option("--limit", type=int, default=None)
def history(vehicle_id, limit):
    """Show bid history for a vehicle, highest first."""
    try:
        client = AuctionClient()
        bids = client.bid_history(vehicle_id, limit)
        if not bids:
            click.echo("No bids yet.")
            return
        rows = [(_money(b["amount"]), b["bidder_id"], client.to_local_time(b["created_at"])) for b in bids]
        _print_table(["Amount", "Bidder", "Placed At"], rows)
    except Exception as e:
        click.echo(f"Failed to get bid history: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("vehicle_id", type=int)
@click.option("--on-sale/--no-on-sale", default=None, help="Notify when the auction is ending or ends")
@click.option("--on-bid/--no-on-bid", default=None, help="Notify on every new bid or comment")
def watch(vehicle_id, on_sale, on_bid):
    """Watch a vehicle or change its notification preferences."""
    try:
        client = AuctionClient()
        result = client.watch(vehicle_id, notify_on_sale=on_sale, notify_on_bid=on_bid)
        click.echo(f"Watching vehicle {vehicle_id} (sale alerts: {'on' if result['notify_on_sale'] else 'off'}, "
                   f"bid alerts: {'on' if result['notify_on_bid'] else 'off'})")
    except Exception as e:
        click.echo(f"Failed to watch vehicle: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("vehicle_id", type=int)
def unwatch(vehicle_id):
    """Stop watching a vehicle."""
    try:
        AuctionClient().unwatch(vehicle_id)
        click.echo(f"Stopped watching vehicle {vehicle_id}.")
    except Exception as e:
        click.echo(f"Failed to unwatch vehicle: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--unread", is_flag=True, help="Only unread notifications")
def notifications(unread):
    """List your notifications, newest first."""
    try:
        client = AuctionClient()
        items = client.notifications(unread_only=unread)
        if not items:
            click.echo("No notifications.")
            return
        rows = [
            (str(n["id"]), " " if n["is_read"] else "*", n["type"], client.to_local_time(n["created_at"]), n["message"])
            for n in items
        ]
        _print_table(["ID", "New", "Type", "When", "Message"], rows)
    except Exception as e:
        click.echo(f"Failed to get notifications: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("notification_id", type=int, required=False)
@click.option("--all", "read_all", is_flag=True, help="Mark every notification read")
def read(notification_id, read_all):
    """Mark a notification (or all of them) as read."""
    if notification_id is None and not read_all:
        click.echo("Give a notification id or --all.", err=True)
        sys.exit(1)
    try:
        client = AuctionClient()
        if read_all:
            result = client.mark_read()
            click.echo(f"Marked {result['updated']} notifications as read.")
        else:
            client.mark_read(notification_id)
            click.echo(f"Notification {notification_id} marked as read.")
    except Exception as e:
        click.echo(f"Failed to mark notifications read: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("vehicle_id", type=int)
@click.option("--notes", default=None, help="Optional note for the seller")
def approve(vehicle_id, notes):
    """Approve a listing for bidding (admin)."""
    try:
        AuctionClient().moderate(vehicle_id, "approved", notes)
        click.echo(f"Vehicle {vehicle_id} approved.")
    except Exception as e:
        click.echo(f"Failed to approve vehicle: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("vehicle_id", type=int)
@click.option("--notes", required=True, help="Reason shown to the seller")
def decline(vehicle_id, notes):
    """Decline a listing (admin)."""
    try:
        AuctionClient().moderate(vehicle_id, "declined", notes)
        click.echo(f"Vehicle {vehicle_id} declined.")
    except Exception as e:
        click.echo(f"Failed to decline vehicle: {e}", err=True)
        sys.exit(1)


@cli.command()
def sweep():
    """Finalize expired auctions now (admin)."""
    try:
        report = AuctionClient().sweep()
        click.echo(f"Sold: {report['sold']}  Ended: {report['ended']}  "
                   f"Ending-soon notices: {report['ending_notifications']}  Errors: {report['errors']}")
    except Exception as e:
        click.echo(f"Sweep failed: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
