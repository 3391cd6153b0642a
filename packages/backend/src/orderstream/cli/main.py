"""OrderStream CLI — serve the API, manage orders, watch the live feed.

Usage:
    orderstream serve                            # Run the API + WebSocket server
    orderstream login me@example.com             # Print a token for ORDERSTREAM_TOKEN
    orderstream orders --status pending          # List orders
    orderstream stats                            # Dashboard counters
    orderstream create-order --sku W-1 ...       # Create an order
    orderstream delete-order <id>                # Delete an order
    orderstream watch                            # Stream order changes as they happen
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

from orderstream import __version__
from orderstream.client.api import OrderApiClient, websocket_url
from orderstream.client.session import Backoff, ConnectionSession, SessionState, websocket_connector
from orderstream.client.view import OrderBoard
from orderstream.config import settings

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("ORDERSTREAM_API_URL", DEFAULT_API_URL).rstrip("/")


def _token(token: Optional[str]) -> Optional[str]:
    return token or os.environ.get("ORDERSTREAM_TOKEN")


def _client(token: Optional[str] = None) -> OrderApiClient:
    return OrderApiClient(_api_url(), token=_token(token))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Offloads to a thread when already inside an event loop (CliRunner in
    async tests).
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


def _fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)


def _status_color(status: str) -> str:
    colors = {
        "pending": "yellow",
        "processing": "cyan",
        "shipped": "blue",
        "delivered": "green",
        "cancelled": "red",
        "INSERT": "green",
        "UPDATE": "yellow",
        "DELETE": "red",
    }
    return colors.get(status, "white")


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table. columns: (header, key, width)."""
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        click.echo("  ".join(str(row.get(k, "—"))[:w].ljust(w) for _, k, w in columns))


async def _call(coro):
    try:
        return await coro
    except httpx.HTTPStatusError as e:
        _fail(f"{e.response.status_code} {e.response.text}")
    except httpx.TransportError as e:
        _fail(f"cannot reach {_api_url()}: {e}")


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="orderstream")
def main():
    """OrderStream — live order dashboard backend."""


@main.command()
@click.option("--host", default=None, help="Bind address (default from ORDERSTREAM_HOST)")
@click.option("--port", default=None, type=int, help="Port (default from ORDERSTREAM_PORT)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the API and WebSocket server with uvicorn."""
    import uvicorn

    uvicorn.run(
        "orderstream.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_config=None,
    )


@main.command()
@click.argument("email")
@click.password_option(confirmation_prompt=False)
def login(email: str, password: str):
    """Log in and print an access token."""

    async def _impl():
        async with _client() as c:
            token = await _call(c.login(email, password))
        click.echo(f"export ORDERSTREAM_TOKEN={token}")

    _run(_impl())


@main.command()
@click.option("--search", "-q", help="Match name, email, product or id")
@click.option("--status", "-s", default="all", help="Filter by status")
@click.option("--page", "-p", default=1, help="Page number")
@click.option("--limit", "-l", default=50, help="Page size")
@click.option("--token", help="Access token (or set ORDERSTREAM_TOKEN)")
@click.option("--json", "as_json", is_flag=True, help="Raw JSON output")
def orders(search, status, page, limit, token, as_json):
    """List orders, newest first."""

    async def _impl():
        async with _client(token) as c:
            data = await _call(c.list_orders(search=search, status=status, page=page, limit=limit))
        if as_json:
            click.echo(json.dumps(data, indent=2))
            return
        if not data["orders"]:
            click.echo("No orders found.")
            return
        _print_table(
            data["orders"],
            [
                ("ID", "id", 8),
                ("CUSTOMER", "customerName", 20),
                ("PRODUCT", "productName", 20),
                ("SKU", "productSku", 10),
                ("AMOUNT", "amount", 10),
                ("STATUS", "status", 10),
            ],
        )
        click.echo(f"\nPage {data['page']}/{data['totalPages']} — {data['total']} orders")

    _run(_impl())


@main.command()
@click.option("--token", help="Access token (or set ORDERSTREAM_TOKEN)")
def stats(token):
    """Show dashboard counters."""

    async def _impl():
        async with _client(token) as c:
            data = await _call(c.stats())
            viewers = await _call(c.clients())
        click.echo(f"  Total orders:     {data['totalOrders']}")
        click.echo(f"  Active orders:    {data['activeOrders']}")
        click.echo(f"  Completed orders: {data['completedOrders']}")
        click.echo(f"  Revenue:          {data['revenue']:.2f}")
        click.echo(f"  Live viewers:     {viewers}")

    _run(_impl())


@main.command("create-order")
@click.option("--customer-name", required=True)
@click.option("--customer-email", required=True)
@click.option("--product-name", required=True)
@click.option("--sku", "product_sku", required=True)
@click.option("--amount", required=True, help='Decimal amount, e.g. "9.99"')
@click.option("--status", default="pending")
@click.option("--token", help="Access token (or set ORDERSTREAM_TOKEN)")
def create_order(customer_name, customer_email, product_name, product_sku, amount, status, token):
    """Create an order."""

    async def _impl():
        async with _client(token) as c:
            order = await _call(c.create_order({
                "customerName": customer_name,
                "customerEmail": customer_email,
                "productName": product_name,
                "productSku": product_sku,
                "amount": amount,
                "status": status,
            }))
        click.secho(f"Order {order['id']} created", fg="green")

    _run(_impl())


@main.command("delete-order")
@click.argument("order_id")
@click.option("--token", help="Access token (or set ORDERSTREAM_TOKEN)")
def delete_order(order_id, token):
    """Delete an order."""

    async def _impl():
        async with _client(token) as c:
            await _call(c.delete_order(order_id))
        click.secho(f"Order {order_id} deleted", fg="green")

    _run(_impl())


@main.command()
@click.option("--token", help="Access token (or set ORDERSTREAM_TOKEN)")
@click.option("--backoff", default=None, type=float, help="Reconnect delay in seconds")
@click.option("--exponential", is_flag=True, help="Double the delay after each failure")
def watch(token, backoff, exponential):
    """Stream order changes until interrupted."""
    token = _token(token)
    if not token:
        _fail("--token required (or set ORDERSTREAM_TOKEN)")

    def on_change(operation: str, row: dict):
        click.echo(
            f"{click.style(operation.ljust(6), fg=_status_color(operation))} "
            f"{row.get('id', '?')[:8]}  {row.get('customerName', '')[:20]:20s}  "
            f"{row.get('productSku', '')[:10]:10s}  {row.get('amount', '')}  "
            f"{click.style(str(row.get('status', '')), fg=_status_color(str(row.get('status'))))}"
        )

    def on_state(state: SessionState):
        color = {"connected": "green", "connecting": "yellow"}.get(state.value, "red")
        click.secho(f"[{state.value}]", fg=color, err=True)

    async def _impl():
        api = _client(token)
        board = OrderBoard(listener=on_change)
        session = ConnectionSession(
            websocket_connector(websocket_url(_api_url()), token=token),
            backoff=Backoff(
                initial=backoff or settings.client_reconnect_delay,
                maximum=settings.client_max_reconnect_delay,
                factor=2.0 if exponential else 1.0,
            ),
            on_state=on_state,
        )
        board.attach(session, fetch=api.list_orders)
        try:
            async with session:
                await asyncio.Event().wait()
        finally:
            await api.aclose()

    try:
        _run(_impl())
    except KeyboardInterrupt:
        click.echo()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
