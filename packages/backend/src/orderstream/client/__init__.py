"""Python subscriber client: REST calls, the live session, and a local view."""

from orderstream.client.api import OrderApiClient
from orderstream.client.session import Backoff, ConnectionSession, SessionState
from orderstream.client.view import OrderBoard

__all__ = ["Backoff", "ConnectionSession", "OrderApiClient", "OrderBoard", "SessionState"]
