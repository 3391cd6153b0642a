"""ConnectionGate — the admission check for WebSocket upgrades.

Learn: The gate runs before ``websocket.accept()``. If it refuses, the
handshake is rejected and no transport ever exists, so nothing can leak
into the registry. It is stateless: it reads the credential off the upgrade
request, resolves the principal through an injected lookup, checks one
capability, and returns the identity. Putting the connection into the
registry is the caller's job.

Failure reasons are logged server-side only; the client just sees a failed
upgrade.
"""

from typing import Awaitable, Callable, Optional

import structlog
from starlette.requests import HTTPConnection

from orderstream.auth.dependencies import CurrentIdentity, extract_credential
from orderstream.auth.jwt import TokenError, verify_token
from orderstream.auth.permissions import READ_STREAM

logger = structlog.get_logger()

IdentityLookup = Callable[[str], Awaitable[Optional[CurrentIdentity]]]


class AdmissionError(Exception):
    """Base class for refused upgrades."""
    close_code = 4001


class NoCredential(AdmissionError):
    """The upgrade carries no usable session proof."""


class UnknownPrincipal(AdmissionError):
    """The credential is valid but names no existing user."""


class InsufficientCapability(AdmissionError):
    """The user exists but may not read the stream."""
    close_code = 4003


class ConnectionGate:
    """Authenticate and authorize one connection attempt."""

    def __init__(self, lookup: IdentityLookup, capability: str = READ_STREAM):
        self.lookup = lookup
        self.capability = capability

    async def admit(self, conn: HTTPConnection) -> CurrentIdentity:
        """Return the caller's identity or raise an AdmissionError."""
        token = extract_credential(conn)
        if not token:
            raise NoCredential("no session credential on upgrade request")

        try:
            payload = verify_token(token)
        except TokenError as e:
            raise NoCredential(str(e)) from e

        identity = await self.lookup(payload["sub"])
        if identity is None:
            raise UnknownPrincipal(f"user {payload['sub']} not found")

        if not identity.can(self.capability):
            raise InsufficientCapability(
                f"role {identity.role.value} lacks {self.capability}"
            )

        logger.debug("gate.admitted", user_id=identity.user_id, role=identity.role.value)
        return identity
