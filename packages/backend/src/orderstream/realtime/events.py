"""ChangeEvent model and the WebSocket wire envelope.

Learn: A ChangeEvent is what one committed write on the orders table
looks like to the rest of the system. It is built the instant the write
commits, handed to the Broadcaster once, and dropped.

Which snapshot is authoritative depends on the operation:

    CREATED  entity only        (post-image)
    UPDATED  entity + previous  (post- and pre-image)
    DELETED  previous only      (pre-image)

On the wire every frame is one JSON object:

    {"type": "order_change", "data": {"operation": "INSERT", "data": {...}}}
    {"type": "client_count", "data": {"count": 3}}

For DELETE the envelope's inner "data" carries the pre-image, so a viewer
always finds the row (and its id) in the same place.
"""

import enum
import json
from dataclasses import dataclass
from typing import Any, Optional

from orderstream.schemas.order import snapshot

# ─── Envelope types ─────────────────────────────────────

ORDER_CHANGE = "order_change"
CLIENT_COUNT = "client_count"
PING = "ping"
PONG = "pong"


class EnvelopeError(ValueError):
    """Raised when a frame is not a well-formed envelope."""


class Operation(str, enum.Enum):
    CREATED = "INSERT"
    UPDATED = "UPDATE"
    DELETED = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """One committed mutation of an order."""

    operation: Operation
    entity: Optional[dict[str, Any]] = None
    previous: Optional[dict[str, Any]] = None

    def __post_init__(self):
        if self.operation is Operation.CREATED:
            valid = self.entity is not None and self.previous is None
        elif self.operation is Operation.UPDATED:
            valid = self.entity is not None and self.previous is not None
        else:
            valid = self.entity is None and self.previous is not None
        if not valid:
            raise ValueError(
                f"{self.operation.name} event has the wrong snapshots "
                f"(entity={self.entity is not None}, previous={self.previous is not None})"
            )

    # ─── Constructors ───────────────────────────────────

    @classmethod
    def created(cls, order) -> "ChangeEvent":
        return cls(Operation.CREATED, entity=snapshot(order))

    @classmethod
    def updated(cls, order, previous: dict[str, Any]) -> "ChangeEvent":
        return cls(Operation.UPDATED, entity=snapshot(order), previous=previous)

    @classmethod
    def deleted(cls, previous: dict[str, Any]) -> "ChangeEvent":
        return cls(Operation.DELETED, previous=previous)

    @classmethod
    def from_notification(cls, payload: dict[str, Any]) -> "ChangeEvent":
        """Build an event from a NOTIFY payload ``{operation, data, old_data?}``.

        Rows arrive as row_to_json output (snake_case columns) and are
        normalized to the same snapshot shape the REST API returns.
        """
        try:
            operation = Operation(payload["operation"])
            row = snapshot(payload["data"])
        except (KeyError, TypeError, ValueError) as e:
            raise EnvelopeError(f"Unrecognized change notification: {e}") from e

        if operation is Operation.DELETED:
            return cls(operation, previous=row)
        if operation is Operation.UPDATED:
            old = payload.get("old_data")
            if old is None:
                raise EnvelopeError("UPDATE notification without old_data")
            return cls(operation, entity=row, previous=snapshot(old))
        return cls(operation, entity=row)

    # ─── Wire format ────────────────────────────────────

    @property
    def order_id(self) -> Optional[str]:
        row = self.entity if self.entity is not None else self.previous
        return row.get("id") if row else None

    def payload(self) -> dict[str, Any]:
        """The ``order_change`` body: ``{operation, data, old_data?}``."""
        if self.operation is Operation.DELETED:
            return {"operation": self.operation.value, "data": self.previous}
        body: dict[str, Any] = {"operation": self.operation.value, "data": self.entity}
        if self.operation is Operation.UPDATED:
            body["old_data"] = self.previous
        return body

    def to_envelope(self) -> str:
        return encode_envelope(ORDER_CHANGE, self.payload())


def encode_envelope(event_type: str, data: dict[str, Any]) -> str:
    """Serialize one frame."""
    return json.dumps({"type": event_type, "data": data}, default=str)


def client_count_envelope(count: int) -> str:
    return encode_envelope(CLIENT_COUNT, {"count": max(0, int(count))})


def decode_envelope(raw: str | bytes) -> tuple[str, Any]:
    """Parse one frame into ``(type, data)``.

    Raises EnvelopeError if the frame is not JSON or lacks a string type.
    """
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EnvelopeError(f"Frame is not JSON: {e}") from e
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        raise EnvelopeError("Frame has no type")
    return message["type"], message.get("data")
