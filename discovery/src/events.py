from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from discovery.src.crd import CRDInfo, object_field


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    ERROR = "ERROR"


class MalformedEventError(ValueError):
    """A watch event whose type or payload does not have the expected shape."""


@dataclass(frozen=True)
class CRDEvent:
    """ADDED, MODIFIED or DELETED event for one CustomResourceDefinition."""

    type: EventType
    crd: CRDInfo


@dataclass(frozen=True)
class WatchError:
    """ERROR event; the server ends the stream after sending one."""

    code: int | None = None
    reason: str = ""
    message: str = ""

    @property
    def type(self) -> EventType:
        return EventType.ERROR


WatchEvent = CRDEvent | WatchError


def _decode_status(payload: Any) -> WatchError:
    """Extract a ``Status`` from an error payload without assuming its shape."""
    code = object_field(payload, "code")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None
    reason = object_field(payload, "reason")
    message = object_field(payload, "message")
    if reason is None and message is None and code is None and payload is not None:
        message = str(payload)
    return WatchError(code=code, reason=str(reason or ""), message=str(message or ""))


def decode_watch_event(raw: Any) -> WatchEvent:
    """Turn an event yielded by ``kubernetes.watch.Watch.stream`` into a typed variant.

    Raises :class:`MalformedEventError` for unknown event types or CRD payloads without
    an identity.  Error payloads never raise.
    """
    if not isinstance(raw, dict):
        raise MalformedEventError(f"unexpected watch event of type {type(raw).__name__}")

    raw_type = str(raw.get("type", "")).upper()
    try:
        event_type = EventType(raw_type)
    except ValueError as exc:
        raise MalformedEventError(f"unknown watch event type {raw_type!r}") from exc

    if event_type is EventType.ERROR:
        payload = raw.get("raw_object")
        if payload is None:
            payload = raw.get("object")
        return _decode_status(payload)

    obj = raw.get("object")
    if obj is None:
        raise MalformedEventError(f"{event_type.value} event without object")
    try:
        crd = CRDInfo.from_object(obj)
    except ValueError as exc:
        raise MalformedEventError(str(exc)) from exc
    return CRDEvent(type=event_type, crd=crd)
