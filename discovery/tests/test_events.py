from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import V1CustomResourceDefinitionCondition, V1ObjectMeta

from discovery.src.events import (
    CRDEvent,
    EventType,
    MalformedEventError,
    WatchError,
    decode_watch_event,
)


def make_crd(
    name: str = "widgets.example.com",
    uid: str | None = "uid-1",
    deletion_timestamp: Any = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, uid=uid, deletion_timestamp=deletion_timestamp),
        status=None,
    )


def test_decodes_added_event() -> None:
    event = decode_watch_event({"type": "ADDED", "object": make_crd()})

    assert isinstance(event, CRDEvent)
    assert event.type is EventType.ADDED
    assert event.crd.uid == "uid-1"
    assert event.crd.name == "widgets.example.com"
    assert event.crd.terminating is False


def test_decodes_terminating_crd_from_generated_model() -> None:
    crd = SimpleNamespace(
        metadata=V1ObjectMeta(
            name="widgets.example.com",
            uid="uid-2",
            deletion_timestamp=datetime(2026, 1, 1, tzinfo=UTC),
        ),
        status=SimpleNamespace(
            conditions=[V1CustomResourceDefinitionCondition(type="Established", status="True")],
        ),
    )

    event = decode_watch_event({"type": "MODIFIED", "object": crd})

    assert isinstance(event, CRDEvent)
    assert event.type is EventType.MODIFIED
    assert event.crd.terminating is True
    assert event.crd.established is True


def test_decodes_raw_dict_payload() -> None:
    raw_crd = {
        "metadata": {
            "name": "widgets.example.com",
            "uid": "uid-3",
            "deletionTimestamp": "2026-01-01T00:00:00Z",
        }
    }

    event = decode_watch_event({"type": "DELETED", "object": raw_crd})

    assert isinstance(event, CRDEvent)
    assert event.type is EventType.DELETED
    assert event.crd.uid == "uid-3"
    assert event.crd.terminating is True


def test_decodes_error_event_with_status_dict() -> None:
    event = decode_watch_event(
        {
            "type": "ERROR",
            "object": {"code": 410, "reason": "Expired", "message": "too old resource version"},
        }
    )

    assert isinstance(event, WatchError)
    assert event.type is EventType.ERROR
    assert event.code == 410
    assert event.reason == "Expired"
    assert event.message == "too old resource version"


def test_error_event_prefers_raw_object() -> None:
    event = decode_watch_event(
        {"type": "ERROR", "object": "garbage", "raw_object": {"code": 500, "reason": "Boom"}}
    )

    assert event == WatchError(code=500, reason="Boom", message="")


@pytest.mark.parametrize("payload", [None, "unexpected string", 42, {"code": "not-a-number"}])
def test_error_event_with_unexpected_payload_never_raises(payload: Any) -> None:
    event = decode_watch_event({"type": "ERROR", "object": payload})

    assert isinstance(event, WatchError)


def test_rejects_non_dict_event() -> None:
    with pytest.raises(MalformedEventError):
        decode_watch_event("not an event")


def test_rejects_unknown_event_type() -> None:
    with pytest.raises(MalformedEventError, match="BOOKMARK"):
        decode_watch_event({"type": "BOOKMARK", "object": make_crd()})


def test_rejects_event_without_object() -> None:
    with pytest.raises(MalformedEventError):
        decode_watch_event({"type": "ADDED", "object": None})


def test_rejects_crd_without_uid() -> None:
    with pytest.raises(MalformedEventError, match="uid"):
        decode_watch_event({"type": "ADDED", "object": make_crd(uid=None)})
