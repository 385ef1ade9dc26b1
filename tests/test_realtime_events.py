import orjson
import pytest
from pydantic import ValidationError

from polystore.core.realtime.events import RealTimeUpdate, UpdateAction


def test_defaults_are_filled_in() -> None:
    event = RealTimeUpdate(
        action=UpdateAction.CREATED, tenant_id="t1", entity_id="e1", entity_type="alert"
    )
    assert event.type == "entity_change"
    assert event.source == "polystore"
    assert len(event.event_id) == 26
    assert event.timestamp > 0
    assert event.channels == ()
    assert event.metadata is None


def test_wire_format_is_json_with_string_action() -> None:
    event = RealTimeUpdate(
        action=UpdateAction.STATUS_CHANGED,
        tenant_id="t1",
        entity_id="e1",
        entity_type="alert",
        data={"status": "closed"},
        channels=("alert",),
    )
    payload = orjson.loads(event.to_bytes())
    assert payload["action"] == "status_changed"
    assert payload["channels"] == ["alert"]
    assert payload["data"] == {"status": "closed"}

    restored = RealTimeUpdate.from_bytes(event.to_bytes())
    assert restored == event


def test_events_are_immutable() -> None:
    event = RealTimeUpdate(
        action=UpdateAction.DELETED, tenant_id="t1", entity_id="e1", entity_type="alert"
    )
    with pytest.raises(ValidationError):
        event.tenant_id = "t2"  # type: ignore[misc]


@pytest.mark.parametrize("tenant_id", ["", "a:b"])
def test_tenant_must_be_channel_safe(tenant_id: str) -> None:
    with pytest.raises(ValidationError):
        RealTimeUpdate(
            action=UpdateAction.CREATED,
            tenant_id=tenant_id,
            entity_id="e1",
            entity_type="alert",
        )


def test_unknown_action_is_rejected() -> None:
    with pytest.raises(ValidationError):
        RealTimeUpdate.from_bytes(
            b'{"action": "exploded", "tenant_id": "t1", "entity_id": "e1", "entity_type": "a"}'
        )
