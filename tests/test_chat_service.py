from datetime import timedelta

import pytest

from supportchat.core.config_loader import get_or_create_tenant_settings
from supportchat.core.errors import (
    CapacityExceededError, ConflictError, InvalidTransitionError, RoomNotFoundError,
)
from supportchat.services.state_machine import check_invariants

from conftest import T0, TENANT

ROOM_FIELDS = (
    "status", "resolution_status", "attendant_id", "visitor_id", "priority",
    "started_at", "assigned_at", "closed_at", "updated_at",
)


def snapshot(room):
    return {f: getattr(room, f) for f in ROOM_FIELDS}


def active(service, db, room, attendant):
    return service.claim_room(db, TENANT, room.id, attendant.id, now=T0 + timedelta(minutes=1))


def test_new_room_is_waiting_without_attendant(room):
    assert room.status == "waiting"
    assert room.attendant_id is None
    assert room.assigned_at is None
    assert room.resolution_status == "none"
    check_invariants(room)


def test_visitor_limit_rejects_second_open_room(db, service, room):
    with pytest.raises(CapacityExceededError):
        service.create_room(db, TENANT, "visitor-1", now=T0)


def test_multi_conversation_lifts_visitor_limit(db, service, room):
    settings = get_or_create_tenant_settings(db, TENANT)
    settings.multi_conversation = True
    db.commit()
    second = service.create_room(db, TENANT, "visitor-1", now=T0)
    assert second.visitor_id == room.visitor_id


def test_queue_limit_rejects_new_rooms(db, service, room):
    settings = get_or_create_tenant_settings(db, TENANT)
    settings.max_queue_size = 1
    db.commit()
    with pytest.raises(CapacityExceededError):
        service.create_room(db, TENANT, "visitor-2", now=T0)


def test_welcome_and_first_message(db, service):
    settings = get_or_create_tenant_settings(db, TENANT)
    settings.welcome_message = "Hi! How can we help?"
    db.commit()

    room = service.create_room(db, TENANT, "visitor-9", name="Nina", first_message="My order is late", now=T0)
    messages = service.list_messages(db, TENANT, room.id)
    assert [(m.sender_type, m.content) for m in messages] == [
        ("system", "Hi! How can we help?"),
        ("visitor", "My order is late"),
    ]
    assert messages[1].sender_name == "Nina"


def test_scenario_b_close_then_single_csat(db, service, room, attendant_a):
    active(service, db, room, attendant_a)

    closed = service.close_room(db, TENANT, room.id, "resolved", closed_by=attendant_a, now=T0 + timedelta(minutes=30))
    assert closed.status == "closed"
    assert closed.closed_at == T0 + timedelta(minutes=30)
    assert closed.resolution_status == "resolved"
    check_invariants(closed)

    rated = service.submit_csat(db, TENANT, room.id, 5, "great", visitor_token="visitor-1")
    assert rated.csat_score == 5
    assert rated.csat_comment == "great"
    assert rated.status == "closed"

    with pytest.raises(ConflictError):
        service.submit_csat(db, TENANT, room.id, 4, visitor_token="visitor-1")
    assert service.get_room(db, TENANT, room.id).csat_score == 5


def test_close_note_is_internal_and_precedes_close(db, service, room, attendant_a):
    active(service, db, room, attendant_a)
    service.close_room(db, TENANT, room.id, "pending", note="customer will call back", closed_by=attendant_a, now=T0 + timedelta(minutes=5))

    messages = service.list_messages(db, TENANT, room.id)
    note = next(m for m in messages if m.content == "customer will call back")
    closing = messages[-1]
    assert note.is_internal is True
    assert closing.meta_data["event"] == "closed"
    assert (note.created_at, note.id) < (closing.created_at, closing.id)

    public = service.list_messages(db, TENANT, room.id, include_internal=False)
    assert note.id not in [m.id for m in public]


def test_close_rejects_closed_and_waiting_rooms(db, service, room, attendant_a):
    with pytest.raises(InvalidTransitionError):
        service.close_room(db, TENANT, room.id, "resolved")
    active(service, db, room, attendant_a)
    service.close_room(db, TENANT, room.id, "resolved")
    with pytest.raises(InvalidTransitionError):
        service.close_room(db, TENANT, room.id, "resolved")


def test_csat_on_open_room_is_invalid(db, service, room):
    with pytest.raises(InvalidTransitionError):
        service.submit_csat(db, TENANT, room.id, 5)


def test_csat_with_foreign_token_looks_missing(db, service, room, attendant_a):
    active(service, db, room, attendant_a)
    service.close_room(db, TENANT, room.id, "resolved")
    with pytest.raises(RoomNotFoundError):
        service.submit_csat(db, TENANT, room.id, 5, visitor_token="someone-else")


def test_closed_room_is_terminal_except_csat(db, service, room, attendant_a, attendant_b):
    active(service, db, room, attendant_a)
    service.close_room(db, TENANT, room.id, "resolved", now=T0 + timedelta(minutes=10))
    before = snapshot(service.get_room(db, TENANT, room.id))

    attempts = [
        lambda: service.claim_room(db, TENANT, room.id, attendant_b.id),
        lambda: service.transfer_room(db, TENANT, room.id, attendant_b.id),
        lambda: service.close_room(db, TENANT, room.id, "pending"),
        lambda: service.send_message(db, TENANT, room.id, "visitor", "hello?"),
    ]
    for attempt in attempts:
        with pytest.raises((InvalidTransitionError, ConflictError)):
            attempt()

    # internal notes are messages, the room row is untouched
    service.send_message(db, TENANT, room.id, "attendant", "follow-up", is_internal=True)
    service.submit_csat(db, TENANT, room.id, 3)

    after = service.get_room(db, TENANT, room.id)
    assert snapshot(after) == before
    assert after.csat_score == 3


def test_visitor_messages_are_never_internal(db, service, room):
    message = service.send_message(db, TENANT, room.id, "visitor", "hi", is_internal=True)
    assert message.is_internal is False


def test_attachment_limits(db, service, room):
    ok = service.send_message(
        db, TENANT, room.id, "visitor", "",
        attachment={"file_url": "https://cdn.example.com/a.png", "file_name": "a.png", "file_type": "image/png", "file_size": 1024},
    )
    assert ok.meta_data["attachment"]["file_name"] == "a.png"

    with pytest.raises(ValueError):
        service.send_message(
            db, TENANT, room.id, "visitor", "big",
            attachment={"file_url": "https://cdn.example.com/b.zip", "file_size": 11 * 1024 * 1024},
        )
    with pytest.raises(ValueError):
        service.send_message(db, TENANT, room.id, "visitor", "   ")


def test_send_visitor_message_checks_token(db, service, room):
    message = service.send_visitor_message(db, TENANT, room.id, "visitor-1", "hello")
    assert message.sender_type == "visitor"
    assert message.sender_id == str(room.visitor_id)
    with pytest.raises(RoomNotFoundError):
        service.send_visitor_message(db, TENANT, room.id, "intruder", "hello")


def test_messages_are_ordered_by_created_at(db, service, room, attendant_a):
    active(service, db, room, attendant_a)
    for n, minute in enumerate((9, 3, 7, 1)):
        service.send_message(db, TENANT, room.id, "visitor", f"m{n}", now=T0 + timedelta(minutes=minute))
    times = [m.created_at for m in service.list_messages(db, TENANT, room.id)]
    assert times == sorted(times)


def test_widget_state(db, service, attendant_a):
    settings = get_or_create_tenant_settings(db, TENANT)
    settings.outside_hours_message = "We are closed"
    db.commit()
    state = service.widget_state(db, TENANT)
    assert state["outside_hours"] is False
    assert state["outside_hours_message"] == "We are closed"
    assert state["attendants_available"] is True
