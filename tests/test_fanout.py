from datetime import timedelta

import pytest

from supportchat.core.errors import DeliveryGapError
from supportchat.services.chat_service import ChatService
from supportchat.ws.console import AttendantConsole
from supportchat.ws.manager import (
    AUDIENCE_VISITOR, RealtimeHub, room_channel, serialize_message, serialize_room, tenant_channel,
)

from conftest import T0, TENANT


def at(minutes):
    return T0 + timedelta(minutes=minutes)


# ────────────────────────────────────────────
# Hub
# ────────────────────────────────────────────

def test_message_insert_reaches_room_and_tenant_channels(db, service, hub, room):
    with hub.subscribe_room(room.id) as room_sub, hub.subscribe_tenant(TENANT) as tenant_sub:
        message = service.send_message(db, TENANT, room.id, "visitor", "hello", now=at(1))

        [inserted] = room_sub.drain()
        assert inserted["event"] == "message_inserted"
        assert inserted["channel"] == room_channel(room.id)
        assert inserted["data"]["id"] == message.id
        assert inserted["data"]["content"] == "hello"

        [activity] = tenant_sub.drain()
        assert activity["event"] == "room_activity"
        assert activity["room_id"] == room.id
        assert activity["data"]["sender_type"] == "visitor"


def test_claim_publishes_audit_message_then_room_update(db, service, hub, room, attendant_a):
    with hub.subscribe_tenant(TENANT) as sub:
        service.claim_room(db, TENANT, room.id, attendant_a.id, now=at(1))
        events = sub.drain()

    assert [e["event"] for e in events] == ["room_activity", "room_updated"]
    assert events[1]["data"]["status"] == "active"
    assert events[1]["data"]["attendant_id"] == attendant_a.id


def test_sequence_numbers_are_per_channel_and_contiguous(hub):
    for n in range(3):
        hub.publish_tenant(TENANT, "ping", {"n": n})
    hub.publish_tenant("globex", "ping", {})

    assert hub.last_seq(tenant_channel(TENANT)) == 3
    assert hub.last_seq(tenant_channel("globex")) == 1
    assert hub.last_seq(room_channel(99)) == 0


def test_internal_notes_never_reach_visitor_audience(db, service, hub, room):
    with hub.subscribe_room(room.id) as staff, hub.subscribe_room(room.id, AUDIENCE_VISITOR) as visitor:
        service.send_message(db, TENANT, room.id, "attendant", "flagged as VIP", is_internal=True)
        service.send_message(db, TENANT, room.id, "attendant", "Hi there!")

        assert [e["data"]["content"] for e in staff.drain()] == ["flagged as VIP", "Hi there!"]
        assert [e["data"]["content"] for e in visitor.drain()] == ["Hi there!"]


def test_visitor_sequence_stays_contiguous_around_internal_notes(db, service, hub, room):
    channel = room_channel(room.id)
    staff_start, visitor_start = hub.last_seq(channel), hub.last_seq(channel, AUDIENCE_VISITOR)
    with hub.subscribe_room(room.id) as staff, hub.subscribe_room(room.id, AUDIENCE_VISITOR) as visitor:
        service.send_message(db, TENANT, room.id, "visitor", "hello")
        service.send_message(db, TENANT, room.id, "attendant", "flagged as VIP", is_internal=True)
        service.send_message(db, TENANT, room.id, "attendant", "Hi there!")

        assert [e["seq"] for e in staff.drain()] == [staff_start + 1, staff_start + 2, staff_start + 3]
        assert [e["seq"] for e in visitor.drain()] == [visitor_start + 1, visitor_start + 2]
        assert hub.last_seq(channel) == staff_start + 3
        assert hub.last_seq(channel, AUDIENCE_VISITOR) == visitor_start + 2


def test_overflow_raises_delivery_gap_once():
    hub = RealtimeHub(buffer_size=3)
    sub = hub.subscribe_tenant(TENANT)
    for n in range(5):
        hub.publish_tenant(TENANT, "ping", {"n": n})

    with pytest.raises(DeliveryGapError) as excinfo:
        sub.drain()
    assert excinfo.value.channel == tenant_channel(TENANT)

    hub.publish_tenant(TENANT, "ping", {"n": 5})
    assert [e["data"]["n"] for e in sub.drain()] == [5]


def test_unsubscribe_leaves_other_consumers_untouched(hub):
    first = hub.subscribe_room(1)
    second = hub.subscribe_room(1)
    assert hub.subscriber_count(room_channel(1)) == 2

    first.close()
    hub.publish(room_channel(1), "message_inserted", TENANT, {"id": 1}, room_id=1)

    assert hub.subscriber_count(room_channel(1)) == 1
    assert first.pending() == 0
    assert len(second.drain()) == 1


def test_serializers_expose_public_fields(db, service, room):
    message = service.send_message(db, TENANT, room.id, "visitor", "hi", now=at(1))
    assert serialize_message(message)["created_at"] == at(1).isoformat()
    assert serialize_room(room)["status"] == "waiting"


# ────────────────────────────────────────────
# Attendant console
# ────────────────────────────────────────────

@pytest.fixture
def console_factory(db, service, hub):
    consoles = []

    def make(attendant, on_notify=None):
        def fetch_rooms():
            return [serialize_room(e.room) for e in service.list_rooms(db, TENANT, attendant_id=attendant.id)]

        def fetch_messages(room_id):
            return [serialize_message(m) for m in service.list_messages(db, TENANT, room_id)]

        console = AttendantConsole(hub, TENANT, attendant.id, fetch_rooms, fetch_messages, on_notify)
        console.connect()
        consoles.append(console)
        return console

    yield make
    for console in consoles:
        console.disconnect()


def test_console_merges_messages_by_id(db, service, hub, room, attendant_a, console_factory):
    console = console_factory(attendant_a)
    console.open_room(room.id)
    message = service.send_message(db, TENANT, room.id, "visitor", "first", now=at(1))

    console.pump()
    assert [m["id"] for m in console.messages] == [message.id]

    # redelivery of the same event is a no-op
    hub.publish(room_channel(room.id), "message_inserted", TENANT, serialize_message(message), room.id)
    console.pump()
    assert [m["id"] for m in console.messages] == [message.id]


def test_console_refetches_room_list_on_tenant_events(db, service, room, attendant_a, console_factory):
    console = console_factory(attendant_a)
    assert console.rooms[room.id]["status"] == "waiting"

    service.claim_room(db, TENANT, room.id, attendant_a.id, now=at(1))
    console.pump()
    assert console.rooms[room.id]["status"] == "active"

    other = service.create_room(db, TENANT, "visitor-2", now=at(2))
    console.pump()
    assert set(console.room_order) == {room.id, other.id}


def test_console_notifies_for_visitor_messages_in_other_rooms(db, service, room, attendant_a, console_factory):
    notified = []
    console = console_factory(attendant_a, on_notify=notified.append)
    other = service.create_room(db, TENANT, "visitor-2", now=at(1))
    console.open_room(room.id)

    service.send_message(db, TENANT, room.id, "visitor", "in the open room", now=at(2))
    service.send_message(db, TENANT, other.id, "visitor", "elsewhere", now=at(3))
    service.send_message(db, TENANT, other.id, "attendant", "note", is_internal=True, now=at(4))
    console.pump()

    assert [e["room_id"] for e in notified] == [other.id]


def test_console_resyncs_after_overflow(db, attendant_a):
    hub = RealtimeHub(buffer_size=2)
    service = ChatService(hub)
    room = service.create_room(db, TENANT, "visitor-1", now=T0)

    console = AttendantConsole(
        hub, TENANT, attendant_a.id,
        lambda: [serialize_room(e.room) for e in service.list_rooms(db, TENANT, attendant_id=attendant_a.id)],
        lambda room_id: [serialize_message(m) for m in service.list_messages(db, TENANT, room_id)],
    )
    console.connect()
    console.open_room(room.id)
    assert console.resyncs == 1

    for n in range(4):
        service.send_message(db, TENANT, room.id, "visitor", f"burst {n}", now=at(n + 1))
    console.pump()

    assert console.resyncs >= 2
    assert [m["content"] for m in console.messages] == [f"burst {n}" for n in range(4)]
    console.disconnect()


def test_console_resyncs_on_sequence_gap(db, service, hub, room, attendant_a, console_factory):
    console = console_factory(attendant_a)
    hub.publish_tenant(TENANT, "ping", {})
    console.pump()
    before = console.resyncs

    # an event whose seq skips ahead means something was lost upstream
    channel = tenant_channel(TENANT)
    hub._seq[channel] += 5
    hub.publish_tenant(TENANT, "ping", {})
    console.pump()
    assert console.resyncs == before + 1


def test_console_resyncs_on_tenant_resync_hint(db, hub, room, attendant_a, console_factory):
    console = console_factory(attendant_a)
    console.open_room(room.id)
    before = console.resyncs

    # written by a process without a hub: no message_inserted event
    ChatService().send_message(db, TENANT, room.id, "visitor", "sent elsewhere", now=at(1))
    hub.publish_tenant(TENANT, "tenant_resync", {"reason": "out_of_process_tick"})
    console.pump()

    assert console.resyncs == before + 1
    assert [m["content"] for m in console.messages] == ["sent elsewhere"]
