from datetime import timedelta

from supportchat.core.timezone import EPOCH
from supportchat.services import read_tracking

from conftest import T0, TENANT


def at(minutes):
    return T0 + timedelta(minutes=minutes)


def visitor_says(service, db, room, text, minutes):
    return service.send_message(db, TENANT, room.id, "visitor", text, now=at(minutes))


def test_unread_counts_visitor_messages_after_cursor(db, service, room, attendant_a):
    for n in range(3):
        visitor_says(service, db, room, f"hello {n}", n + 1)
    assert service.unread_count(db, TENANT, room.id, attendant_a.id) == 3

    cursor = service.mark_read(db, TENANT, room.id, attendant_a.id, now=at(4))
    assert cursor.last_read_at == at(4)
    assert service.unread_count(db, TENANT, room.id, attendant_a.id) == 0

    visitor_says(service, db, room, "anyone?", 5)
    assert service.unread_count(db, TENANT, room.id, attendant_a.id) == 1


def test_attendant_system_and_internal_messages_are_not_unread(db, service, room, attendant_a):
    service.claim_room(db, TENANT, room.id, attendant_a.id, now=at(1))
    service.send_message(db, TENANT, room.id, "attendant", "hi", sender_id=str(attendant_a.id), now=at(2))
    service.send_message(db, TENANT, room.id, "attendant", "vip", is_internal=True, now=at(3))
    assert service.unread_count(db, TENANT, room.id, attendant_a.id) == 0


def test_cursor_never_moves_backwards(db, service, room, attendant_a):
    service.mark_read(db, TENANT, room.id, attendant_a.id, now=at(10))
    # a delayed request from an older tab
    cursor = service.mark_read(db, TENANT, room.id, attendant_a.id, now=at(2))
    assert cursor.last_read_at == at(10)

    cursor = service.mark_read(db, TENANT, room.id, attendant_a.id, now=at(12))
    assert cursor.last_read_at == at(12)


def test_cursors_are_per_attendant(db, service, room, attendant_a, attendant_b):
    visitor_says(service, db, room, "question", 1)
    service.mark_read(db, TENANT, room.id, attendant_a.id, now=at(2))
    assert service.unread_count(db, TENANT, room.id, attendant_a.id) == 0
    assert service.unread_count(db, TENANT, room.id, attendant_b.id) == 1
    assert read_tracking.get_last_read_at(db, room.id, attendant_b.id) == EPOCH


def test_batch_counts_match_single_counts(db, service, room, attendant_a):
    other = service.create_room(db, TENANT, "visitor-2", now=T0)
    quiet = service.create_room(db, TENANT, "visitor-3", now=T0)
    visitor_says(service, db, room, "a", 1)
    visitor_says(service, db, room, "b", 2)
    visitor_says(service, db, other, "c", 3)
    service.mark_read(db, TENANT, other.id, attendant_a.id, now=at(4))

    counts = read_tracking.unread_counts(db, [room.id, other.id, quiet.id], attendant_a.id)
    assert counts == {room.id: 2, other.id: 0, quiet.id: 0}
    for room_id, count in counts.items():
        assert read_tracking.unread_count(db, room_id, attendant_a.id) == count


def test_room_list_puts_unread_first_then_recent(db, service, room, attendant_a):
    busy = service.create_room(db, TENANT, "visitor-2", now=T0)
    recent = service.create_room(db, TENANT, "visitor-3", now=T0)

    visitor_says(service, db, room, "old unread", 1)
    visitor_says(service, db, busy, "newer unread", 2)
    visitor_says(service, db, recent, "read already", 9)
    service.mark_read(db, TENANT, recent.id, attendant_a.id, now=at(10))

    entries = service.list_rooms(db, TENANT, attendant_id=attendant_a.id)
    assert [e.room.id for e in entries] == [busy.id, room.id, recent.id]
    assert [e.unread_count for e in entries] == [1, 1, 0]
    assert entries[2].last_message_at == at(9)


def test_room_list_without_attendant_has_no_unread(db, service, room):
    visitor_says(service, db, room, "hello", 1)
    entries = service.list_rooms(db, TENANT)
    assert entries[0].unread_count == 0
    assert entries[0].activity_at == at(1)
