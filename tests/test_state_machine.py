from datetime import datetime

import pytest

from supportchat.core.errors import ConflictError, InvalidTransitionError, StaleStateError
from supportchat.models.room import ChatRoom
from supportchat.services.state_machine import (
    check_claim, check_close, check_csat, check_invariants, check_message, check_transfer,
)

T = datetime(2024, 3, 4, 12, 0)


def make_room(**overrides):
    fields = dict(
        id=1, tenant_id="acme", visitor_id=1, status="waiting", resolution_status="none",
        priority="normal", attendant_id=None, started_at=T, assigned_at=None, closed_at=None,
        csat_score=None,
    )
    fields.update(overrides)
    return ChatRoom(**fields)


def active_room(**overrides):
    return make_room(status="active", attendant_id=7, assigned_at=T, **overrides)


def closed_room(**overrides):
    fields = dict(status="closed", attendant_id=7, assigned_at=T, closed_at=T, resolution_status="resolved")
    fields.update(overrides)
    return make_room(**fields)


def test_claim_waiting_room_allowed():
    check_claim(make_room())


def test_claim_owned_room_conflicts():
    with pytest.raises(ConflictError):
        check_claim(active_room())


def test_claim_closed_room_conflicts():
    with pytest.raises(ConflictError):
        check_claim(closed_room())


def test_transfer_to_current_owner_is_invalid():
    with pytest.raises(InvalidTransitionError):
        check_transfer(active_room(), 7)
    check_transfer(active_room(), 8)
    check_transfer(make_room(), 8)


def test_close_requires_active_room_and_real_resolution():
    check_close(active_room(), "resolved")
    check_close(active_room(), "pending")
    with pytest.raises(InvalidTransitionError):
        check_close(active_room(), "none")
    with pytest.raises(InvalidTransitionError):
        check_close(make_room(), "resolved")
    with pytest.raises(InvalidTransitionError):
        check_close(closed_room(), "resolved")


def test_csat_rules():
    check_csat(closed_room(), 5)
    with pytest.raises(InvalidTransitionError):
        check_csat(active_room(), 5)
    with pytest.raises(InvalidTransitionError):
        check_csat(closed_room(), 6)
    with pytest.raises(ConflictError):
        check_csat(closed_room(csat_score=4), 5)


def test_closed_room_accepts_only_internal_messages():
    check_message(closed_room(), is_internal=True)
    with pytest.raises(InvalidTransitionError):
        check_message(closed_room(), is_internal=False)


def test_transition_errors_share_a_base():
    assert issubclass(ConflictError, StaleStateError)
    assert issubclass(InvalidTransitionError, StaleStateError)
    assert ConflictError("x").status_code == 409
    assert InvalidTransitionError("x").status_code == 422


def test_invariant_checker_flags_owned_waiting_room():
    check_invariants(make_room())
    check_invariants(active_room())
    with pytest.raises(AssertionError):
        check_invariants(make_room(attendant_id=3))
    with pytest.raises(AssertionError):
        check_invariants(closed_room(closed_at=datetime(2024, 1, 1)))
