# supportchat/services/business_hours.py
"""
Business-hours gate and time-based auto-rules.

``evaluate_business_rules`` is the whole scheduler tick for one tenant:

1. gate: is ``now`` inside the tenant's opening hours? persisted only on change
2. auto-assignment of the queue while the gate is open
3. auto-rules on open rooms (absence notice, inactivity chain, escalation)

Every write is a conditional mutation stamped with ``now``, so running the
evaluation twice with the same ``now`` leaves the same end state as running
it once. Several scheduler instances may evaluate the same tenant.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from supportchat.core.config_loader import ChatConfigLoader, get_or_create_tenant_settings
from supportchat.core.errors import ConflictError
from supportchat.core.logging_config import log_transition
from supportchat.core.timezone import isoformat, to_tenant_local, utcnow
from supportchat.models.business_hours import BusinessHourRule, ChatAutoRule
from supportchat.models.message import ChatMessage
from supportchat.models.room import ChatRoom
from supportchat.models.tenant_settings import TenantChatSettings
from supportchat.services.assignment import auto_assign_queue
from supportchat.services.room_store import RoomStore, not_before
from supportchat.services.state_machine import (
    Priority, ResolutionStatus, RoomStatus, SenderType,
    close_condition, escalate_condition, unchanged_condition,
)

log = logging.getLogger("supportchat.business_hours")

RULE_INACTIVITY_WARNING = "inactivity_warning"
RULE_INACTIVITY_WARNING_2 = "inactivity_warning_2"
RULE_AUTO_CLOSE = "auto_close"
RULE_ATTENDANT_ABSENCE = "attendant_absence"
RULE_WAITING_ESCALATION = "waiting_escalation"

RULE_TYPES = (
    RULE_INACTIVITY_WARNING,
    RULE_INACTIVITY_WARNING_2,
    RULE_AUTO_CLOSE,
    RULE_ATTENDANT_ABSENCE,
    RULE_WAITING_ESCALATION,
)
INACTIVITY_CHAIN = (RULE_INACTIVITY_WARNING, RULE_INACTIVITY_WARNING_2, RULE_AUTO_CLOSE)

DEFAULT_RULE_MESSAGES = {
    RULE_INACTIVITY_WARNING: "Are you still there? This conversation will be closed soon if there is no reply.",
    RULE_INACTIVITY_WARNING_2: "Last call: this conversation is about to be closed due to inactivity.",
    RULE_AUTO_CLOSE: "This conversation was closed due to inactivity.",
    RULE_ATTENDANT_ABSENCE: "Thanks for waiting, an attendant will be with you shortly.",
    RULE_WAITING_ESCALATION: "Escalated after waiting in the queue.",
}


@dataclass
class EvaluationResult:
    tenant_id: str
    evaluated_at: datetime
    outside_hours: bool = False
    gate_changed: bool = False
    assigned: List[int] = field(default_factory=list)
    notices: List[int] = field(default_factory=list)
    warnings: List[int] = field(default_factory=list)
    closed: List[int] = field(default_factory=list)
    escalated: List[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.gate_changed or self.assigned or self.notices or self.warnings or self.closed or self.escalated)

    def to_dict(self) -> Dict:
        return {
            "tenant_id": self.tenant_id,
            "evaluated_at": isoformat(self.evaluated_at),
            "outside_hours": self.outside_hours,
            "gate_changed": self.gate_changed,
            "assigned": self.assigned,
            "notices": self.notices,
            "warnings": self.warnings,
            "closed": self.closed,
            "escalated": self.escalated,
        }


# ────────────────────────────────────────────
# Configuration
# ────────────────────────────────────────────

def list_business_hours(db: Session, tenant_id: str) -> List[BusinessHourRule]:
    return db.query(BusinessHourRule).filter(
        BusinessHourRule.tenant_id == tenant_id
    ).order_by(BusinessHourRule.day_of_week).all()


def upsert_business_hours(
    db: Session,
    tenant_id: str,
    day_of_week: int,
    start_time: time,
    end_time: time,
    is_active: bool = True
) -> BusinessHourRule:
    rule = db.query(BusinessHourRule).filter(
        BusinessHourRule.tenant_id == tenant_id,
        BusinessHourRule.day_of_week == day_of_week
    ).first()
    if rule is None:
        rule = BusinessHourRule(tenant_id=tenant_id, day_of_week=day_of_week)
        db.add(rule)
    rule.start_time = start_time
    rule.end_time = end_time
    rule.is_active = is_active
    db.commit()
    db.refresh(rule)
    return rule


def list_auto_rules(db: Session, tenant_id: str) -> List[ChatAutoRule]:
    return db.query(ChatAutoRule).filter(
        ChatAutoRule.tenant_id == tenant_id
    ).order_by(ChatAutoRule.rule_type).all()


def upsert_auto_rule(
    db: Session,
    tenant_id: str,
    rule_type: str,
    trigger_minutes: int,
    message_content: Optional[str] = None,
    is_enabled: bool = True
) -> ChatAutoRule:
    if rule_type not in RULE_TYPES:
        raise ValueError(f"Unknown auto-rule type '{rule_type}'")
    if trigger_minutes < 1:
        raise ValueError("trigger_minutes must be at least 1")

    rule = db.query(ChatAutoRule).filter(
        ChatAutoRule.tenant_id == tenant_id,
        ChatAutoRule.rule_type == rule_type
    ).first()
    if rule is None:
        rule = ChatAutoRule(tenant_id=tenant_id, rule_type=rule_type)
        db.add(rule)
    rule.trigger_minutes = trigger_minutes
    rule.message_content = message_content
    rule.is_enabled = is_enabled
    db.commit()
    db.refresh(rule)
    return rule


# ────────────────────────────────────────────
# Gate
# ────────────────────────────────────────────

def _minute(t: time) -> time:
    return t.replace(second=0, microsecond=0)


def is_within_business_hours(rules: List[BusinessHourRule], local_now: datetime) -> bool:
    """
    Minute precision, inclusive bounds. A tenant with no rules at all is
    always open; a weekday without an active rule is closed.
    """
    if not rules:
        return True

    current = _minute(local_now.time())
    for rule in rules:
        if rule.day_of_week != local_now.weekday() or not rule.is_active:
            continue
        if _minute(rule.start_time) <= current <= _minute(rule.end_time):
            return True
    return False


def tenant_is_open(db: Session, tenant_id: str, now: Optional[datetime] = None) -> bool:
    local_now = to_tenant_local(now or utcnow(), ChatConfigLoader(db, tenant_id).get_timezone())
    return is_within_business_hours(list_business_hours(db, tenant_id), local_now)


def _update_gate(db: Session, tenant_id: str, outside: bool, now: datetime) -> bool:
    """Persist the gate; True only for the caller whose write changed it"""
    get_or_create_tenant_settings(db, tenant_id)
    affected = db.query(TenantChatSettings).filter(
        TenantChatSettings.tenant_id == tenant_id,
        TenantChatSettings.outside_hours != outside
    ).update(
        {
            TenantChatSettings.outside_hours: outside,
            TenantChatSettings.outside_hours_changed_at: now,
            TenantChatSettings.updated_at: now,
        },
        synchronize_session=False
    )
    db.commit()
    return affected == 1


# ────────────────────────────────────────────
# Auto-rules
# ────────────────────────────────────────────

def _rule_text(rule: ChatAutoRule) -> str:
    return rule.message_content or DEFAULT_RULE_MESSAGES[rule.rule_type]


def _auto_tag(message: ChatMessage) -> Optional[str]:
    if message.sender_type != SenderType.SYSTEM.value:
        return None
    return (message.meta_data or {}).get("auto_rule")


def _elapsed(since: datetime, now: datetime, minutes: int) -> bool:
    return now - since >= timedelta(minutes=minutes)


class _RuleRunner:
    """Applies the enabled auto-rules of one tenant at one instant"""

    def __init__(self, db: Session, tenant_id: str, now: datetime, hub, result: EvaluationResult):
        self.db = db
        self.store = RoomStore(db)
        self.tenant_id = tenant_id
        self.now = now
        self.hub = hub
        self.result = result
        self.rules = {
            r.rule_type: r for r in list_auto_rules(db, tenant_id)
            if r.is_enabled and r.trigger_minutes and r.trigger_minutes >= 1
        }

    def run(self) -> None:
        if not self.rules:
            return
        for room in self.store.list_rooms(self.tenant_id, [RoomStatus.WAITING.value, RoomStatus.ACTIVE.value]):
            try:
                if room.status == RoomStatus.WAITING.value:
                    self._escalate(room)
                else:
                    self._active_room(room)
            except ConflictError:
                log.info(f"Room {room.id} changed during rule evaluation; next tick picks it up")

    def _publish(self, room, message, event_type="room_updated"):
        if self.hub is not None:
            self.hub.publish_transition(room, message, event_type)

    def _post(self, room: ChatRoom, rule: ChatAutoRule) -> None:
        """Append a rule message, serialized against other evaluators by the room's version"""
        room, message = self.store.apply_transition(
            self.tenant_id,
            room.id,
            unchanged_condition(room),
            {ChatRoom.updated_at: self.now},
            audit={"content": _rule_text(rule), "metadata": {"auto_rule": rule.rule_type}},
            now=self.now,
        )
        log_transition(rule.rule_type, self.tenant_id, room.id, message_id=message.id)
        self._publish(room, message)

    def _escalate(self, room: ChatRoom) -> None:
        rule = self.rules.get(RULE_WAITING_ESCALATION)
        if rule is None or room.priority == Priority.URGENT.value:
            return
        if not _elapsed(room.started_at, self.now, rule.trigger_minutes):
            return

        room, message = self.store.apply_transition(
            self.tenant_id,
            room.id,
            escalate_condition(room.id),
            {ChatRoom.priority: Priority.URGENT.value, ChatRoom.updated_at: self.now},
            audit={
                "content": _rule_text(rule),
                "is_internal": True,
                "metadata": {"auto_rule": RULE_WAITING_ESCALATION, "previous_priority": room.priority},
            },
            now=self.now,
        )
        self.result.escalated.append(room.id)
        log_transition(RULE_WAITING_ESCALATION, self.tenant_id, room.id, priority=room.priority)
        self._publish(room, message)

    def _active_room(self, room: ChatRoom) -> None:
        messages = self.store.list_messages(room.id, include_internal=False)

        last_human = None
        for index in range(len(messages) - 1, -1, -1):
            if messages[index].sender_type != SenderType.SYSTEM.value:
                last_human = index
                break
        if last_human is None:
            return

        spoke_last = messages[last_human]
        tags_after = [_auto_tag(m) for m in messages[last_human + 1:]]

        if spoke_last.sender_type == SenderType.VISITOR.value:
            rule = self.rules.get(RULE_ATTENDANT_ABSENCE)
            if rule and RULE_ATTENDANT_ABSENCE not in tags_after and _elapsed(spoke_last.created_at, self.now, rule.trigger_minutes):
                self._post(room, rule)
                self.result.notices.append(room.id)
            return

        # Attendant spoke last: the chain advances one step at a time and
        # stops at the first step without an enabled rule
        sent = [tag for tag in tags_after if tag in INACTIVITY_CHAIN]
        position = INACTIVITY_CHAIN.index(sent[-1]) + 1 if sent else 0
        if position >= len(INACTIVITY_CHAIN):
            return
        step = self.rules.get(INACTIVITY_CHAIN[position])
        if step is None:
            return

        since = spoke_last.created_at
        for message in messages[last_human + 1:]:
            if _auto_tag(message) in INACTIVITY_CHAIN:
                since = message.created_at
        if not _elapsed(since, self.now, step.trigger_minutes):
            return

        if step.rule_type == RULE_AUTO_CLOSE:
            self._auto_close(room, step)
        else:
            self._post(room, step)
            self.result.warnings.append(room.id)

    def _auto_close(self, room: ChatRoom, rule: ChatAutoRule) -> None:
        room, message = self.store.apply_transition(
            self.tenant_id,
            room.id,
            close_condition(room.id),
            {
                ChatRoom.status: RoomStatus.CLOSED.value,
                ChatRoom.resolution_status: ResolutionStatus.PENDING.value,
                ChatRoom.closed_at: not_before(ChatRoom.assigned_at, self.now),
                ChatRoom.updated_at: self.now,
            },
            audit={"content": _rule_text(rule), "metadata": {"auto_rule": RULE_AUTO_CLOSE}},
            now=self.now,
        )
        self.result.closed.append(room.id)
        log.info(f"🔒 Room {room.id} auto-closed after inactivity")
        log_transition("close", self.tenant_id, room.id, resolution=ResolutionStatus.PENDING.value, source=RULE_AUTO_CLOSE)
        self._publish(room, message)


def evaluate_business_rules(
    db: Session,
    tenant_id: str,
    now: Optional[datetime] = None,
    hub=None
) -> EvaluationResult:
    """Run one scheduler tick for a tenant (idempotent for a given ``now``)"""
    now = now or utcnow()
    result = EvaluationResult(tenant_id=tenant_id, evaluated_at=now)

    # 1. Gate
    result.outside_hours = not tenant_is_open(db, tenant_id, now)
    result.gate_changed = _update_gate(db, tenant_id, result.outside_hours, now)
    if result.gate_changed:
        log.info(f"🕒 Tenant {tenant_id} is now {'outside' if result.outside_hours else 'inside'} business hours")
        log_transition("gate", tenant_id, outside_hours=result.outside_hours)
        if hub is not None:
            hub.publish_tenant(tenant_id, "tenant_gate_changed", {
                "outside_hours": result.outside_hours,
                "changed_at": isoformat(now),
            })

    # 2. Queue (before auto-rules so a re-run sees the same rooms)
    loader = ChatConfigLoader(db, tenant_id)
    if loader.is_auto_assignment_enabled() and not result.outside_hours:
        result.assigned = [room.id for room in auto_assign_queue(db, tenant_id, now=now, hub=hub)]

    # 3. Auto-rules
    _RuleRunner(db, tenant_id, now, hub, result).run()

    if result.changed:
        log.info(f"📋 Rules evaluated for {tenant_id}: {result.to_dict()}")
    return result
