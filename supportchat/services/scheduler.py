# supportchat/services/scheduler.py
"""
Recurring business-rule evaluation, independent of any attendant session.

Runs inside the API process (started from the FastAPI lifespan) or standalone
(scripts/run_scheduler.py). Several instances may run at once: every write is
a conditional mutation, so overlapping ticks are harmless.

A standalone instance has no websocket sinks. When one of its ticks changes a
tenant's rooms it stamps ``TenantChatSettings.unpublished_since``; the API
process relays that stamp as a ``tenant_resync`` event on its next tick, and
consoles refetch.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

import anyio

from supportchat.core.config import SCHEDULER_INTERVAL_SECONDS
from supportchat.core.config_loader import get_or_create_tenant_settings
from supportchat.core.timezone import isoformat, utcnow
from supportchat.db.session import SessionLocal
from supportchat.models.business_hours import BusinessHourRule, ChatAutoRule
from supportchat.models.room import ChatRoom
from supportchat.models.tenant_settings import TenantChatSettings
from supportchat.services.business_hours import EvaluationResult, evaluate_business_rules
from supportchat.services.state_machine import OPEN_STATUSES

log = logging.getLogger("supportchat.scheduler")


def configured_tenants(db) -> List[str]:
    """Tenants with chat settings, business hours, auto-rules or open rooms"""
    tenants = set()
    for column, extra in (
        (TenantChatSettings.tenant_id, None),
        (BusinessHourRule.tenant_id, None),
        (ChatAutoRule.tenant_id, None),
        (ChatRoom.tenant_id, ChatRoom.status.in_(OPEN_STATUSES)),
    ):
        query = db.query(column).distinct()
        if extra is not None:
            query = query.filter(extra)
        tenants.update(row[0] for row in query.all())
    return sorted(tenants)


def mark_unpublished(db, tenant_id: str, now: datetime) -> None:
    """Stamp a tenant whose rooms changed without fan-out; the earliest stamp wins"""
    get_or_create_tenant_settings(db, tenant_id)
    db.query(TenantChatSettings).filter(
        TenantChatSettings.tenant_id == tenant_id,
        TenantChatSettings.unpublished_since.is_(None)
    ).update({TenantChatSettings.unpublished_since: now}, synchronize_session=False)
    db.commit()


def relay_unpublished(db, hub) -> List[str]:
    """
    Publish ``tenant_resync`` for every stamped tenant and clear the stamp.

    The clear is conditional on the stamp read, so a tenant is relayed once
    per stamp even when several API processes relay at the same time.
    """
    stamped = db.query(TenantChatSettings.tenant_id, TenantChatSettings.unpublished_since).filter(
        TenantChatSettings.unpublished_since.isnot(None)
    ).all()

    relayed = []
    for tenant_id, since in stamped:
        affected = db.query(TenantChatSettings).filter(
            TenantChatSettings.tenant_id == tenant_id,
            TenantChatSettings.unpublished_since == since
        ).update({TenantChatSettings.unpublished_since: None}, synchronize_session=False)
        db.commit()
        if affected != 1:
            continue
        hub.publish_tenant(tenant_id, "tenant_resync", {"reason": "out_of_process_tick", "since": isoformat(since)})
        relayed.append(tenant_id)

    if relayed:
        log.info(f"📣 Relayed out-of-process changes for {len(relayed)} tenant(s)")
    return relayed


class RuleScheduler:
    """
    Periodic ``evaluate_business_rules`` over every configured tenant.

    With a hub, each tick first relays stamps left by hub-less instances.
    ``evaluate_rules=False`` keeps only that relay (API process while a
    standalone scheduler does the evaluation).

    Usage:
        scheduler = RuleScheduler(hub=realtime_hub)
        task = asyncio.create_task(scheduler.run())
        ...
        scheduler.stop(); task.cancel()
    """

    def __init__(
        self,
        hub=None,
        interval: float = SCHEDULER_INTERVAL_SECONDS,
        session_factory: Callable = SessionLocal,
        clock: Callable[[], datetime] = utcnow,
        evaluate_rules: bool = True
    ):
        self.hub = hub
        self.interval = interval
        self.session_factory = session_factory
        self.clock = clock
        self.evaluate_rules = evaluate_rules
        self.ticks = 0
        self._stopped = False

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, EvaluationResult]:
        """Evaluate all tenants once (blocking); a failing tenant does not stop the others"""
        now = now or self.clock()
        results: Dict[str, EvaluationResult] = {}

        db = self.session_factory()
        try:
            if self.hub is not None:
                try:
                    relay_unpublished(db, self.hub)
                except Exception as e:
                    db.rollback()
                    log.error(f"❌ Relay of out-of-process changes failed: {e}", exc_info=True)

            tenants = configured_tenants(db) if self.evaluate_rules else []
            for tenant_id in tenants:
                try:
                    result = evaluate_business_rules(db, tenant_id, now, hub=self.hub)
                    results[tenant_id] = result
                    if self.hub is None and result.changed:
                        mark_unpublished(db, tenant_id, now)
                except Exception as e:
                    db.rollback()
                    log.error(f"❌ Rule evaluation failed for tenant {tenant_id}: {e}", exc_info=True)
        finally:
            db.close()

        self.ticks += 1
        log.debug(f"Scheduler tick {self.ticks}: {len(results)} tenant(s) evaluated")
        return results

    async def run(self) -> None:
        """Loop until stopped or cancelled; each tick runs in a worker thread"""
        mode = "rules + relay" if self.evaluate_rules else "relay only"
        log.info(f"⏰ Rule scheduler started (every {self.interval}s, {mode})")
        try:
            while not self._stopped:
                try:
                    await anyio.to_thread.run_sync(self.run_once)
                except Exception as e:
                    # store unavailable; retried on the next tick
                    log.error(f"❌ Scheduler tick failed: {e}")
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            log.info("⏹️ Rule scheduler cancelled")
            raise
        finally:
            log.info("Rule scheduler stopped")

    def stop(self) -> None:
        self._stopped = True
