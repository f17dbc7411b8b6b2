# supportchat/api/v1/business_hours.py
"""
Business hours, auto-rules and tenant chat settings, plus an on-demand
rule evaluation (the same tick the scheduler runs).
"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Any, Dict, List

from supportchat.api.deps import get_service, get_tenant_id, get_widget_tenant_id
from supportchat.core.config_loader import get_chat_config, get_or_create_tenant_settings
from supportchat.core.timezone import to_naive_utc
from supportchat.db.session import get_db
from supportchat.schemas.business_hours import (
    AutoRuleIn, AutoRuleResponse, BusinessHourIn, BusinessHourResponse,
    ChatSettingsUpdate, EvaluationRequest, EvaluationResponse,
)
from supportchat.schemas.room import WidgetStateResponse
from supportchat.services import ChatService
from supportchat.services.business_hours import (
    evaluate_business_rules, list_auto_rules, list_business_hours, upsert_auto_rule, upsert_business_hours,
)

router = APIRouter()
log = logging.getLogger("supportchat.api.business_hours")


@router.get("", response_model=List[BusinessHourResponse])
def get_business_hours(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id)
):
    return list_business_hours(db, tenant_id)


@router.put("", response_model=List[BusinessHourResponse])
def set_business_hours(
    data: List[BusinessHourIn],
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id)
):
    """Upsert one window per weekday"""
    for rule in data:
        upsert_business_hours(db, tenant_id, rule.day_of_week, rule.start_time, rule.end_time, rule.is_active)
    log.info(f"Business hours updated for {tenant_id}: {len(data)} day(s)")
    return list_business_hours(db, tenant_id)


@router.get("/rules", response_model=List[AutoRuleResponse])
def get_auto_rules(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id)
):
    return list_auto_rules(db, tenant_id)


@router.put("/rules", response_model=AutoRuleResponse)
def set_auto_rule(
    data: AutoRuleIn,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id)
):
    return upsert_auto_rule(
        db, tenant_id, data.rule_type, data.trigger_minutes, data.message_content, data.is_enabled
    )


@router.get("/settings")
def get_settings(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id)
) -> Dict[str, Any]:
    """Resolved chat settings (database first, environment fallback)"""
    return get_chat_config(db, tenant_id)


@router.put("/settings")
def update_settings(
    data: ChatSettingsUpdate,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id)
) -> Dict[str, Any]:
    row = get_or_create_tenant_settings(db, tenant_id)
    for key, value in data.model_dump(exclude_unset=True).items():
        setattr(row, key, value)
    db.commit()
    log.info(f"Chat settings updated for {tenant_id}")
    return get_chat_config(db, tenant_id)


@router.post("/evaluate", response_model=EvaluationResponse)
def evaluate(
    data: EvaluationRequest,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    service: ChatService = Depends(get_service)
):
    """Run one rule evaluation now (idempotent for a given instant)"""
    result = evaluate_business_rules(db, tenant_id, to_naive_utc(data.now), hub=service.hub)
    return result.to_dict()


@router.get("/widget", response_model=WidgetStateResponse)
def widget_state(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_widget_tenant_id),
    service: ChatService = Depends(get_service)
):
    """Gate and texts for the visitor widget"""
    return service.widget_state(db, tenant_id)
