# supportchat/schemas/business_hours.py
"""
Pydantic schemas for business hours, auto-rules, tenant chat settings
and rule evaluation.
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from supportchat.services.business_hours import RULE_TYPES


class BusinessHourIn(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Monday ... 6 = Sunday")
    start_time: time
    end_time: time
    is_active: bool = True

    @field_validator('end_time')
    @classmethod
    def validate_window(cls, v, info):
        start = info.data.get('start_time')
        if start is not None and v < start:
            raise ValueError('end_time must not be before start_time')
        return v


class BusinessHourResponse(BusinessHourIn):
    id: int

    class Config:
        from_attributes = True


class AutoRuleIn(BaseModel):
    rule_type: str
    trigger_minutes: int = Field(..., ge=1, description="Minutes before the rule fires")
    message_content: Optional[str] = Field(None, max_length=4096)
    is_enabled: bool = True

    @field_validator('rule_type')
    @classmethod
    def validate_rule_type(cls, v):
        if v not in RULE_TYPES:
            raise ValueError(f'rule_type must be one of: {", ".join(RULE_TYPES)}')
        return v


class AutoRuleResponse(AutoRuleIn):
    id: int

    class Config:
        from_attributes = True


class ChatSettingsUpdate(BaseModel):
    """Tenant overrides; unset fields fall back to the process defaults"""
    timezone: Optional[str] = None
    auto_assignment: Optional[bool] = None
    assignment_policy: Optional[str] = None
    max_queue_size: Optional[int] = Field(None, ge=0)
    max_rooms_per_visitor: Optional[int] = Field(None, ge=1)
    multi_conversation: Optional[bool] = None
    welcome_message: Optional[str] = Field(None, max_length=4096)
    outside_hours_message: Optional[str] = Field(None, max_length=4096)
    all_busy_message: Optional[str] = Field(None, max_length=4096)

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v):
        if v is not None:
            try:
                ZoneInfo(v)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValueError(f'Unknown timezone: {v}')
        return v

    @field_validator('assignment_policy')
    @classmethod
    def validate_policy(cls, v):
        if v is not None and v not in ('least_loaded', 'round_robin'):
            raise ValueError('assignment_policy must be least_loaded or round_robin')
        return v


class EvaluationRequest(BaseModel):
    now: Optional[datetime] = Field(None, description="Evaluation instant (UTC); defaults to the current time")


class EvaluationResponse(BaseModel):
    tenant_id: str
    evaluated_at: datetime
    outside_hours: bool
    gate_changed: bool
    assigned: List[int]
    notices: List[int]
    warnings: List[int]
    closed: List[int]
    escalated: List[int]
