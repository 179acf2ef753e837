"""
Automation Models
=================
Typed trigger, condition and action payloads, decoded once when an
automation is created or updated.

Wire format keeps the camelCase ``deviceId`` key; Python attributes are
snake_case. Unknown condition types are kept verbatim and evaluate to true.
Unknown action types are rejected.
"""
import re
import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from error_handler import ValidationError

logger = logging.getLogger("modules.automation_models")

HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

TRIGGER_OPERATORS = {"equals", "changes_to", "changes_from", "greater_than", "less_than", "changes"}
CONDITION_OPERATORS = {"equals", "not_equals", "greater_than", "less_than"}


def time_to_minutes(value: str) -> int:
    """'HH:MM' -> minutes since midnight."""
    match = HHMM_RE.match(value.strip())
    if not match:
        raise ValueError(f"invalid time {value!r}, expected HH:MM")
    return int(match.group(1)) * 60 + int(match.group(2))


def _check_hhmm(value: str) -> str:
    time_to_minutes(value)
    return value.strip()


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# TRIGGERS
# ============================================================================

class TimeTriggerConfig(_Payload):
    """Either a cron expression or an HH:MM time with optional days."""
    cron: Optional[str] = None
    time: Optional[str] = None
    days: Optional[Union[str, List[int]]] = None
    timezone: Optional[str] = None

    @field_validator("time")
    @classmethod
    def _valid_time(cls, v):
        return _check_hhmm(v) if v is not None else v

    @field_validator("days")
    @classmethod
    def _valid_days(cls, v):
        if isinstance(v, list):
            for day in v:
                if not 0 <= day <= 6:
                    raise ValueError(f"day {day} out of range 0-6")
        return v

    @model_validator(mode="after")
    def _cron_or_time(self):
        if not self.cron and not self.time:
            raise ValueError("time trigger needs 'cron' or 'time'")
        return self


class StateTriggerConfig(_Payload):
    device_id: str = Field(alias="deviceId")
    property: str
    operator: str = "equals"
    value: Any = None

    @field_validator("operator")
    @classmethod
    def _known_operator(cls, v):
        if v not in TRIGGER_OPERATORS:
            # Accepted, never matches
            logger.warning(f"Unknown state trigger operator '{v}'")
        return v


class TimeTrigger(_Payload):
    type: Literal["time"] = "time"
    config: TimeTriggerConfig


class StateTrigger(_Payload):
    type: Literal["state"] = "state"
    config: StateTriggerConfig


TriggerSpec = Annotated[Union[TimeTrigger, StateTrigger], Field(discriminator="type")]


# ============================================================================
# CONDITIONS
# ============================================================================

class DeviceStateCondition(_Payload):
    type: Literal["device_state"] = "device_state"
    device_id: str = Field(alias="deviceId")
    property: str
    operator: str = "equals"
    value: Any = None


class TimeRangeCondition(_Payload):
    type: Literal["time_range"] = "time_range"
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _valid_bounds(cls, v):
        return _check_hhmm(v)


class DayOfWeekCondition(_Payload):
    type: Literal["day_of_week"] = "day_of_week"
    days: List[int]

    @field_validator("days")
    @classmethod
    def _valid_days(cls, v):
        for day in v:
            if not 0 <= day <= 6:
                raise ValueError(f"day {day} out of range 0-6 (0 = Sunday)")
        return v


class UnknownCondition(_Payload):
    """Condition of a type this hub does not evaluate. Always passes."""
    model_config = ConfigDict(extra="allow")
    type: str


CONDITION_TYPES = {
    "device_state": DeviceStateCondition,
    "time_range": TimeRangeCondition,
    "day_of_week": DayOfWeekCondition,
}

ConditionSpec = Union[DeviceStateCondition, TimeRangeCondition, DayOfWeekCondition, UnknownCondition]


def _validate(cls, data: Dict[str, Any]):
    """Validate a nested payload, re-raising as ValueError for the enclosing model."""
    try:
        return cls.model_validate(data)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())) or data.get('type')}: {err.get('msg')}"
            for err in e.errors()
        )
        raise ValueError(problems) from None


def parse_condition(data: Any):
    if isinstance(data, BaseModel):
        return data
    if not isinstance(data, dict):
        raise ValueError("condition must be an object")
    if data.get("type") is not None and not isinstance(data["type"], str):
        raise ValueError(f"condition type must be a string, got {type(data['type']).__name__}")
    cls = CONDITION_TYPES.get(data.get("type"))
    if cls is None:
        if not data.get("type"):
            raise ValueError("condition needs a 'type'")
        logger.warning(f"Unknown condition type '{data.get('type')}' will always pass")
        cls = UnknownCondition
    return _validate(cls, data)


# ============================================================================
# ACTIONS
# ============================================================================

class DeviceControlAction(_Payload):
    type: Literal["device_control"] = "device_control"
    device_id: str = Field(alias="deviceId")
    command: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class DelayAction(_Payload):
    type: Literal["delay"] = "delay"
    duration: float = Field(ge=0, description="milliseconds")


class NotificationAction(_Payload):
    type: Literal["notification"] = "notification"
    message: str
    title: Optional[str] = None
    level: str = "info"


ACTION_TYPES = {
    "device_control": DeviceControlAction,
    "delay": DelayAction,
    "notification": NotificationAction,
}

ActionSpec = Union[DeviceControlAction, DelayAction, NotificationAction]


def parse_action(data: Any):
    if isinstance(data, BaseModel):
        return data
    if not isinstance(data, dict):
        raise ValueError("action must be an object")
    action_type = data.get("type")
    if action_type is None and ("deviceId" in data or "device_id" in data):
        action_type = "device_control"
        data = {**data, "type": action_type}
    if not isinstance(action_type, str):
        raise ValueError(f"unknown action type {action_type!r}")
    cls = ACTION_TYPES.get(action_type)
    if cls is None:
        raise ValueError(f"unknown action type {action_type!r}")
    return _validate(cls, data)


# ============================================================================
# AUTOMATION
# ============================================================================

class Automation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = Field(min_length=1)
    description: str = ""
    trigger: TriggerSpec
    conditions: List[ConditionSpec] = Field(default_factory=list)
    actions: List[ActionSpec] = Field(default_factory=list)
    enabled: bool = True
    created_by: Optional[str] = None
    ai_generated: bool = False
    ai_metadata: Optional[Dict[str, Any]] = None
    last_triggered: Optional[float] = None
    trigger_count: int = 0
    created_at: float
    updated_at: float

    @field_validator("trigger", mode="before")
    @classmethod
    def _trigger_type_is_text(cls, v):
        if isinstance(v, dict) and not isinstance(v.get("type", ""), str):
            raise ValueError("trigger type must be a string")
        return v

    @field_validator("conditions", mode="before")
    @classmethod
    def _decode_conditions(cls, v):
        if v is not None and not isinstance(v, list):
            raise ValueError("conditions must be a list")
        return [parse_condition(item) for item in (v or [])]

    @field_validator("actions", mode="before")
    @classmethod
    def _decode_actions(cls, v):
        if v is not None and not isinstance(v, list):
            raise ValueError("actions must be a list")
        return [parse_action(item) for item in (v or [])]

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, v):
        return v or ""

    @property
    def is_time_based(self) -> bool:
        return self.trigger.type == "time"

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AutomationLogEntry(BaseModel):
    id: str
    automation_id: str
    status: Literal["success", "error"]
    trigger_data: Optional[Dict[str, Any]] = None
    actions_executed: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def decode_automation(data: Dict[str, Any]) -> Automation:
    """
    Validate an automation definition.

    Raises:
        ValidationError: with pydantic's error list in ``details``
    """
    try:
        return Automation.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg")}
            for err in e.errors()
        ]
        summary = "; ".join(f"{err['loc']}: {err['msg']}" for err in errors)
        raise ValidationError(f"Invalid automation: {summary}", {"errors": errors}) from e
