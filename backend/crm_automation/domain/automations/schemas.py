from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from crm_automation.domain.errors import InvalidConfiguration
from crm_automation.domain.leads.statuses import is_valid_status

TRIGGER_TIME_BASED = "time_based"
TRIGGER_STATUS_CHANGE = "status_change"
TRIGGER_STAGE_CHANGE = "stage_change"
TRIGGER_TAG_ADDED = "tag_added"
TRIGGER_INACTIVITY = "inactivity"

TRIGGER_TYPES = (
    TRIGGER_TIME_BASED,
    TRIGGER_STATUS_CHANGE,
    TRIGGER_STAGE_CHANGE,
    TRIGGER_TAG_ADDED,
    TRIGGER_INACTIVITY,
)
TIME_DRIVEN_TRIGGERS = frozenset({TRIGGER_TIME_BASED, TRIGGER_INACTIVITY})

ACTION_SEND_MESSAGE = "send_message"
ACTION_CHANGE_STATUS = "change_status"
ACTION_ASSIGN_SELLER = "assign_seller"
ACTION_ADD_TAG = "add_tag"
ACTION_NOTIFY_USER = "notify_user"

ACTION_TYPES = (
    ACTION_SEND_MESSAGE,
    ACTION_CHANGE_STATUS,
    ACTION_ASSIGN_SELLER,
    ACTION_ADD_TAG,
    ACTION_NOTIFY_USER,
)

ANY_STATUS = "any"


class _Config(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class TimeBasedTrigger(_Config):
    kind: Literal["time_based"] = "time_based"
    hours: float = Field(gt=0)
    reference: Literal["created_at", "stage_entered_at"] = "created_at"


class StatusChangeTrigger(_Config):
    kind: Literal["status_change"] = "status_change"
    from_status: str = Field(default=ANY_STATUS, min_length=1)
    to_status: str = Field(min_length=1)

    @model_validator(mode="after")
    def validate_statuses(self) -> "StatusChangeTrigger":
        if self.from_status != ANY_STATUS and not is_valid_status(self.from_status):
            raise ValueError(f"unknown from_status: {self.from_status}")
        if self.to_status != ANY_STATUS and not is_valid_status(self.to_status):
            raise ValueError(f"unknown to_status: {self.to_status}")
        return self

    def matches(self, previous: str | None, new: str | None) -> bool:
        return _transition_matches(self.from_status, self.to_status, previous, new)


class StageChangeTrigger(_Config):
    kind: Literal["stage_change"] = "stage_change"
    from_status: str = Field(default=ANY_STATUS, min_length=1)
    to_status: str = Field(min_length=1)

    def matches(self, previous: str | None, new: str | None) -> bool:
        return _transition_matches(self.from_status, self.to_status, previous, new)


class TagAddedTrigger(_Config):
    kind: Literal["tag_added"] = "tag_added"
    tag: str = Field(min_length=1, max_length=64)


class InactivityTrigger(_Config):
    kind: Literal["inactivity"] = "inactivity"
    hours: float = Field(gt=0)


TriggerConfig = Annotated[
    Union[TimeBasedTrigger, StatusChangeTrigger, StageChangeTrigger, TagAddedTrigger, InactivityTrigger],
    Field(discriminator="kind"),
]


class SendMessageAction(_Config):
    kind: Literal["send_message"] = "send_message"
    channel: Literal["whatsapp", "instagram"] = "whatsapp"
    template_id: int | None = None
    message: str | None = Field(default=None, min_length=1, max_length=4000)

    @model_validator(mode="after")
    def validate_content(self) -> "SendMessageAction":
        if (self.template_id is None) == (self.message is None):
            raise ValueError("exactly one of template_id or message is required")
        return self


class ChangeStatusAction(_Config):
    kind: Literal["change_status"] = "change_status"
    new_status: str = Field(min_length=1)

    @field_validator("new_status")
    @classmethod
    def validate_new_status(cls, value: str) -> str:
        if not is_valid_status(value):
            raise ValueError(f"unknown status: {value}")
        return value


class AssignSellerAction(_Config):
    kind: Literal["assign_seller"] = "assign_seller"
    policy: Literal["fixed", "least_loaded"] = "least_loaded"
    seller_id: str | None = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def validate_policy(self) -> "AssignSellerAction":
        if self.policy == "fixed" and not self.seller_id:
            raise ValueError("seller_id is required for the fixed policy")
        if self.policy == "least_loaded" and self.seller_id:
            raise ValueError("seller_id is only allowed with the fixed policy")
        return self


class AddTagAction(_Config):
    kind: Literal["add_tag"] = "add_tag"
    tag: str = Field(min_length=1, max_length=64)


class NotifyUserAction(_Config):
    kind: Literal["notify_user"] = "notify_user"
    user_id: str = Field(min_length=1, max_length=64)
    message: str = Field(min_length=1, max_length=2000)
    title: str | None = Field(default=None, max_length=255)


ActionConfig = Annotated[
    Union[SendMessageAction, ChangeStatusAction, AssignSellerAction, AddTagAction, NotifyUserAction],
    Field(discriminator="kind"),
]

_TRIGGER_ADAPTER: TypeAdapter[Any] = TypeAdapter(TriggerConfig)
_ACTION_ADAPTER: TypeAdapter[Any] = TypeAdapter(ActionConfig)


def _transition_matches(from_status: str, to_status: str, previous: str | None, new: str | None) -> bool:
    if to_status != ANY_STATUS and new != to_status:
        return False
    if from_status != ANY_STATUS and previous != from_status:
        return False
    return True


def _validation_errors(prefix: str, exc: ValidationError) -> list[dict]:
    return [
        {
            "field": ".".join([prefix, *[str(part) for part in error["loc"][1:]]]),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]


def parse_trigger_config(trigger_type: str, raw: dict[str, Any] | None):  # noqa: ANN201
    if trigger_type not in TRIGGER_TYPES:
        raise InvalidConfiguration(
            detail=f"Unsupported trigger type: {trigger_type}",
            errors=[{"field": "trigger_type", "message": f"must be one of {', '.join(TRIGGER_TYPES)}"}],
        )
    payload = {key: value for key, value in (raw or {}).items() if key != "kind"}
    try:
        return _TRIGGER_ADAPTER.validate_python({**payload, "kind": trigger_type})
    except ValidationError as exc:
        raise InvalidConfiguration(
            detail=f"Invalid trigger_config for {trigger_type}",
            errors=_validation_errors("trigger_config", exc),
        ) from exc


def parse_action_config(action_type: str, raw: dict[str, Any] | None):  # noqa: ANN201
    if action_type not in ACTION_TYPES:
        raise InvalidConfiguration(
            detail=f"Unsupported action type: {action_type}",
            errors=[{"field": "action_type", "message": f"must be one of {', '.join(ACTION_TYPES)}"}],
        )
    payload = {key: value for key, value in (raw or {}).items() if key != "kind"}
    try:
        return _ACTION_ADAPTER.validate_python({**payload, "kind": action_type})
    except ValidationError as exc:
        raise InvalidConfiguration(
            detail=f"Invalid action_config for {action_type}",
            errors=_validation_errors("action_config", exc),
        ) from exc


def dump_config(config: BaseModel) -> dict[str, Any]:
    return config.model_dump(exclude={"kind"}, exclude_none=True)


class RuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    description: str | None = Field(default=None, max_length=2000)
    trigger_type: str = Field(min_length=1, max_length=32)
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    action_type: str = Field(min_length=1, max_length=32)
    action_config: dict[str, Any] = Field(default_factory=dict)
    conditions: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class RuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=160)
    description: str | None = Field(default=None, max_length=2000)
    trigger_type: str | None = Field(default=None, min_length=1, max_length=32)
    trigger_config: dict[str, Any] | None = None
    action_type: str | None = Field(default=None, min_length=1, max_length=32)
    action_config: dict[str, Any] | None = None
    conditions: dict[str, Any] | None = None
    is_active: bool | None = None


class RuleToggleRequest(BaseModel):
    is_active: bool


class RuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: uuid.UUID
    company_id: uuid.UUID
    name: str
    description: str | None
    trigger_type: str
    trigger_config: dict[str, Any]
    action_type: str
    action_config: dict[str, Any]
    conditions: dict[str, Any] = Field(validation_alias="conditions_json")
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    execution_id: uuid.UUID
    rule_id: uuid.UUID | None
    rule_name: str
    trigger_type: str
    action_type: str
    lead_id: str
    executed_at: datetime
    success: bool
    error_message: str | None
    execution_details: dict[str, Any]
    attempt: int
    retry_of: uuid.UUID | None


class LeadEventRequest(BaseModel):
    lead_id: str = Field(min_length=1, max_length=36)
    kind: Literal["status_change", "stage_change", "tag_added"]
    previous_status: str | None = None
    new_status: str | None = None
    tag: str | None = None

    @model_validator(mode="after")
    def validate_payload(self) -> "LeadEventRequest":
        if self.kind in {"status_change", "stage_change"} and not self.new_status:
            raise ValueError("new_status is required for status and stage changes")
        if self.kind == "tag_added" and not self.tag:
            raise ValueError("tag is required for tag_added events")
        return self


class LeadEventResponse(BaseModel):
    lead_id: str
    matched_rules: list[uuid.UUID]
    executions: list[ExecutionResponse]


class RunRuleRequest(BaseModel):
    lead_ids: list[str] = Field(min_length=1, max_length=500)


class RunRuleResponse(BaseModel):
    rule_id: uuid.UUID
    executions: list[ExecutionResponse]
    missing_lead_ids: list[str]


class TickResponse(BaseModel):
    leads_scanned: int
    executions: int
