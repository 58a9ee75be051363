from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from tradiedesk.schemas.common import PaginationMeta


AutomationTriggerType = Literal["status_change", "time_delay", "no_response", "payment_received"]
AutomationEntityType = Literal["job", "quote", "invoice"]
AutomationActionType = Literal[
    "send_email",
    "send_sms",
    "create_job",
    "create_invoice",
    "notification",
    "update_status",
]
AutomationTemplateCategory = Literal["quote", "invoice", "job", "payment"]
AutomationLogResult = Literal["success", "error"]
ActionOutcomeStatus = Literal["success", "skipped", "failed"]


class _CamelModel(BaseModel):
    # Trigger and action JSON is stored camelCase; snake_case input is accepted too.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class AutomationTrigger(_CamelModel):
    type: AutomationTriggerType
    entity_type: AutomationEntityType
    from_status: str | None = Field(default=None, max_length=40)
    to_status: str | None = Field(default=None, max_length=40)
    delay_days: int | None = Field(default=None, ge=-365, le=365)

    @model_validator(mode="after")
    def validate_entity_for_trigger(self) -> "AutomationTrigger":
        if self.type == "payment_received" and self.entity_type != "invoice":
            raise ValueError("payment_received triggers only apply to invoices")
        return self

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class AutomationAction(_CamelModel):
    type: AutomationActionType
    template: str | None = Field(default=None, max_length=60)
    message: str | None = Field(default=None, max_length=1000)
    new_status: str | None = Field(default=None, max_length=20)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class AutomationTemplate(BaseModel):
    id: str
    name: str
    description: str
    category: AutomationTemplateCategory
    trigger: AutomationTrigger
    actions: list[AutomationAction]
    email_subject: str | None = None
    email_body: str | None = None
    sms_body: str | None = None
    popular: bool = False


class AutomationCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    is_active: bool = True
    template_id: str | None = Field(default=None, max_length=60)
    trigger: AutomationTrigger
    actions: list[AutomationAction] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Chase quiet quotes",
                "is_active": True,
                "trigger": {"type": "no_response", "entityType": "quote", "delayDays": 3},
                "actions": [
                    {"type": "send_email", "template": "quote_follow_up"},
                    {"type": "notification", "message": "Quote follow-up sent to {client_name}"},
                ],
            }
        }
    )

    @model_validator(mode="after")
    def validate_actions_not_empty(self) -> "AutomationCreateIn":
        if not self.actions:
            raise ValueError("At least one action is required")
        return self


class AutomationUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    is_active: bool | None = None
    trigger: AutomationTrigger | None = None
    actions: list[AutomationAction] | None = None

    @model_validator(mode="after")
    def validate_has_updates(self) -> "AutomationUpdateIn":
        if (
            self.name is None
            and self.description is None
            and self.is_active is None
            and self.trigger is None
            and self.actions is None
        ):
            raise ValueError("At least one field must be provided")
        if self.actions is not None and not self.actions:
            raise ValueError("At least one action is required")
        return self


class AutomationOut(BaseModel):
    id: str
    user_id: str
    name: str
    description: str | None = None
    is_active: bool
    template_id: str | None = None
    trigger: AutomationTrigger
    actions: list[AutomationAction]
    created_at: datetime
    updated_at: datetime


class AutomationListOut(BaseModel):
    items: list[AutomationOut]
    pagination: PaginationMeta
    is_active: bool | None = None


class AutomationDeleteOut(BaseModel):
    id: str
    deleted: bool


class AutomationLogOut(BaseModel):
    id: str
    automation_id: str
    entity_type: AutomationEntityType
    entity_id: str
    result: AutomationLogResult
    error_message: str | None = None
    processed_at: datetime


class AutomationLogListOut(BaseModel):
    items: list[AutomationLogOut]
    limit: int


class AutomationScanOut(BaseModel):
    processed: int
    errors: int


class AutomationTemplateCatalogOut(BaseModel):
    items: list[AutomationTemplate]
    category: AutomationTemplateCategory | None = None


class AutomationTemplateInstallIn(BaseModel):
    activate: bool = True
    name: str | None = Field(default=None, min_length=2, max_length=120)


class AutomationTemplateInstallOut(BaseModel):
    template: AutomationTemplate
    automation: AutomationOut
