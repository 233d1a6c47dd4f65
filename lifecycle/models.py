"""Typed lead, deal and project records validated at the backend boundary."""
from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Generic, List, Literal, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

from lifecycle import stages


def _coerce_id(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    return str(value)


def _coerce_date(value: Any) -> Any:
    # backend sends either plain dates or full ISO timestamps
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        return value[:10]
    if isinstance(value, datetime):
        return value.date()
    return value


EntityId = Annotated[str, BeforeValidator(_coerce_id)]
OptionalId = Annotated[Optional[str], BeforeValidator(_coerce_id)]
OptionalDate = Annotated[Optional[date], BeforeValidator(_coerce_date)]

DealStatus = Literal["open", "won", "lost"]
SubmissionStatus = Literal["on_hold", "compiling", "submitted"]


class Record(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class LeadComment(Record):
    text: str
    author: Optional[str] = None
    created_at: Optional[datetime] = None


class Lead(Record):
    id: EntityId = Field(validation_alias=AliasChoices("id", "lead_id"))
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    source: Optional[str] = None
    assigned_employee_id: OptionalId = None
    current_stage: int = Field(
        default=stages.FIRST_CONTACT,
        validation_alias=AliasChoices("current_stage", "current_stage_id"),
    )
    comments: List[LeadComment] = Field(default_factory=list)
    is_lost: bool = False
    lost_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("current_stage")
    @classmethod
    def _known_stage(cls, value: int) -> int:
        if value not in stages.LEAD_STAGE_IDS:
            raise ValueError(f"unknown lead stage {value}")
        return value

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_converted(self) -> bool:
        return self.current_stage == stages.CONVERT_TO_OPPORTUNITY


class Deal(Record):
    id: EntityId = Field(validation_alias=AliasChoices("id", "prospect_id"))
    lead_id: OptionalId = None
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    case_type: Optional[str] = None
    assigned_employee_id: OptionalId = None
    pipeline_stage: str = stages.OPPORTUNITY
    status: DealStatus = "open"
    lost_reason: Optional[str] = None
    quote_amount: float = 0.0
    discount_amount: float = 0.0
    forecast_amount: Optional[float] = None
    forecast_probability: Optional[float] = None
    expected_closing_date: OptionalDate = None
    expected_payment_date: OptionalDate = None
    tags: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("quote_amount", "discount_amount", mode="before")
    @classmethod
    def _null_amount(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @field_validator("pipeline_stage")
    @classmethod
    def _known_stage(cls, value: str) -> str:
        if not stages.is_deal_stage(value):
            raise ValueError(f"unknown pipeline stage {value!r}")
        return value

    @model_validator(mode="after")
    def _normalize_won_alias(self) -> "Deal":
        # the "won" stage token is a legacy alias; status carries the outcome
        if self.pipeline_stage == stages.WON and self.status == "open":
            self.status = "won"
        return self

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_lost(self) -> bool:
        return self.status == "lost"

    @property
    def is_won(self) -> bool:
        return self.status == "won"


class TrackingInfo(Record):
    type_of_submission: Optional[str] = None
    submission_center: Optional[str] = None
    date_of_submission: OptionalDate = None
    visa_ref: Optional[str] = None
    vfs_receipt: Optional[str] = None
    receipt_number: Optional[str] = None

    def missing(self) -> List[str]:
        """Names of tracking fields that are still blank."""
        return [
            name for name in TrackingInfo.model_fields
            if getattr(self, name) in (None, "")
        ]


class Project(Record):
    id: EntityId = Field(validation_alias=AliasChoices("id", "project_id"))
    deal_id: OptionalId = Field(default=None, validation_alias=AliasChoices("deal_id", "prospect_id"))
    name: str = Field(default="", validation_alias=AliasChoices("name", "project_name"))
    client_name: Optional[str] = None
    case_type: Optional[str] = None
    folder: Optional[str] = None
    stage: int = Field(default=stages.NEW_CLIENT, ge=1, le=6,
                       validation_alias=AliasChoices("stage", "current_stage"))
    supervisor_reviewed: bool = False
    submitted: bool = False
    submission_status: Optional[SubmissionStatus] = None
    tracking: TrackingInfo = Field(default_factory=TrackingInfo)
    status: str = stages.PROJECT_STAGE_LABELS[stages.NEW_CLIENT]
    progress: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("tracking", mode="before")
    @classmethod
    def _null_tracking(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def is_completed(self) -> bool:
        return self.stage == stages.COMPLETED


class ChecklistItem(Record):
    id: EntityId = Field(validation_alias=AliasChoices("id", "item_id"))
    project_id: EntityId
    category: str = ""
    name: str = Field(validation_alias=AliasChoices("name", "document_name"))
    is_required: bool = True
    is_received: bool = False
    received_date: OptionalDate = None
    reminder_sent_date: OptionalDate = None
    notes: Optional[str] = None


T = TypeVar("T")


class Conversion(BaseModel, Generic[T]):
    """Result of an idempotent create: the record and whether it is new."""
    record: T
    created: bool


class LeadMove(BaseModel):
    lead: Lead
    deal: Optional[Deal] = None
    deal_created: bool = False


class WonDeal(BaseModel):
    deal: Deal
    project: Project
    project_created: bool
