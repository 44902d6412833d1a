from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from .entities import ApprovedRoster, HierarchyLevel, Recommendation


class UnitCreate(BaseModel):
    unit_name: str = Field(min_length=1, max_length=160)
    hierarchy_level: HierarchyLevel
    parent_id: str | None = None
    unit_code: str | None = Field(default=None, max_length=40)
    description: str | None = Field(default=None, max_length=500)


class UnitUpdate(BaseModel):
    unit_name: str | None = Field(default=None, min_length=1, max_length=160)
    hierarchy_level: HierarchyLevel | None = None
    parent_id: str | None = None
    unit_code: str | None = Field(default=None, max_length=40)
    description: str | None = Field(default=None, max_length=500)


class UnitImportPayload(BaseModel):
    records: list[dict[str, Any]] = Field(max_length=5000)


class PersonnelCreate(BaseModel):
    service_id: str = Field(min_length=1, max_length=40)
    unit_id: str
    first_name: str = Field(min_length=1, max_length=160)
    last_name: str = Field(min_length=1, max_length=160)
    rank: str | None = Field(default=None, max_length=20)


class PersonnelImportPayload(BaseModel):
    records: list[dict[str, Any]] = Field(max_length=5000)
    default_unit_id: str | None = None


class ImportResultOut(BaseModel):
    created: int
    updated: int
    errors: list[str]


class DutyTypeCreate(BaseModel):
    unit_id: str
    duty_name: str = Field(min_length=1, max_length=160)
    description: str | None = Field(default=None, max_length=500)
    slots_needed: int = Field(default=1, ge=1, le=50)
    is_active: bool = True


class DutyValueUpdate(BaseModel):
    base_weight: float = Field(default=1.0, ge=0)
    weekend_multiplier: float = Field(default=1.5, ge=0)
    holiday_multiplier: float = Field(default=2.0, ge=0)


class SlotCreate(BaseModel):
    duty_type_id: str
    date_assigned: date
    personnel_id: str | None = None


class SlotReassign(BaseModel):
    personnel_id: str | None = None


class SwapCreate(BaseModel):
    personnel_id: str
    giving_slot_id: str
    partner_id: str
    partner_slot_id: str
    reason: str | None = Field(default=None, max_length=500)


class SwapDecision(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class RecommendationCreate(BaseModel):
    recommendation: Recommendation
    comment: str | None = Field(default=None, max_length=500)


class RosterApprove(BaseModel):
    unit_id: str
    year: int = Field(ge=1900, le=9999)
    month: int = Field(ge=1, le=12)


class RosterApprovalOut(BaseModel):
    roster: ApprovedRoster
    scores_applied: int
    total_points: float
    diagnostics: dict[str, int]
    persisted: bool


class SyncFailureOut(BaseModel):
    id: int
    entity: str
    operation: str
    natural_key: dict[str, Any]
    attempts: int
    last_error: str | None = None
    status: str
    created_at: datetime
    replayed_at: datetime | None = None
