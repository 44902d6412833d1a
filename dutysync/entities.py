"""Domain entities persisted in the local store.

Every collection key maps to one entity class; rows are stored as JSON and
validated back into these models on read.
"""

import enum
import uuid
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from .models import utc_now_naive


def new_id() -> str:
    return str(uuid.uuid4())


class HierarchyLevel(str, enum.Enum):
    UNIT = "unit"
    COMPANY = "company"
    SECTION = "section"
    WORK_SECTION = "work_section"


# Rank of each level from the root down; a child must rank strictly higher.
LEVEL_ORDER = {
    HierarchyLevel.UNIT: 0,
    HierarchyLevel.COMPANY: 1,
    HierarchyLevel.SECTION: 2,
    HierarchyLevel.WORK_SECTION: 3,
}


class ApproverType(str, enum.Enum):
    WORK_SECTION_MANAGER = "work_section_manager"
    SECTION_MANAGER = "section_manager"
    COMPANY_MANAGER = "company_manager"


class SlotStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    APPROVED = "approved"
    COMPLETED = "completed"
    SWAPPED = "swapped"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Recommendation(str, enum.Enum):
    RECOMMEND = "recommend"
    NOT_RECOMMEND = "not_recommend"


class Unit(BaseModel):
    id: str = Field(default_factory=new_id)
    parent_id: str | None = None
    unit_name: str
    unit_code: str | None = None
    hierarchy_level: HierarchyLevel
    description: str | None = None
    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)


class Personnel(BaseModel):
    id: str = Field(default_factory=new_id)
    service_id: str
    unit_id: str
    first_name: str
    last_name: str
    rank: str = ""
    current_duty_score: float = 0.0
    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)

    @property
    def display_name(self) -> str:
        return f"{self.rank} {self.last_name}".strip()


class DutyType(BaseModel):
    id: str = Field(default_factory=new_id)
    unit_id: str
    duty_name: str
    description: str | None = None
    slots_needed: int = 1
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)


class DutyValue(BaseModel):
    id: str = Field(default_factory=new_id)
    duty_type_id: str
    base_weight: float = 1.0
    weekend_multiplier: float = 1.5
    holiday_multiplier: float = 2.0


class DutySlot(BaseModel):
    id: str = Field(default_factory=new_id)
    duty_type_id: str
    personnel_id: str | None = None
    date_assigned: date
    assigned_by: str | None = None
    status: SlotStatus = SlotStatus.SCHEDULED
    swapped_at: datetime | None = None
    swapped_from_personnel_id: str | None = None
    swap_pair_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)


class DutyChangeRequest(BaseModel):
    id: str = Field(default_factory=new_id)
    swap_pair_id: str
    personnel_id: str
    giving_slot_id: str
    receiving_slot_id: str
    swap_partner_id: str
    requester_id: str | None = None
    reason: str = ""
    status: RequestStatus = RequestStatus.PENDING
    required_approver_level: ApproverType
    partner_accepted: bool = False
    partner_accepted_at: datetime | None = None
    partner_accepted_by: str | None = None
    rejection_reason: str | None = None
    created_at: datetime = Field(default_factory=utc_now_naive)
    updated_at: datetime = Field(default_factory=utc_now_naive)


class SwapApproval(BaseModel):
    id: str = Field(default_factory=new_id)
    duty_change_request_id: str
    approval_order: int
    approver_type: ApproverType
    scope_unit_id: str | None = None
    is_approver: bool = False
    status: RequestStatus = RequestStatus.PENDING
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejection_reason: str | None = None
    created_at: datetime = Field(default_factory=utc_now_naive)


class SwapRecommendation(BaseModel):
    id: str = Field(default_factory=new_id)
    duty_change_request_id: str
    recommender_id: str
    recommendation: Recommendation
    comment: str | None = None
    created_at: datetime = Field(default_factory=utc_now_naive)


class ApprovedRoster(BaseModel):
    id: str = Field(default_factory=new_id)
    unit_id: str
    year: int
    month: int
    approved_by: str | None = None
    approved_at: datetime = Field(default_factory=utc_now_naive)
    scores_applied: int = 0
    total_points: float = 0.0


class DutyScoreEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    personnel_id: str
    duty_slot_id: str | None = None
    unit_id: str
    duty_type_name: str
    points: float
    date_earned: date
    roster_month: str
    approved_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now_naive)


UNITS = "units"
PERSONNEL = "personnel"
DUTY_TYPES = "duty_types"
DUTY_VALUES = "duty_values"
DUTY_SLOTS = "duty_slots"
DUTY_CHANGE_REQUESTS = "duty_change_requests"
SWAP_APPROVALS = "swap_approvals"
SWAP_RECOMMENDATIONS = "swap_recommendations"
APPROVED_ROSTERS = "approved_rosters"
DUTY_SCORE_EVENTS = "duty_score_events"

COLLECTIONS: dict[str, type[BaseModel]] = {
    UNITS: Unit,
    PERSONNEL: Personnel,
    DUTY_TYPES: DutyType,
    DUTY_VALUES: DutyValue,
    DUTY_SLOTS: DutySlot,
    DUTY_CHANGE_REQUESTS: DutyChangeRequest,
    SWAP_APPROVALS: SwapApproval,
    SWAP_RECOMMENDATIONS: SwapRecommendation,
    APPROVED_ROSTERS: ApprovedRoster,
    DUTY_SCORE_EVENTS: DutyScoreEvent,
}
