# Enums and Pydantic models shared by the triage engine and the HTTP layer

import re
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Dict

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import BadRequest, InvalidStatus

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Category(str, Enum):
    INFRASTRUCTURE = "Infrastructure"
    SANITATION = "Sanitation"
    STREET_LIGHTING = "Street Lighting"
    WATER_SUPPLY = "Water Supply"
    TRAFFIC = "Traffic"
    PARKS = "Parks"
    OTHER = "Other"

    @property
    def code(self) -> str:
        """Four-letter prefix used in human-readable report ids."""
        return self.value[:4].upper()

class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

class ReportStatus(str, Enum):
    PENDING_ASSIGNMENT = "pending_assignment"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"

class AssignmentType(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    PENDING = "pending"

class SelectionMethod(str, Enum):
    NEAREST = "nearest"
    DISTRICT = "district"

class UserRole(str, Enum):
    CITIZEN = "citizen"
    STAFF = "staff"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"

TERMINAL_STATUSES = {ReportStatus.RESOLVED, ReportStatus.REJECTED}
PUBLIC_STATUSES = [ReportStatus.ASSIGNED, ReportStatus.IN_PROGRESS, ReportStatus.RESOLVED]
ADMIN_ROLES = {UserRole.ADMIN, UserRole.SUPERADMIN}

STATUS_ALIASES = {
    "acknowledged": ReportStatus.ASSIGNED,
    "in-progress": ReportStatus.IN_PROGRESS,
}

# ---------------------------------------------------------------------------
# Parsing helpers (raise domain errors instead of 422s)
# ---------------------------------------------------------------------------
def _squash(value: str) -> str:
    return re.sub(r"[\s_\-]", "", value).lower()

_CATEGORY_LOOKUP = {_squash(c.value): c for c in Category}

def parse_category(value) -> Category:
    if isinstance(value, Category):
        return value
    if not isinstance(value, str) or not value.strip():
        raise BadRequest("Category is required")
    category = _CATEGORY_LOOKUP.get(_squash(value))
    if category is None:
        raise BadRequest(f"Unknown category '{value}'")
    return category

def parse_urgency(value) -> Urgency:
    if value is None or value == "":
        return Urgency.MEDIUM
    if isinstance(value, Urgency):
        return value
    try:
        return Urgency(str(value).strip().lower())
    except ValueError:
        raise BadRequest(f"Unknown urgency '{value}'")

def parse_status(value) -> ReportStatus:
    if isinstance(value, ReportStatus):
        return value
    if not isinstance(value, str):
        raise InvalidStatus("Invalid status provided")
    key = value.strip().lower()
    if key in STATUS_ALIASES:
        return STATUS_ALIASES[key]
    try:
        return ReportStatus(key)
    except ValueError:
        raise InvalidStatus(f"Invalid status provided: '{value}'")

# ---------------------------------------------------------------------------
# Principal (supplied by the identity provider, trusted verbatim)
# ---------------------------------------------------------------------------
class Principal(BaseModel):
    id: str
    role: UserRole
    department: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_staff(self) -> bool:
        return self.role == UserRole.STAFF

# ---------------------------------------------------------------------------
# Pydantic Models
# ---------------------------------------------------------------------------
class Geolocation(BaseModel):
    type: str = "Point"
    coordinates: List[float]
    longitude: Optional[float] = None
    latitude: Optional[float] = None

    @field_validator('coordinates')
    @classmethod
    def validate_coordinates(cls, v):
        if len(v) != 2:
            raise ValueError("Coordinates must be [longitude, latitude]")
        return v

    @model_validator(mode='after')
    def fill_lon_lat(self):
        self.longitude, self.latitude = self.coordinates
        return self

class MediaRef(BaseModel):
    url: str
    id: str

class PriorityBreakdown(BaseModel):
    urgency_score: float
    community_score: float
    recency_score: float
    final_score: float

class ReportUpdate(BaseModel):
    id: str
    message: str
    updated_by: str
    date: datetime
    status: Optional[ReportStatus] = None

class ResolutionEvidence(BaseModel):
    image: Optional[MediaRef] = None
    notes: Optional[str] = None
    completed_by: str
    completion_date: datetime
    materials_cost: Optional[float] = None
    labor_hours: Optional[float] = None

class ReportResponse(BaseModel):
    id: str
    report_id: str
    title: str
    category: Category
    urgency: Urgency
    description: Optional[str] = None
    voice_message: Optional[MediaRef] = None
    image: Optional[MediaRef] = None
    location: Geolocation
    address: Optional[str] = None
    upvote_count: int
    has_upvoted: bool = False
    priority: int = Field(..., ge=1, le=5)
    priority_breakdown: PriorityBreakdown
    status: ReportStatus
    assignment_type: AssignmentType
    selection_method: Optional[SelectionMethod] = None
    reported_by: str
    municipality: str
    department: Optional[str] = None
    assigned_to: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None
    resolution_time_hours: Optional[float] = None
    resolution_evidence: Optional[ResolutionEvidence] = None
    rating: Optional[int] = None
    feedback: Optional[str] = None
    updates: List[ReportUpdate] = Field(default_factory=list)

class AutoSelection(BaseModel):
    municipality: str
    selection_method: SelectionMethod
    department: Optional[str] = None

class CreateReportResponse(BaseModel):
    report: ReportResponse
    auto_selected: AutoSelection

class Pagination(BaseModel):
    total_pages: int
    current_page: int
    total_reports: int
    has_next_page: bool
    has_prev_page: bool
    limit: int

class ReportListResponse(BaseModel):
    reports: List[ReportResponse]
    pagination: Pagination

class UpvoteResponse(BaseModel):
    upvote_count: int
    priority: int
    has_upvoted: bool

class AssignmentRequest(BaseModel):
    department_id: str = Field(..., max_length=100)
    staff_id: Optional[str] = Field(None, max_length=100)
    message: Optional[str] = Field(None, max_length=2000)

class UrgencyChange(BaseModel):
    urgency: str = Field(..., max_length=20)

class FeedbackRequest(BaseModel):
    # type and range checked by ReportLifecycle.add_feedback
    rating: Optional[Any] = None
    feedback: Optional[str] = Field(None, max_length=2000)

class CommentRequest(BaseModel):
    message: str = Field(..., max_length=2000)

class CategoryStat(BaseModel):
    category: str
    count: int
    avg_priority: float

class AnalyticsResponse(BaseModel):
    total_reports: int
    status_distribution: Dict[str, int] = Field(default_factory=dict)
    avg_rating: Optional[float] = None
    total_upvotes: int = 0
    avg_priority: float = 0.0
    category_stats: List[CategoryStat] = Field(default_factory=list)
    generated_at: datetime

