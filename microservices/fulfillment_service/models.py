"""
Fulfillment Service Data Models

Campaign tiers, objectives, vendor submissions and the derived progress,
board and ranking views exposed by the fulfillment engine.
Money is carried as Decimal end to end.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ====================
# Enumerations
# ====================

class SubmissionStatus(str, Enum):
    """Validation outcome of a submission"""
    PENDING = "PENDING"
    VALIDATED = "VALIDATED"
    REJECTED = "REJECTED"
    MANUAL_CONFLICT = "MANUAL_CONFLICT"

    @property
    def is_terminal(self) -> bool:
        return self is SubmissionStatus.VALIDATED

    def can_transition_to(self, target: "SubmissionStatus") -> bool:
        return target in SUBMISSION_TRANSITIONS[self]


SUBMISSION_TRANSITIONS: Dict[SubmissionStatus, FrozenSet[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({
        SubmissionStatus.VALIDATED,
        SubmissionStatus.REJECTED,
        SubmissionStatus.MANUAL_CONFLICT,
    }),
    SubmissionStatus.REJECTED: frozenset({SubmissionStatus.VALIDATED}),
    SubmissionStatus.MANUAL_CONFLICT: frozenset({
        SubmissionStatus.VALIDATED,
        SubmissionStatus.REJECTED,
    }),
    SubmissionStatus.VALIDATED: frozenset(),
}


class TierStatus(str, Enum):
    """Progress state of a (vendor, objective, tier) pair or of a whole tier"""
    LOCKED = "LOCKED"
    ACTIVE = "ACTIVE"
    COMPLETE = "COMPLETE"


class UnitKind(str, Enum):
    PAIR = "PAIR"
    UNIT = "UNIT"


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    VENDOR = "VENDOR"


class UserStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"


class CampaignStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class RankingScopeKind(str, Enum):
    """Population a leaderboard is computed over"""
    GLOBAL = "global"
    TEAM = "team"
    STORE = "store"


# ====================
# Campaign Definition Models
# ====================

class ObjectiveDefinition(BaseModel):
    """
    One objective instance. The same logical objective (same ordering key)
    is instanced once per tier with a distinct objective_id.
    """
    objective_id: str = Field(..., min_length=1)
    tier_sequence: int = Field(..., ge=1)
    ordering_key: int = Field(..., ge=1, description="Position of the objective within its tier")
    description: str = Field(default="")
    required_quantity: int = Field(..., description="Validated submissions needed to complete the pair")
    unit_kind: UnitKind = Field(default=UnitKind.UNIT)

    @field_validator('required_quantity')
    @classmethod
    def validate_required_quantity(cls, v):
        """Objectives must require at least one validated submission"""
        if v < 1:
            raise ValueError("required_quantity must be >= 1")
        return v


class TierDefinition(BaseModel):
    """A tier ("cartela") and its objective instances"""
    tier_id: Optional[str] = None
    sequence: int = Field(..., ge=1)
    title: Optional[str] = None
    objectives: List[ObjectiveDefinition] = Field(default_factory=list)


class Campaign(BaseModel):
    campaign_id: str = Field(..., min_length=1)
    title: str = Field(default="")
    status: CampaignStatus = Field(default=CampaignStatus.ACTIVE)
    manager_commission_rate: Decimal = Field(default=Decimal("0"), ge=0, le=1)
    tiers: List[TierDefinition] = Field(default_factory=list)

    def tier(self, sequence: int) -> Optional[TierDefinition]:
        for tier in self.tiers:
            if tier.sequence == sequence:
                return tier
        return None


class SpecialEvent(BaseModel):
    """Time-boxed multiplier applied to submissions sent inside its window"""
    event_id: str
    campaign_id: str
    name: str = ""
    multiplier: Decimal = Field(default=Decimal("1"), ge=1)
    starts_at: datetime
    ends_at: datetime
    is_active: bool = True

    def applies_to(self, submitted_at: datetime) -> bool:
        return self.is_active and self.starts_at <= submitted_at <= self.ends_at


# ====================
# Ledger Models
# ====================

class Submission(BaseModel):
    """A vendor's order number offered as evidence toward one objective instance"""
    submission_id: str
    vendor_id: str
    campaign_id: str
    objective_id: str
    ordering_key: int
    tier_sequence: int = Field(..., description="Sequence of the tier owning the objective instance")
    order_number: str = ""
    status: SubmissionStatus = SubmissionStatus.PENDING
    resolved_tier: Optional[int] = None
    credited_to_balance: bool = False
    base_value: Decimal = Field(default=Decimal("0"))
    applied_multiplier: Decimal = Field(default=Decimal("1"))
    final_value: Optional[Decimal] = None
    rejection_reason: Optional[str] = None
    submitted_at: datetime
    validated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_validated(self) -> bool:
        return self.status is SubmissionStatus.VALIDATED


class Vendor(BaseModel):
    """Read-only view over a platform user"""
    user_id: str
    name: str = ""
    avatar_url: Optional[str] = None
    level: Optional[str] = None
    role: UserRole = UserRole.VENDOR
    status: UserStatus = UserStatus.ACTIVE
    store_id: Optional[str] = None
    manager_id: Optional[str] = None
    points_balance: Decimal = Field(default=Decimal("0"))
    created_at: datetime

    @property
    def is_rankable(self) -> bool:
        return self.role is UserRole.VENDOR and self.status is UserStatus.ACTIVE


class Store(BaseModel):
    store_id: str
    name: str = ""
    city: Optional[str] = None
    state: Optional[str] = None
    is_active: bool = True
    ranking_visible: bool = True
    is_matrix: bool = False
    parent_store_id: Optional[str] = None
    created_at: datetime


# ====================
# Progress & Board Models
# ====================

class ObjectiveProgressResponse(BaseModel):
    vendor_id: str
    campaign_id: str
    ordering_key: int
    tier: int
    count: int = Field(..., ge=0)
    required: int = Field(..., ge=1)
    status: TierStatus
    open_tier: int = Field(..., ge=1)
    completion_ratio: float = Field(..., ge=0, le=1)


class SubmissionView(BaseModel):
    submission_id: str
    objective_id: str
    ordering_key: int
    order_number: str
    status: SubmissionStatus
    resolved_tier: Optional[int] = None
    displayed_tier: int
    credited_to_balance: bool
    base_value: Decimal
    applied_multiplier: Decimal
    final_value: Optional[Decimal] = None
    rejection_reason: Optional[str] = None
    submitted_at: datetime
    validated_at: Optional[datetime] = None


class DisplayedSubmissionsResponse(BaseModel):
    vendor_id: str
    campaign_id: str
    ordering_key: int
    tier: int
    status: TierStatus
    submissions: List[SubmissionView] = Field(default_factory=list)


class ObjectiveBoard(BaseModel):
    objective_id: str
    ordering_key: int
    description: str
    unit_kind: UnitKind
    required: int
    count: int
    status: TierStatus
    submissions: List[SubmissionView] = Field(default_factory=list)


class TierBoard(BaseModel):
    sequence: int
    title: Optional[str] = None
    status: TierStatus
    credited: bool = False
    objectives: List[ObjectiveBoard] = Field(default_factory=list)


class CampaignBoardResponse(BaseModel):
    vendor_id: str
    campaign_id: str
    open_tiers: Dict[int, int] = Field(default_factory=dict, description="ordering_key -> open tier")
    tiers: List[TierBoard] = Field(default_factory=list)


# ====================
# Outcome Processing Models
# ====================

class ValidationOutcomeRequest(BaseModel):
    status: SubmissionStatus
    base_value: Optional[Decimal] = Field(None, ge=0)
    rejection_reason: Optional[str] = Field(None, max_length=500)

    @field_validator('status')
    @classmethod
    def validate_status(cls, v):
        if v is SubmissionStatus.PENDING:
            raise ValueError("outcome status cannot be PENDING")
        return v


class TierSettlement(BaseModel):
    """Result of crediting one completed tier"""
    tier_sequence: int
    credited_value: Decimal
    submission_ids: List[str] = Field(default_factory=list)
    manager_id: Optional[str] = None
    manager_commission: Decimal = Field(default=Decimal("0"))


class ProcessSubmissionResponse(BaseModel):
    submission_id: str
    status: SubmissionStatus
    resolved_tier: Optional[int] = None
    newly_assigned: bool = False
    open_tier: int
    settlements: List[TierSettlement] = Field(default_factory=list)


class ReconcileResponse(BaseModel):
    assigned: int = 0
    settled_tiers: int = 0
    failed: int = 0


# ====================
# Ranking Models
# ====================

class RankingScope(BaseModel):
    """Closed set of ranking populations"""
    kind: RankingScopeKind = RankingScopeKind.GLOBAL
    manager_id: Optional[str] = None
    store_id: Optional[str] = None
    include_branches: bool = False

    @model_validator(mode='after')
    def validate_scope(self):
        if self.kind is RankingScopeKind.TEAM and not self.manager_id:
            raise ValueError("team scope requires manager_id")
        if self.kind is RankingScopeKind.STORE and not self.store_id:
            raise ValueError("store scope requires store_id")
        return self

    @classmethod
    def global_scope(cls) -> "RankingScope":
        return cls(kind=RankingScopeKind.GLOBAL)

    @classmethod
    def team(cls, manager_id: str) -> "RankingScope":
        return cls(kind=RankingScopeKind.TEAM, manager_id=manager_id)

    @classmethod
    def store(cls, store_id: str, include_branches: bool = False) -> "RankingScope":
        return cls(kind=RankingScopeKind.STORE, store_id=store_id, include_branches=include_branches)


class RankingEntry(BaseModel):
    position: int = Field(..., ge=1)
    vendor_id: str
    name: str = ""
    avatar_url: Optional[str] = None
    level: Optional[str] = None
    store_id: Optional[str] = None
    store_name: Optional[str] = None
    total_value: Decimal = Field(default=Decimal("0"))
    registered_at: datetime


class RankingPage(BaseModel):
    entries: List[RankingEntry] = Field(default_factory=list)
    page: int = Field(..., ge=1)
    page_size: int = Field(..., ge=1)
    total_records: int = Field(default=0, ge=0)
    total_pages: int = Field(default=0, ge=0)


class VendorPositionResponse(BaseModel):
    vendor_id: str
    scope: RankingScope
    position: int = Field(..., ge=0, description="1-based position, 0 when outside the population")


class StoreRankingEntry(BaseModel):
    position: int = Field(..., ge=1)
    store_id: str
    name: str = ""
    city: Optional[str] = None
    state: Optional[str] = None
    vendor_count: int = Field(default=0, ge=0)
    total_value: Decimal = Field(default=Decimal("0"))


class StoreRankingPage(BaseModel):
    entries: List[StoreRankingEntry] = Field(default_factory=list)
    page: int = Field(..., ge=1)
    page_size: int = Field(..., ge=1)
    total_records: int = Field(default=0, ge=0)
    total_pages: int = Field(default=0, ge=0)


class BranchSummary(BaseModel):
    store_id: str
    name: str
    city: Optional[str] = None
    state: Optional[str] = None
    is_matrix: bool = False


class ManagerRankingResponse(BaseModel):
    """Manager-scoped leaderboard plus the branch filter options"""
    manager_id: str
    store_id: Optional[str] = None
    is_matrix: bool = False
    branches: List[BranchSummary] = Field(default_factory=list)
    ranking: RankingPage


class BranchRanking(BaseModel):
    store: BranchSummary
    entries: List[RankingEntry] = Field(default_factory=list)
    total_records: int = 0


class BranchRankingsResponse(BaseModel):
    manager_id: str
    rankings: List[BranchRanking] = Field(default_factory=list)


# ====================
# Health
# ====================

class HealthCheckResponse(BaseModel):
    """Standard health check response"""
    status: str = Field(..., description="Health status")
    service: str = Field(..., description="Service name")
    port: int = Field(..., description="Service port")
    version: str = Field(..., description="Service version")
    timestamp: str = Field(..., description="Timestamp ISO format")
    dependencies: Dict[str, str] = Field(default_factory=dict)
