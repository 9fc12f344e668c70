"""
Tier Engine

Pure tier resolution rules used by the write path (tier assignment and
settlement) and by every read path (progress, displayed submissions, board).

Nothing here performs I/O: every function is a function of the submissions
and definitions passed in, so reads can recompute state on every call.

Rules:
- The Nth validated submission of a logical objective (1-indexed) belongs to
  tier ceil(N / required_quantity). The write is one-time.
- Submissions still awaiting an outcome are shown under the open tier,
  floor(total_validated / required_quantity) + 1. Never persisted.
- A (objective, tier) pair is COMPLETE when it holds required_quantity
  validated submissions, LOCKED while an earlier tier of the same objective
  is incomplete, ACTIVE otherwise.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .models import (
    Campaign,
    ObjectiveDefinition,
    SpecialEvent,
    Submission,
    TierStatus,
)

logger = logging.getLogger(__name__)

MONEY_QUANTUM = Decimal("0.01")

T = TypeVar("T")


# ====================
# Required Quantity
# ====================


def effective_required_quantity(value: Optional[int]) -> int:
    """Clamp a stored required quantity to at least 1 so division stays defined"""
    if value is None or value < 1:
        logger.warning(f"Data integrity: required_quantity={value} treated as 1")
        return 1
    return value


def key_required_quantity(instances: Sequence[ObjectiveDefinition]) -> int:
    """
    Required quantity of a logical objective.

    Instances of the same ordering key are replicas; the lowest-sequence
    instance is authoritative.
    """
    if not instances:
        raise ValueError("objective has no instances")
    ordered = sorted(instances, key=lambda o: o.tier_sequence)
    quantity = ordered[0].required_quantity
    mismatched = [o.objective_id for o in ordered if o.required_quantity != quantity]
    if mismatched:
        logger.warning(
            f"Data integrity: ordering key {ordered[0].ordering_key} instances disagree on "
            f"required_quantity; using {quantity} (mismatched: {mismatched})"
        )
    return effective_required_quantity(quantity)


# ====================
# Progress Evaluator
# ====================


def count_validated(submissions: Iterable[Submission]) -> int:
    """Validated submissions across every tier, assigned or not"""
    return sum(1 for s in submissions if s.is_validated)


def count_assigned(submissions: Iterable[Submission]) -> int:
    return sum(1 for s in submissions if s.is_validated and s.resolved_tier is not None)


def count_validated_in_tier(submissions: Iterable[Submission], tier: int) -> int:
    """Validated submissions permanently credited to the given tier"""
    return sum(1 for s in submissions if s.is_validated and s.resolved_tier == tier)


def completion_ratio(count: int, required_quantity: int) -> float:
    required = effective_required_quantity(required_quantity)
    return min(count / required, 1.0)


# ====================
# Spillover Resolver
# ====================


def resolve_open_tier(submissions: Iterable[Submission], required_quantity: int) -> int:
    """Tier currently absorbing submissions that have no resolved tier"""
    required = effective_required_quantity(required_quantity)
    return count_validated(submissions) // required + 1


def tier_for_validation(ordinal: int, required_quantity: int) -> int:
    """Tier of the ordinal-th validated submission (1-indexed)"""
    if ordinal < 1:
        raise ValueError(f"ordinal must be >= 1, got {ordinal}")
    required = effective_required_quantity(required_quantity)
    return math.ceil(ordinal / required)


def next_assignment_tier(assigned_count: int, required_quantity: int) -> int:
    """Tier for the validation following assigned_count already-assigned ones"""
    return tier_for_validation(assigned_count + 1, required_quantity)


def _validation_order(submission: Submission) -> Tuple[datetime, str]:
    return (submission.validated_at or submission.submitted_at, submission.submission_id)


def provisional_tiers(submissions: Sequence[Submission], required_quantity: int) -> Dict[str, int]:
    """
    Tiers that pending assignment will give to validated-but-unassigned submissions.

    Mirrors the write path: unassigned validations are taken oldest first and
    numbered after the already-assigned ones.
    """
    assigned = count_assigned(submissions)
    unassigned = sorted(
        (s for s in submissions if s.is_validated and s.resolved_tier is None),
        key=_validation_order,
    )
    return {
        s.submission_id: tier_for_validation(assigned + position, required_quantity)
        for position, s in enumerate(unassigned, start=1)
    }


def displayed_tier(
    submission: Submission,
    open_tier: int,
    provisional: Dict[str, int],
) -> Optional[int]:
    """Tier a submission is shown under"""
    if submission.resolved_tier is not None:
        return submission.resolved_tier
    if submission.is_validated:
        return provisional.get(submission.submission_id)
    return open_tier


def order_for_display(submissions: Iterable[Submission]) -> List[Submission]:
    """Newest submission first, submission id as tie-break"""
    by_id = sorted(submissions, key=lambda s: s.submission_id)
    return sorted(by_id, key=lambda s: s.submitted_at, reverse=True)


# ====================
# Tier Status Classifier
# ====================


def classify_key_tiers(
    counts: Dict[int, int],
    declared_tiers: Iterable[int],
    required_quantity: int,
    ordering_key: Optional[int] = None,
) -> Dict[int, TierStatus]:
    """Status of each declared tier of one logical objective, in sequence order"""
    required = effective_required_quantity(required_quantity)
    statuses: Dict[int, TierStatus] = {}
    predecessors_complete = True
    for sequence in sorted(set(declared_tiers)):
        count = counts.get(sequence, 0)
        if count >= required:
            if count > required:
                logger.warning(
                    f"Data integrity: ordering key {ordering_key} tier {sequence} holds "
                    f"{count} validated submissions for required {required}"
                )
            status = TierStatus.COMPLETE
        elif not predecessors_complete:
            status = TierStatus.LOCKED
        else:
            status = TierStatus.ACTIVE
        statuses[sequence] = status
        predecessors_complete = predecessors_complete and status is TierStatus.COMPLETE
    return statuses


def combine_tier_status(
    objective_statuses: Sequence[TierStatus],
    predecessors_complete: bool,
) -> TierStatus:
    """
    Overall status of one tier.

    COMPLETE needs every objective instance COMPLETE. A tier whose
    predecessors are not all COMPLETE is LOCKED. An empty tier is never
    COMPLETE.
    """
    if objective_statuses and all(s is TierStatus.COMPLETE for s in objective_statuses):
        return TierStatus.COMPLETE
    if not predecessors_complete:
        return TierStatus.LOCKED
    return TierStatus.ACTIVE


# ====================
# Evaluations
# ====================


@dataclass
class KeyEvaluation:
    """Everything derived for one logical objective of one vendor"""
    ordering_key: int
    required_quantity: int
    total_validated: int
    open_tier: int
    counts: Dict[int, int] = field(default_factory=dict)
    statuses: Dict[int, TierStatus] = field(default_factory=dict)
    displayed: Dict[int, List[Submission]] = field(default_factory=dict)
    displayed_tiers: Dict[str, int] = field(default_factory=dict)
    undisplayable: List[Submission] = field(default_factory=list)

    def status(self, tier: int) -> Optional[TierStatus]:
        return self.statuses.get(tier)

    def count(self, tier: int) -> int:
        return self.counts.get(tier, 0)

    def submissions_for(self, tier: int) -> List[Submission]:
        return self.displayed.get(tier, [])


def evaluate_key(
    submissions: Sequence[Submission],
    declared_tiers: Iterable[int],
    required_quantity: int,
    ordering_key: int,
) -> KeyEvaluation:
    """
    Evaluate one logical objective from its full cross-tier submission history.

    Submissions whose displayed tier has no definition are collected in
    ``undisplayable`` and logged; they never raise.
    """
    required = effective_required_quantity(required_quantity)
    declared = sorted(set(declared_tiers))
    open_tier = resolve_open_tier(submissions, required)

    credited = {s.resolved_tier for s in submissions if s.is_validated and s.resolved_tier is not None}
    counts = {tier: count_validated_in_tier(submissions, tier) for tier in credited}

    statuses = classify_key_tiers(counts, declared, required, ordering_key)
    provisional = provisional_tiers(submissions, required)

    displayed: Dict[int, List[Submission]] = {sequence: [] for sequence in declared}
    displayed_tiers: Dict[str, int] = {}
    undisplayable: List[Submission] = []
    for s in submissions:
        tier = displayed_tier(s, open_tier, provisional)
        if tier is None or tier not in displayed:
            undisplayable.append(s)
            continue
        # A complete card lists only the validations credited to it
        if statuses[tier] is TierStatus.COMPLETE and not (s.is_validated and s.resolved_tier == tier):
            undisplayable.append(s)
            continue
        displayed[tier].append(s)
        displayed_tiers[s.submission_id] = tier

    if undisplayable:
        logger.warning(
            f"Data integrity: {len(undisplayable)} submission(s) of ordering key {ordering_key} "
            f"fall outside the defined tiers {declared} (open tier {open_tier})"
        )

    return KeyEvaluation(
        ordering_key=ordering_key,
        required_quantity=required,
        total_validated=count_validated(submissions),
        open_tier=open_tier,
        counts=counts,
        statuses=statuses,
        displayed={tier: order_for_display(items) for tier, items in displayed.items()},
        displayed_tiers=displayed_tiers,
        undisplayable=undisplayable,
    )


@dataclass
class CampaignEvaluation:
    """Per-key evaluations plus the overall status of every tier"""
    campaign: Campaign
    keys: Dict[int, KeyEvaluation] = field(default_factory=dict)
    tier_statuses: Dict[int, TierStatus] = field(default_factory=dict)

    def first_incomplete_tier(self) -> Optional[int]:
        for sequence in sorted(self.tier_statuses):
            if self.tier_statuses[sequence] is not TierStatus.COMPLETE:
                return sequence
        return None


def group_instances(campaign: Campaign) -> Dict[int, List[ObjectiveDefinition]]:
    """Objective instances grouped by ordering key"""
    groups: Dict[int, List[ObjectiveDefinition]] = {}
    for tier in campaign.tiers:
        for objective in tier.objectives:
            groups.setdefault(objective.ordering_key, []).append(objective)
    return groups


def evaluate_campaign(campaign: Campaign, submissions: Sequence[Submission]) -> CampaignEvaluation:
    """Evaluate every logical objective and tier of a campaign for one vendor"""
    groups = group_instances(campaign)

    unknown = {s.ordering_key for s in submissions} - set(groups)
    if unknown:
        logger.warning(
            f"Data integrity: campaign {campaign.campaign_id} has submissions for "
            f"undeclared ordering keys {sorted(unknown)}"
        )

    keys: Dict[int, KeyEvaluation] = {}
    for ordering_key, instances in groups.items():
        keys[ordering_key] = evaluate_key(
            [s for s in submissions if s.ordering_key == ordering_key],
            [o.tier_sequence for o in instances],
            key_required_quantity(instances),
            ordering_key,
        )

    tier_statuses: Dict[int, TierStatus] = {}
    predecessors_complete = True
    for tier in sorted(campaign.tiers, key=lambda t: t.sequence):
        if not tier.objectives:
            logger.warning(f"Data integrity: campaign {campaign.campaign_id} tier {tier.sequence} has no objectives")
        statuses = [keys[o.ordering_key].statuses[tier.sequence] for o in tier.objectives]
        status = combine_tier_status(statuses, predecessors_complete)
        tier_statuses[tier.sequence] = status
        predecessors_complete = predecessors_complete and status is TierStatus.COMPLETE

    return CampaignEvaluation(campaign=campaign, keys=keys, tier_statuses=tier_statuses)


# ====================
# Settlement Values
# ====================


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def event_multiplier(events: Iterable[SpecialEvent], submitted_at: datetime) -> Decimal:
    """Highest multiplier among events active when the submission was sent"""
    multipliers = [e.multiplier for e in events if e.applies_to(submitted_at)]
    return max(multipliers) if multipliers else Decimal("1")


def credit_lines(
    submissions: Iterable[Submission],
    tier: int,
    events: Sequence[SpecialEvent],
) -> List[Dict[str, Any]]:
    """Uncredited validations of a tier with their multiplier and final value"""
    lines = []
    for s in sorted(submissions, key=lambda s: s.submission_id):
        if not (s.is_validated and s.resolved_tier == tier and not s.credited_to_balance):
            continue
        multiplier = event_multiplier(events, s.submitted_at)
        lines.append({
            "submission_id": s.submission_id,
            "base_value": s.base_value,
            "multiplier": multiplier,
            "final_value": quantize_money(s.base_value * multiplier),
        })
    return lines


def manager_commission(base_total: Decimal, rate: Decimal) -> Decimal:
    """Manager share of a settled tier, computed on base values"""
    if rate <= 0:
        return Decimal("0")
    return quantize_money(base_total * rate)


# ====================
# Ranking Contract
# ====================


def ranking_sort_key(total_value: Decimal, registered_at: datetime, tie_id: str) -> Tuple[Decimal, datetime, str]:
    """
    Ordering contract shared by every ranking path.

    Highest total first, then earliest registration, then id.
    """
    return (-total_value, registered_at, tie_id)


def rank_rows(
    rows: Iterable[T],
    key: Callable[[T], Tuple[Decimal, datetime, str]],
) -> List[Tuple[int, T]]:
    """Sort rows by the ranking contract and number them from 1"""
    ordered = sorted(rows, key=key)
    return list(enumerate(ordered, start=1))


def total_pages(total_records: int, page_size: int) -> int:
    return math.ceil(total_records / page_size) if total_records else 0


def page_bounds(page: int, page_size: int) -> Tuple[int, int]:
    """(limit, offset) for a 1-indexed page"""
    return page_size, (page - 1) * page_size
