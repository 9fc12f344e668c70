"""
Fulfillment Service - Business Logic Layer

Turns validation outcomes into permanent tier assignments, credits completed
tiers, and answers progress questions for the vendor-facing views.

All tier rules live in tier_engine; this layer loads the ledger, calls the
engine, and performs the engine's two writes (tier assignment, settlement).
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from . import tier_engine
from .events.publishers import publish_tier_assigned, publish_tier_completed
from .models import (
    Campaign,
    CampaignBoardResponse,
    DisplayedSubmissionsResponse,
    ObjectiveBoard,
    ObjectiveProgressResponse,
    ProcessSubmissionResponse,
    ReconcileResponse,
    Submission,
    SubmissionStatus,
    SubmissionView,
    TierBoard,
    TierSettlement,
    TierStatus,
)
from .protocols import (
    CampaignNotFoundError,
    EventBusProtocol,
    InvalidTransitionError,
    LedgerRepositoryProtocol,
    ObjectiveNotFoundError,
    SubmissionNotFoundError,
    TierAssignmentConflictError,
    TierNotFoundError,
)

logger = logging.getLogger(__name__)


class FulfillmentService:
    """
    Fulfillment Service - Core business logic

    - Objective progress and displayed submissions per tier
    - Campaign board (every tier and objective for one vendor)
    - Permanent tier assignment of validated submissions
    - Settlement of completed tiers into vendor and manager balances
    - Reconciliation sweep for outcomes missed by the event stream
    """

    def __init__(
        self,
        repository: LedgerRepositoryProtocol,
        event_bus: Optional[EventBusProtocol] = None,
        assignment_retry_attempts: int = 2,
        reconcile_batch_size: int = 500,
    ):
        """
        Initialize fulfillment service with dependencies.

        Args:
            repository: Ledger repository for data access
            event_bus: Event bus for publishing events (optional)
            assignment_retry_attempts: Attempts for a conflicting tier assignment
            reconcile_batch_size: Items handled per reconciliation sweep
        """
        self.repository = repository
        self.event_bus = event_bus
        self.assignment_retry_attempts = max(1, assignment_retry_attempts)
        self.reconcile_batch_size = reconcile_batch_size

    # ====================
    # Loading
    # ====================

    async def _load_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self.repository.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def _evaluate_key(
        self, vendor_id: str, campaign: Campaign, ordering_key: int
    ) -> tier_engine.KeyEvaluation:
        instances = tier_engine.group_instances(campaign).get(ordering_key)
        if not instances:
            raise ObjectiveNotFoundError(
                f"Campaign {campaign.campaign_id} has no objective with ordering key {ordering_key}"
            )
        submissions = await self.repository.get_key_submissions(vendor_id, campaign.campaign_id, ordering_key)
        return tier_engine.evaluate_key(
            submissions,
            [o.tier_sequence for o in instances],
            tier_engine.key_required_quantity(instances),
            ordering_key,
        )

    @staticmethod
    def _require_tier(evaluation: tier_engine.KeyEvaluation, campaign: Campaign, tier: int) -> TierStatus:
        status = evaluation.status(tier)
        if status is None:
            if campaign.tier(tier) is None:
                raise TierNotFoundError(f"Campaign {campaign.campaign_id} has no tier {tier}")
            raise TierNotFoundError(
                f"Tier {tier} of campaign {campaign.campaign_id} does not declare ordering key {evaluation.ordering_key}"
            )
        return status

    # ====================
    # Read Paths
    # ====================

    async def get_objective_progress(
        self, vendor_id: str, campaign_id: str, ordering_key: int, tier: int
    ) -> ObjectiveProgressResponse:
        """Count, required quantity and status of one objective in one tier"""
        campaign = await self._load_campaign(campaign_id)
        evaluation = await self._evaluate_key(vendor_id, campaign, ordering_key)
        status = self._require_tier(evaluation, campaign, tier)
        count = evaluation.count(tier)

        return ObjectiveProgressResponse(
            vendor_id=vendor_id,
            campaign_id=campaign_id,
            ordering_key=ordering_key,
            tier=tier,
            count=count,
            required=evaluation.required_quantity,
            status=status,
            open_tier=evaluation.open_tier,
            completion_ratio=tier_engine.completion_ratio(count, evaluation.required_quantity),
        )

    async def get_displayed_submissions(
        self, vendor_id: str, campaign_id: str, ordering_key: int, tier: int
    ) -> DisplayedSubmissionsResponse:
        """Submissions shown under one objective card of one tier, newest first"""
        campaign = await self._load_campaign(campaign_id)
        evaluation = await self._evaluate_key(vendor_id, campaign, ordering_key)
        status = self._require_tier(evaluation, campaign, tier)

        return DisplayedSubmissionsResponse(
            vendor_id=vendor_id,
            campaign_id=campaign_id,
            ordering_key=ordering_key,
            tier=tier,
            status=status,
            submissions=[self._to_view(s, tier) for s in evaluation.submissions_for(tier)],
        )

    async def get_campaign_board(self, vendor_id: str, campaign_id: str) -> CampaignBoardResponse:
        """Every tier and objective card of a campaign for one vendor"""
        campaign = await self._load_campaign(campaign_id)
        submissions = await self.repository.get_campaign_submissions(vendor_id, campaign_id)
        completed = set(await self.repository.get_completed_tiers(vendor_id, campaign_id))
        evaluation = tier_engine.evaluate_campaign(campaign, submissions)

        tiers: List[TierBoard] = []
        for tier in sorted(campaign.tiers, key=lambda t: t.sequence):
            objectives = []
            for objective in sorted(tier.objectives, key=lambda o: o.ordering_key):
                key_eval = evaluation.keys[objective.ordering_key]
                objectives.append(ObjectiveBoard(
                    objective_id=objective.objective_id,
                    ordering_key=objective.ordering_key,
                    description=objective.description,
                    unit_kind=objective.unit_kind,
                    required=key_eval.required_quantity,
                    count=key_eval.count(tier.sequence),
                    status=key_eval.statuses[tier.sequence],
                    submissions=[
                        self._to_view(s, tier.sequence) for s in key_eval.submissions_for(tier.sequence)
                    ],
                ))
            tiers.append(TierBoard(
                sequence=tier.sequence,
                title=tier.title,
                status=evaluation.tier_statuses[tier.sequence],
                credited=tier.sequence in completed,
                objectives=objectives,
            ))

        return CampaignBoardResponse(
            vendor_id=vendor_id,
            campaign_id=campaign_id,
            open_tiers={key: key_eval.open_tier for key, key_eval in sorted(evaluation.keys.items())},
            tiers=tiers,
        )

    # ====================
    # Write Path
    # ====================

    async def process_submission(self, submission_id: str) -> ProcessSubmissionResponse:
        """
        React to the current outcome of a submission.

        VALIDATED and unassigned: assign its permanent tier, then settle.
        VALIDATED and assigned: settle only. Reprocessing writes nothing new.
        Other statuses: no write; reports the open tier the submission shows under.
        """
        submission = await self.repository.get_submission(submission_id)
        if not submission:
            raise SubmissionNotFoundError(f"Submission {submission_id} not found")

        campaign = await self._load_campaign(submission.campaign_id)
        instances = tier_engine.group_instances(campaign).get(submission.ordering_key, [])
        required = tier_engine.key_required_quantity(instances) if instances else 1

        resolved_tier = submission.resolved_tier
        newly_assigned = False
        if submission.is_validated and resolved_tier is None:
            resolved_tier, newly_assigned = await self._assign_tier(submission, required)
            if newly_assigned:
                logger.info(
                    f"Submission {submission_id} ({submission.vendor_id}, key {submission.ordering_key}) "
                    f"assigned to tier {resolved_tier}"
                )
                if self.event_bus:
                    await publish_tier_assigned(
                        self.event_bus,
                        submission_id=submission_id,
                        vendor_id=submission.vendor_id,
                        campaign_id=submission.campaign_id,
                        ordering_key=submission.ordering_key,
                        resolved_tier=resolved_tier,
                    )

        settlements: List[TierSettlement] = []
        if submission.is_validated:
            settlements = await self.settle_vendor_campaign(submission.vendor_id, campaign)

        key_submissions = await self.repository.get_key_submissions(
            submission.vendor_id, submission.campaign_id, submission.ordering_key
        )
        return ProcessSubmissionResponse(
            submission_id=submission_id,
            status=submission.status,
            resolved_tier=resolved_tier,
            newly_assigned=newly_assigned,
            open_tier=tier_engine.resolve_open_tier(key_submissions, required),
            settlements=settlements,
        )

    async def record_validation_outcome(
        self,
        submission_id: str,
        status: SubmissionStatus,
        base_value: Optional[Decimal] = None,
        rejection_reason: Optional[str] = None,
    ) -> ProcessSubmissionResponse:
        """Write an outcome delivered in the call, then process it"""
        submission = await self.repository.get_submission(submission_id)
        if not submission:
            raise SubmissionNotFoundError(f"Submission {submission_id} not found")

        if submission.status is status and status.is_terminal:
            return await self.process_submission(submission_id)

        if not submission.status.can_transition_to(status):
            raise InvalidTransitionError(submission.status.value, status.value)

        updated = await self.repository.update_submission_status(
            submission_id,
            status,
            expected_status=submission.status,
            base_value=base_value,
            rejection_reason=rejection_reason,
        )
        if updated is None:
            current = await self.repository.get_submission(submission_id)
            raise InvalidTransitionError(
                current.status.value if current else submission.status.value, status.value
            )

        logger.info(f"Submission {submission_id}: {submission.status.value} -> {status.value}")
        return await self.process_submission(submission_id)

    async def _assign_tier(self, submission: Submission, required_quantity: int):
        """Assign with one retry when a concurrent validation invalidates the count"""
        def resolve(assigned_count: int) -> int:
            return tier_engine.next_assignment_tier(assigned_count, required_quantity)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.assignment_retry_attempts),
            retry=retry_if_exception_type(TierAssignmentConflictError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        f"Retrying tier assignment of {submission.submission_id} "
                        f"(attempt {attempt.retry_state.attempt_number})"
                    )
                return await self.repository.assign_resolved_tier(submission, resolve)

    async def settle_vendor_campaign(self, vendor_id: str, campaign: Campaign) -> List[TierSettlement]:
        """
        Credit every complete, unsettled tier in sequence order.

        Stops at the first tier that is not COMPLETE, so tier T is never
        credited before tiers 1..T-1.
        """
        campaign_id = campaign.campaign_id
        completed = set(await self.repository.get_completed_tiers(vendor_id, campaign_id))
        submissions = await self.repository.get_campaign_submissions(vendor_id, campaign_id)
        evaluation = tier_engine.evaluate_campaign(campaign, submissions)

        settlements: List[TierSettlement] = []
        events = None
        vendor = None
        stop = evaluation.first_incomplete_tier()
        for sequence in sorted(evaluation.tier_statuses):
            if stop is not None and sequence >= stop:
                break
            if sequence in completed:
                continue

            if events is None:
                events = await self.repository.get_special_events(campaign_id)
                vendor = await self.repository.get_vendor(vendor_id)

            lines = tier_engine.credit_lines(submissions, sequence, events)
            vendor_credit = sum((line["final_value"] for line in lines), Decimal("0"))
            base_total = sum((line["base_value"] for line in lines), Decimal("0"))
            manager_id = vendor.manager_id if vendor else None
            commission = (
                tier_engine.manager_commission(base_total, campaign.manager_commission_rate)
                if manager_id else Decimal("0")
            )

            settled = await self.repository.settle_tier(
                vendor_id,
                campaign_id,
                sequence,
                lines,
                vendor_credit,
                manager_id,
                commission,
            )
            completed.add(sequence)
            if not settled:
                logger.info(f"Tier {sequence} of {vendor_id}/{campaign_id} already settled")
                continue

            settlement = TierSettlement(
                tier_sequence=sequence,
                credited_value=vendor_credit,
                submission_ids=[line["submission_id"] for line in lines],
                manager_id=manager_id,
                manager_commission=commission,
            )
            settlements.append(settlement)
            logger.info(
                f"✅ Tier {sequence} of campaign {campaign_id} completed by {vendor_id}: "
                f"credited {vendor_credit}, manager commission {commission}"
            )

            if self.event_bus:
                await publish_tier_completed(
                    self.event_bus,
                    vendor_id=vendor_id,
                    campaign_id=campaign_id,
                    tier_sequence=sequence,
                    credited_value=vendor_credit,
                    submission_ids=settlement.submission_ids,
                    manager_id=manager_id,
                    manager_commission=commission,
                )

        return settlements

    # ====================
    # Reconciliation
    # ====================

    async def reconcile(self) -> ReconcileResponse:
        """
        Sweep outcomes the event stream did not deliver.

        Assigns tiers to validated submissions still missing one (oldest
        first) and settles vendor campaigns with uncredited assignments.
        """
        result = ReconcileResponse()

        for submission in await self.repository.list_unassigned_validations(self.reconcile_batch_size):
            try:
                processed = await self.process_submission(submission.submission_id)
                if processed.newly_assigned:
                    result.assigned += 1
                result.settled_tiers += len(processed.settlements)
            except Exception as e:
                result.failed += 1
                logger.error(f"Reconcile failed for submission {submission.submission_id}: {e}", exc_info=True)

        campaigns: Dict[str, Campaign] = {}
        for vendor_id, campaign_id in await self.repository.list_unsettled_vendor_campaigns(self.reconcile_batch_size):
            try:
                if campaign_id not in campaigns:
                    campaigns[campaign_id] = await self._load_campaign(campaign_id)
                settlements = await self.settle_vendor_campaign(vendor_id, campaigns[campaign_id])
                result.settled_tiers += len(settlements)
            except Exception as e:
                result.failed += 1
                logger.error(f"Reconcile failed for {vendor_id}/{campaign_id}: {e}", exc_info=True)

        if result.assigned or result.settled_tiers or result.failed:
            logger.info(
                f"Reconcile sweep: {result.assigned} assigned, {result.settled_tiers} tiers settled, "
                f"{result.failed} failed"
            )
        return result

    # ====================
    # Helpers
    # ====================

    @staticmethod
    def _to_view(submission: Submission, displayed_tier: int) -> SubmissionView:
        return SubmissionView(
            submission_id=submission.submission_id,
            objective_id=submission.objective_id,
            ordering_key=submission.ordering_key,
            order_number=submission.order_number,
            status=submission.status,
            resolved_tier=submission.resolved_tier,
            displayed_tier=displayed_tier,
            credited_to_balance=submission.credited_to_balance,
            base_value=submission.base_value,
            applied_multiplier=submission.applied_multiplier,
            final_value=submission.final_value,
            rejection_reason=submission.rejection_reason,
            submitted_at=submission.submitted_at,
            validated_at=submission.validated_at,
        )
