"""
Unit Tests for the Tier Engine

Spillover resolution, tier status classification, settlement values and
the ranking ordering contract. Pure functions only.
"""

import logging
import math
import random
from decimal import Decimal

import pytest

from microservices.fulfillment_service import tier_engine
from microservices.fulfillment_service.models import SubmissionStatus, TierStatus
from tests.contracts.fulfillment.data_contract import FulfillmentTestDataFactory as factory

V = SubmissionStatus.VALIDATED
R = SubmissionStatus.REJECTED
P = SubmissionStatus.PENDING


def _scenario():
    """Quantity 2: #1 V, #2 V, #3 R, #4 V, #5 V after assignment"""
    campaign = factory.make_campaign(tier_count=3, required_quantity=2)
    vendor_id = factory.make_vendor_id()
    subs = [
        factory.make_submission(vendor_id, campaign, status=V, resolved_tier=1, submitted_minutes=1, submission_id="s1"),
        factory.make_submission(vendor_id, campaign, status=V, resolved_tier=1, submitted_minutes=2, submission_id="s2"),
        factory.make_submission(vendor_id, campaign, status=R, submitted_minutes=3, submission_id="s3"),
        factory.make_submission(vendor_id, campaign, status=V, resolved_tier=2, submitted_minutes=4, submission_id="s4"),
        factory.make_submission(vendor_id, campaign, status=V, resolved_tier=2, submitted_minutes=5, submission_id="s5"),
    ]
    return campaign, subs


# =============================================================================
# Required Quantity
# =============================================================================


@pytest.mark.unit
class TestRequiredQuantity:

    def test_stored_quantity_passes_through(self):
        assert tier_engine.effective_required_quantity(4) == 4

    def test_stored_zero_is_clamped_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert tier_engine.effective_required_quantity(0) == 1
        assert "required_quantity=0" in caplog.text

    def test_lowest_sequence_instance_is_authoritative(self, caplog):
        campaign = factory.make_campaign(tier_count=2, required_quantity=2)
        campaign.tiers[1].objectives[0].required_quantity = 5
        instances = tier_engine.group_instances(campaign)[1]

        with caplog.at_level(logging.WARNING):
            assert tier_engine.key_required_quantity(instances) == 2
        assert "disagree" in caplog.text


# =============================================================================
# Spillover Resolver
# =============================================================================


@pytest.mark.unit
class TestSpilloverResolver:

    def test_open_tier_counts_all_validations(self):
        _, subs = _scenario()
        assert tier_engine.resolve_open_tier(subs, 2) == 3

    def test_count_in_tier_ignores_rejected_and_pending(self):
        campaign, subs = _scenario()
        subs.append(factory.make_submission("v", campaign, status=P, submitted_minutes=6))
        assert tier_engine.count_validated_in_tier(subs, 1) == 2
        assert tier_engine.count_validated_in_tier(subs, 2) == 2
        assert tier_engine.count_validated_in_tier(subs, 3) == 0

    def test_exact_multiple_opens_next_tier(self):
        campaign = factory.make_campaign()
        subs = factory.make_validated_history("v", campaign, count=2, required_quantity=2)
        assert tier_engine.resolve_open_tier(subs, 2) == 2

    def test_no_validations_opens_tier_one(self):
        campaign = factory.make_campaign()
        subs = [factory.make_submission("v", campaign, status=P)]
        assert tier_engine.resolve_open_tier(subs, 2) == 1

    def test_zero_quantity_does_not_divide_by_zero(self):
        campaign = factory.make_campaign()
        subs = factory.make_validated_history("v", campaign, count=3, required_quantity=1)
        assert tier_engine.resolve_open_tier(subs, 0) == 4

    @pytest.mark.parametrize("ordinal,expected", [(1, 1), (2, 1), (3, 2), (4, 2), (5, 3)])
    def test_tier_for_validation(self, ordinal, expected):
        assert tier_engine.tier_for_validation(ordinal, 2) == expected

    def test_tier_for_validation_requires_positive_ordinal(self):
        with pytest.raises(ValueError):
            tier_engine.tier_for_validation(0, 2)

    def test_next_assignment_tier_follows_assigned_count(self):
        assert tier_engine.next_assignment_tier(0, 3) == 1
        assert tier_engine.next_assignment_tier(2, 3) == 1
        assert tier_engine.next_assignment_tier(3, 3) == 2

    def test_provisional_tiers_follow_validation_order(self):
        campaign = factory.make_campaign()
        subs = factory.make_validated_history("v", campaign, count=1, required_quantity=2)
        late = factory.make_submission("v", campaign, status=V, submitted_minutes=1, validated_minutes=30, submission_id="late")
        early = factory.make_submission("v", campaign, status=V, submitted_minutes=2, validated_minutes=10, submission_id="early")

        provisional = tier_engine.provisional_tiers(subs + [late, early], 2)

        assert provisional == {"early": 1, "late": 2}

    @pytest.mark.parametrize("seed", [1, 7, 42, 2024])
    def test_sequential_fill_under_random_validation_order(self, seed):
        """Tiers fill in order whatever order the submissions validate in"""
        rng = random.Random(seed)
        q = rng.randint(1, 4)
        n = rng.randint(q, 4 * q + 3)
        validation_order = list(range(n))
        rng.shuffle(validation_order)

        resolved = {}
        for assigned, index in enumerate(validation_order):
            resolved[index] = tier_engine.next_assignment_tier(assigned, q)

        tiers_in_validation_order = [resolved[i] for i in validation_order]
        assert tiers_in_validation_order == sorted(tiers_in_validation_order)
        for position, tier in enumerate(tiers_in_validation_order, start=1):
            assert tier == math.ceil(position / q)

        highest = max(resolved.values())
        for tier in range(1, highest):
            assert list(resolved.values()).count(tier) == q


# =============================================================================
# Tier Status Classifier
# =============================================================================


@pytest.mark.unit
class TestTierStatusClassifier:

    def test_exact_fill_is_complete(self):
        statuses = tier_engine.classify_key_tiers({1: 2}, [1, 2], 2)
        assert statuses == {1: TierStatus.COMPLETE, 2: TierStatus.ACTIVE}

    def test_incomplete_predecessor_locks(self):
        statuses = tier_engine.classify_key_tiers({1: 1}, [1, 2, 3], 2)
        assert statuses == {1: TierStatus.ACTIVE, 2: TierStatus.LOCKED, 3: TierStatus.LOCKED}

    def test_overfill_is_complete_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            statuses = tier_engine.classify_key_tiers({1: 3}, [1], 2, ordering_key=1)
        assert statuses[1] is TierStatus.COMPLETE
        assert "holds 3" in caplog.text

    def test_empty_tier_never_complete(self):
        assert tier_engine.combine_tier_status([], True) is TierStatus.ACTIVE
        assert tier_engine.combine_tier_status([], False) is TierStatus.LOCKED

    def test_tier_complete_needs_every_objective(self):
        statuses = [TierStatus.COMPLETE, TierStatus.ACTIVE]
        assert tier_engine.combine_tier_status(statuses, True) is TierStatus.ACTIVE
        assert tier_engine.combine_tier_status([TierStatus.COMPLETE] * 2, True) is TierStatus.COMPLETE

    def test_tier_locked_behind_incomplete_tier(self):
        assert tier_engine.combine_tier_status([TierStatus.ACTIVE], False) is TierStatus.LOCKED


# =============================================================================
# Key & Campaign Evaluation
# =============================================================================


@pytest.mark.unit
class TestEvaluation:

    def test_scenario_assignment_and_display(self):
        _, subs = _scenario()
        evaluation = tier_engine.evaluate_key(subs, [1, 2, 3], 2, 1)

        assert evaluation.open_tier == 3
        assert evaluation.counts == {1: 2, 2: 2}
        assert evaluation.statuses == {
            1: TierStatus.COMPLETE, 2: TierStatus.COMPLETE, 3: TierStatus.ACTIVE,
        }
        assert [s.submission_id for s in evaluation.submissions_for(1)] == ["s2", "s1"]
        assert [s.submission_id for s in evaluation.submissions_for(2)] == ["s5", "s4"]
        assert [s.submission_id for s in evaluation.submissions_for(3)] == ["s3"]
        assert evaluation.undisplayable == []

    def test_open_tier_beyond_definitions_is_logged_not_raised(self, caplog):
        _, subs = _scenario()
        with caplog.at_level(logging.WARNING):
            evaluation = tier_engine.evaluate_key(subs, [1, 2], 2, 1)

        assert [s.submission_id for s in evaluation.undisplayable] == ["s3"]
        assert "outside the defined tiers" in caplog.text

    def test_unassigned_validation_shown_under_provisional_tier(self):
        campaign = factory.make_campaign()
        subs = factory.make_validated_history("v", campaign, count=2, required_quantity=2)
        fresh = factory.make_submission("v", campaign, status=V, submitted_minutes=9, submission_id="fresh")

        evaluation = tier_engine.evaluate_key(subs + [fresh], [1, 2, 3], 2, 1)

        assert evaluation.displayed_tiers["fresh"] == 2
        assert evaluation.count(2) == 0

    def test_complete_card_lists_only_credited_validations(self):
        campaign = factory.make_campaign()
        subs = factory.make_validated_history("v", campaign, count=2, required_quantity=2)
        pending = factory.make_submission("v", campaign, status=P, submitted_minutes=9, submission_id="p")

        evaluation = tier_engine.evaluate_key(subs + [pending], [1, 2], 2, 1)

        assert all(s.is_validated for s in evaluation.submissions_for(1))
        assert [s.submission_id for s in evaluation.submissions_for(2)] == ["p"]

    def test_pending_shown_under_locked_open_tier(self):
        campaign = factory.make_campaign()
        subs = [
            factory.make_submission("v", campaign, status=V, submitted_minutes=i, submission_id=f"v{i}")
            for i in (1, 2)
        ]
        pending = factory.make_submission("v", campaign, status=P, submitted_minutes=9, submission_id="p")

        evaluation = tier_engine.evaluate_key(subs + [pending], [1, 2, 3], 2, 1)

        assert evaluation.status(2) is TierStatus.LOCKED
        assert evaluation.open_tier == 2
        assert [s.submission_id for s in evaluation.submissions_for(2)] == ["p"]
        assert evaluation.undisplayable == []

    def test_evaluation_is_stable(self):
        _, subs = _scenario()
        first = tier_engine.evaluate_key(subs, [1, 2, 3], 2, 1)
        second = tier_engine.evaluate_key(list(reversed(subs)), [1, 2, 3], 2, 1)

        assert first.statuses == second.statuses
        assert first.displayed_tiers == second.displayed_tiers

    def test_display_order_ties_broken_by_id(self):
        campaign = factory.make_campaign()
        subs = [
            factory.make_submission("v", campaign, submitted_minutes=5, submission_id="b"),
            factory.make_submission("v", campaign, submitted_minutes=5, submission_id="a"),
            factory.make_submission("v", campaign, submitted_minutes=6, submission_id="c"),
        ]
        assert [s.submission_id for s in tier_engine.order_for_display(subs)] == ["c", "a", "b"]

    def test_campaign_tier_is_conjunction_of_keys(self):
        campaign = factory.make_campaign(tier_count=2, ordering_keys=2, quantities={1: 2, 2: 1})
        subs = factory.make_validated_history("v", campaign, count=2, required_quantity=2, ordering_key=1)

        evaluation = tier_engine.evaluate_campaign(campaign, subs)

        assert evaluation.keys[1].status(1) is TierStatus.COMPLETE
        assert evaluation.keys[2].status(1) is TierStatus.ACTIVE
        assert evaluation.tier_statuses == {1: TierStatus.ACTIVE, 2: TierStatus.LOCKED}
        assert evaluation.first_incomplete_tier() == 1


# =============================================================================
# Settlement Values
# =============================================================================


@pytest.mark.unit
class TestSettlementValues:

    def test_highest_active_multiplier_applies(self):
        campaign = factory.make_campaign()
        events = [
            factory.make_special_event(campaign.campaign_id, multiplier=Decimal("1.5")),
            factory.make_special_event(campaign.campaign_id, multiplier=Decimal("2")),
        ]
        assert tier_engine.event_multiplier(events, factory.make_timestamp(60)) == Decimal("2")

    def test_no_event_means_multiplier_one(self):
        campaign = factory.make_campaign()
        events = [
            factory.make_special_event(campaign.campaign_id, starts_at=factory.make_timestamp(100)),
            factory.make_special_event(campaign.campaign_id, is_active=False),
        ]
        assert tier_engine.event_multiplier(events, factory.make_timestamp(10)) == Decimal("1")

    def test_final_value_rounds_half_up(self):
        campaign = factory.make_campaign()
        sub = factory.make_submission(
            "v", campaign, status=V, resolved_tier=1, submitted_minutes=10, base_value=Decimal("10.03"),
        )
        events = [factory.make_special_event(campaign.campaign_id, multiplier=Decimal("1.5"))]

        lines = tier_engine.credit_lines([sub], 1, events)

        assert lines == [{
            "submission_id": sub.submission_id,
            "base_value": Decimal("10.03"),
            "multiplier": Decimal("1.5"),
            "final_value": Decimal("15.05"),
        }]

    def test_credit_lines_skip_credited_and_other_tiers(self):
        campaign = factory.make_campaign()
        subs = [
            factory.make_submission("v", campaign, status=V, resolved_tier=1, credited=True),
            factory.make_submission("v", campaign, status=V, resolved_tier=2),
            factory.make_submission("v", campaign, status=R),
        ]
        assert tier_engine.credit_lines(subs, 1, []) == []

    def test_manager_commission_on_base_total(self):
        assert tier_engine.manager_commission(Decimal("150.00"), Decimal("0.10")) == Decimal("15.00")
        assert tier_engine.manager_commission(Decimal("150.00"), Decimal("0")) == Decimal("0")


# =============================================================================
# Ranking Contract
# =============================================================================


@pytest.mark.unit
class TestRankingContract:

    def test_total_then_registration_then_id(self):
        rows = [
            {"id": "C", "total": Decimal("50"), "at": factory.make_timestamp(0)},
            {"id": "B", "total": Decimal("100"), "at": factory.make_timestamp(5)},
            {"id": "A", "total": Decimal("100"), "at": factory.make_timestamp(0)},
            {"id": "D", "total": Decimal("50"), "at": factory.make_timestamp(0)},
        ]
        ranked = tier_engine.rank_rows(
            rows, key=lambda r: tier_engine.ranking_sort_key(r["total"], r["at"], r["id"])
        )
        assert [(pos, row["id"]) for pos, row in ranked] == [(1, "A"), (2, "B"), (3, "C"), (4, "D")]

    def test_id_tie_break_is_byte_order(self):
        at = factory.make_timestamp(0)
        assert tier_engine.ranking_sort_key(Decimal("1"), at, "Z") < tier_engine.ranking_sort_key(Decimal("1"), at, "a")

    @pytest.mark.parametrize("total,size,pages", [(0, 20, 0), (20, 20, 1), (41, 20, 3)])
    def test_total_pages(self, total, size, pages):
        assert tier_engine.total_pages(total, size) == pages

    def test_page_bounds(self):
        assert tier_engine.page_bounds(1, 20) == (20, 0)
        assert tier_engine.page_bounds(3, 20) == (20, 40)
