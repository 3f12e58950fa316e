"""
Unit Tests for the Commission State Machine

Tests cover:
1. Transition table lookups
2. Rollup counters following every transition
3. Rejected transitions leaving state untouched
4. Commission recording and split earnings
"""

import pytest
from pydantic import ValidationError

from commission_ledger.models import CommissionStatus, CommissionType, RecordCommissionRequest, SplitConfig
from commission_ledger.service import (
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
)
from commission_ledger.state_machine import (
    can_transition,
    get_allowed_transitions,
    is_valid_status,
    rollup_delta,
)


class TestTransitionTable:
    """Tests for the static transition rules."""

    def test_happy_path(self):
        assert can_transition(CommissionStatus.PENDING, CommissionStatus.PROCESSED)
        assert can_transition(CommissionStatus.PROCESSED, CommissionStatus.PAID)

    def test_paid_is_terminal(self):
        assert get_allowed_transitions(CommissionStatus.PAID) == []
        for status in CommissionStatus:
            assert not can_transition(CommissionStatus.PAID, status)

    def test_invalid_statuses_only_return_to_pending(self):
        for status in (
            CommissionStatus.REFUNDED,
            CommissionStatus.DUPLICATE,
            CommissionStatus.FRAUD,
            CommissionStatus.CANCELED,
        ):
            assert get_allowed_transitions(status) == [CommissionStatus.PENDING]
            assert not can_transition(status, CommissionStatus.PROCESSED)

    def test_pending_cannot_skip_to_paid(self):
        assert not can_transition(CommissionStatus.PENDING, CommissionStatus.PAID)

    def test_is_valid_status(self):
        assert is_valid_status(CommissionStatus.PENDING)
        assert is_valid_status(CommissionStatus.PROCESSED)
        assert is_valid_status(CommissionStatus.PAID)
        assert not is_valid_status(CommissionStatus.FRAUD)
        assert not is_valid_status(CommissionStatus.REFUNDED)

    def test_rollup_delta(self):
        assert rollup_delta(CommissionStatus.PENDING, CommissionStatus.FRAUD) == -1
        assert rollup_delta(CommissionStatus.DUPLICATE, CommissionStatus.PENDING) == 1
        assert rollup_delta(CommissionStatus.PENDING, CommissionStatus.PROCESSED) == 0
        assert rollup_delta(CommissionStatus.REFUNDED, CommissionStatus.CANCELED) == 0


class TestRollupCounters:
    """Link and program counters move with validity changes only."""

    def test_recording_increments_rollups(self, seed, program_setup):
        program_id, partner_id, link_id = program_setup
        seed.commission(program_id, link_id, partner_id, amount=10000, earnings=1000)

        link = seed.link_row(link_id)
        assert link.sales == 1
        assert link.sale_amount == 10000
        assert seed.program_row(program_id).sales_usage == 10000

    def test_fraud_and_back_restores_rollups(self, service, seed, program_setup):
        program_id, partner_id, link_id = program_setup
        commission = seed.commission(program_id, link_id, partner_id, amount=5000, earnings=500)

        service.transition_commission(commission.id, CommissionStatus.FRAUD)
        link = seed.link_row(link_id)
        assert link.sales == 0
        assert link.sale_amount == 0
        assert seed.program_row(program_id).sales_usage == 0

        service.transition_commission(commission.id, CommissionStatus.PENDING)
        link = seed.link_row(link_id)
        assert link.sales == 1
        assert link.sale_amount == 5000
        assert seed.program_row(program_id).sales_usage == 5000

    def test_processing_does_not_touch_rollups(self, service, seed, program_setup):
        program_id, partner_id, link_id = program_setup
        commission = seed.commission(program_id, link_id, partner_id, amount=2000, earnings=200)

        updated = service.transition_commission(commission.id, CommissionStatus.PROCESSED)

        assert updated.status == CommissionStatus.PROCESSED
        assert seed.link_row(link_id).sales == 1
        assert seed.link_row(link_id).sale_amount == 2000

    def test_rollups_track_valid_commissions(self, service, seed, program_setup):
        program_id, partner_id, link_id = program_setup
        kept = seed.commission(program_id, link_id, partner_id, amount=1000, earnings=100)
        refunded = seed.commission(program_id, link_id, partner_id, amount=3000, earnings=300)
        duplicate = seed.commission(program_id, link_id, partner_id, amount=7000, earnings=700)

        service.transition_commission(refunded.id, CommissionStatus.REFUNDED)
        service.transition_commission(duplicate.id, CommissionStatus.DUPLICATE)
        service.transition_commission(kept.id, CommissionStatus.PROCESSED)

        link = seed.link_row(link_id)
        assert link.sales == 1
        assert link.sale_amount == 1000
        assert seed.program_row(program_id).sales_usage == 1000


class TestRejectedTransitions:
    """Rejected transitions raise before any write."""

    def test_same_status_is_noop(self, service, seed, program_setup):
        program_id, partner_id, link_id = program_setup
        commission = seed.commission(program_id, link_id, partner_id)

        result = service.transition_commission(commission.id, CommissionStatus.PENDING)

        assert result.status == CommissionStatus.PENDING
        assert seed.link_row(link_id).sales == 1

    def test_not_in_table(self, service, seed, program_setup):
        program_id, partner_id, link_id = program_setup
        commission = seed.commission(program_id, link_id, partner_id, status=CommissionStatus.REFUNDED)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            service.transition_commission(commission.id, CommissionStatus.PROCESSED)

        assert exc_info.value.code == "state_invariant_violation"
        assert exc_info.value.details["allowed"] == ["pending"]
        assert service.get_commission(commission.id).status == CommissionStatus.REFUNDED
        assert seed.link_row(link_id).sales == 0

    def test_paid_requires_payout(self, service, seed, program_setup):
        program_id, partner_id, link_id = program_setup
        commission = seed.commission(program_id, link_id, partner_id, status=CommissionStatus.PROCESSED)

        with pytest.raises(InvalidStateTransitionError):
            service.transition_commission(commission.id, CommissionStatus.PAID)

        assert service.get_commission(commission.id).status == CommissionStatus.PROCESSED

    def test_attached_commission_cannot_leave_payout(self, service, seed, program_setup):
        program_id, partner_id, link_id = program_setup
        commission = seed.commission(program_id, link_id, partner_id, status=CommissionStatus.PROCESSED)
        payout = service.create_payout(partner_id, [commission.id])

        with pytest.raises(ConflictError) as exc_info:
            service.transition_commission(commission.id, CommissionStatus.CANCELED)

        assert exc_info.value.details["payout_id"] == payout.id
        assert service.get_commission(commission.id).status == CommissionStatus.PROCESSED

    def test_unknown_commission(self, service):
        with pytest.raises(NotFoundError):
            service.transition_commission("cm_missing", CommissionStatus.PROCESSED)


class TestRecordCommission:
    """Tests for recording commissions with phone-number splits."""

    def test_split_earnings_are_floored(self, service, seed, program_setup):
        program_id, partner_id, link_id = program_setup
        commission = seed.commission(
            program_id, link_id, partner_id,
            amount=10010, earnings=1001,
            splits=(("+1 (555) 123-4567", 33), ("+44 20 7946 0000", 10)),
        )

        splits = seed.split_rows(commission.id)
        assert [s.earnings for s in splits] == [330, 100]
        assert splits[0].phone_number == "+15551234567"
        assert splits[1].phone_number == "+442079460000"
        assert all(not s.claimed for s in splits)

        returned = service.get_commission_splits(commission.id)
        assert sum(s.earnings for s in returned) == 430

    def test_new_commission_is_pending_with_default_currency(self, seed, program_setup):
        program_id, partner_id, link_id = program_setup
        commission = seed.commission(program_id, link_id, partner_id)

        assert commission.status == CommissionStatus.PENDING
        assert commission.currency == "usd"
        assert commission.payout_id is None
        assert commission.id.startswith("cm_")

    def test_unknown_link(self, seed, program_setup):
        program_id, partner_id, _ = program_setup

        with pytest.raises(NotFoundError):
            seed.commission(program_id, "link_missing", partner_id)

    def test_sale_earnings_cannot_exceed_amount(self):
        with pytest.raises(ValidationError):
            RecordCommissionRequest(
                program_id="prog_1", link_id="link_1", type=CommissionType.SALE, amount=100, earnings=200
            )

    def test_split_percentages_capped(self):
        with pytest.raises(ValidationError):
            RecordCommissionRequest(
                program_id="prog_1",
                link_id="link_1",
                amount=1000,
                earnings=100,
                splits=[
                    SplitConfig(phone_number="+15550000001", split_percent=60),
                    SplitConfig(phone_number="+15550000002", split_percent=50),
                ],
            )

    def test_lead_may_earn_without_amount(self, seed, program_setup):
        program_id, partner_id, link_id = program_setup
        commission = seed.commission(
            program_id, link_id, partner_id, amount=0, earnings=500, commission_type=CommissionType.LEAD
        )

        assert commission.type == CommissionType.LEAD
        assert commission.earnings == 500
