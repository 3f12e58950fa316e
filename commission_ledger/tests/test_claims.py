"""
Unit Tests for the Claim Reconciliation Protocol

Tests cover:
1. Exactly-once claiming of phone-number splits
2. Claiming partner resolution
3. Pending phone verifications
4. Post-commit notification and audit
"""

from datetime import timedelta

import pytest

from commission_ledger import claims
from commission_ledger.claims import normalize_phone_number
from commission_ledger.db import CommissionSplitRow, PhoneVerificationRow, transaction, utcnow
from commission_ledger.service import LedgerService, LedgerValidationError, NotFoundError

PHONE = "+15551234567"
OTHER_PHONE = "+15557654321"


@pytest.fixture
def split_commission(seed, program_setup):
    """A commission with 1000 earnings, 20% owed to PHONE and 10% to OTHER_PHONE."""
    program_id, partner_id, link_id = program_setup
    return seed.commission(
        program_id, link_id, partner_id,
        amount=10000, earnings=1000,
        splits=((PHONE, 20), (OTHER_PHONE, 10)),
    )


class TestClaimCommissions:
    """Tests for claiming splits on behalf of a verified user."""

    def test_claim_is_consumed_exactly_once(self, service, seed, split_commission):
        seed.user(user_id="user_abc")

        first = service.claim_commissions(PHONE, "user_abc")

        assert first.claimed_count == 1
        assert first.claimed_earnings == 200
        split = first.splits[0]
        assert split.claimed is True
        assert split.claimed_by_user_id == "user_abc"
        assert split.claimed_at is not None

        second = service.claim_commissions(PHONE, "user_abc")

        assert second.claimed_count == 0
        assert second.claimed_earnings == 0
        assert second.splits == []

    def test_other_phone_numbers_untouched(self, service, seed, split_commission):
        seed.user(user_id="user_abc")
        service.claim_commissions(PHONE, "user_abc")

        splits = {s.phone_number: s for s in service.get_commission_splits(split_commission.id)}

        assert splits[PHONE].claimed is True
        assert splits[OTHER_PHONE].claimed is False
        assert splits[OTHER_PHONE].claimed_by_user_id is None

    def test_claims_every_split_for_the_phone(self, service, seed, program_setup):
        program_id, partner_id, link_id = program_setup
        seed.commission(program_id, link_id, partner_id, earnings=1000, splits=((PHONE, 10),))
        seed.commission(program_id, link_id, partner_id, earnings=2000, splits=((PHONE, 25),))
        user_id = seed.user()

        result = service.claim_commissions(PHONE, user_id)

        assert result.claimed_count == 2
        assert result.claimed_earnings == 600

    def test_split_claimed_concurrently_is_skipped(self, service, seed, notifier, program_setup, monkeypatch):
        program_id, partner_id, link_id = program_setup
        contested = seed.commission(program_id, link_id, partner_id, earnings=1000, splits=((PHONE, 20),))
        remaining = seed.commission(program_id, link_id, partner_id, earnings=500, splits=((PHONE, 20),))
        contested_split = seed.split_rows(contested.id)[0]
        user_id = seed.user()
        resolve = claims.resolve_claiming_partner

        def claimed_by_rival_first(db, user, phone_number):
            # Another request wins the split after candidates were selected
            db.query(CommissionSplitRow).filter(CommissionSplitRow.id == contested_split.id).update(
                {CommissionSplitRow.claimed: True, CommissionSplitRow.claimed_by_user_id: "user_rival"},
                synchronize_session=False,
            )
            return resolve(db, user, phone_number)

        monkeypatch.setattr(claims, "resolve_claiming_partner", claimed_by_rival_first)

        result = service.claim_commissions(PHONE, user_id)

        assert result.claimed_count == 1
        assert result.claimed_earnings == 100
        assert [s.commission_id for s in result.splits] == [remaining.id]
        assert seed.split_rows(contested.id)[0].claimed_by_user_id == "user_rival"
        assert notifier.calls == [(user_id, PHONE, 1)]

    def test_formatted_phone_number_matches(self, service, seed, split_commission):
        user_id = seed.user()

        result = service.claim_commissions("+1 (555) 123-4567", user_id)

        assert result.claimed_count == 1

    def test_creates_partner_for_user_without_one(self, service, seed, split_commission):
        user_id = seed.user(name="Dana Reyes")

        result = service.claim_commissions(PHONE, user_id)

        assert result.partner_id is not None
        assert result.splits[0].partner_id == result.partner_id
        assert result.splits[0].claimed_by_partner_id == result.partner_id
        assert seed.user_row(user_id).default_partner_id == result.partner_id
        assert service.scope_for_user(user_id).partner_ids == [result.partner_id]

    def test_uses_existing_default_partner(self, service, seed, split_commission):
        own_partner = seed.partner(name="Dana's Shop")
        user_id = seed.user(default_partner_id=own_partner)

        result = service.claim_commissions(PHONE, user_id)

        assert result.partner_id == own_partner
        assert result.splits[0].partner_id == own_partner

    def test_reuses_partner_registered_with_phone(self, service, seed, split_commission):
        phone_partner = seed.partner(name="Phone Partner", phone_number=PHONE)
        user_id = seed.user()

        result = service.claim_commissions(PHONE, user_id)

        assert result.partner_id == phone_partner
        assert seed.user_row(user_id).default_partner_id == phone_partner

    def test_nothing_to_claim_does_not_provision(self, service, seed):
        user_id = seed.user()

        result = service.claim_commissions(PHONE, user_id)

        assert result.claimed_count == 0
        assert result.partner_id is None
        assert seed.user_row(user_id).default_partner_id is None

    def test_unknown_user(self, service, split_commission):
        with pytest.raises(NotFoundError):
            service.claim_commissions(PHONE, "user_missing")

        assert service.get_unclaimed_summary(PHONE).count == 1

    def test_invalid_phone_number(self, service, seed):
        user_id = seed.user()

        with pytest.raises(LedgerValidationError):
            service.claim_commissions("12", user_id)

    def test_blank_user_id(self, service):
        with pytest.raises(LedgerValidationError):
            service.claim_commissions(PHONE, "  ")


class TestPostCommitEffects:
    """Notification and audit run after commit and never fail the claim."""

    def test_notifies_only_when_something_was_claimed(self, service, seed, notifier, audit_sink,
                                                      split_commission):
        user_id = seed.user()

        service.claim_commissions(PHONE, user_id)
        service.claim_commissions(PHONE, user_id)

        assert notifier.calls == [(user_id, PHONE, 1)]
        assert audit_sink.actions() == ["commission_splits.claimed"]

    def test_notifier_failure_is_swallowed(self, session_factory, settings, seed, split_commission):
        class BrokenNotifier:
            def commissions_claimed(self, user_id, phone_number, result):
                raise RuntimeError("sms gateway down")

        service = LedgerService(session_factory=session_factory, settings=settings, notifier=BrokenNotifier())
        user_id = seed.user()

        result = service.claim_commissions(PHONE, user_id)

        assert result.claimed_count == 1
        assert service.get_unclaimed_summary(PHONE).count == 0


class TestPhoneVerification:
    """Pending verifications advertise unclaimed earnings until they expire."""

    def test_record_and_fetch(self, service, split_commission):
        pending = service.record_phone_verification("+1 555 123 4567")

        assert pending.phone_number == PHONE
        assert pending.unclaimed_count == 1
        assert pending.unclaimed_earnings == 200
        assert pending.expires_at - pending.created_at == timedelta(hours=24)

        fetched = service.get_pending_verification(pending.token)
        assert fetched.unclaimed_earnings == 200

    def test_claim_with_token_reports_advertised_earnings(self, service, seed, split_commission):
        user_id = seed.user()
        pending = service.record_phone_verification(PHONE)

        result = service.claim_commissions(PHONE, user_id, verification_token=pending.token)

        assert result.advertised_earnings == 200
        assert result.claimed_earnings == 200

    def test_token_for_another_phone(self, service, seed, split_commission):
        user_id = seed.user()
        pending = service.record_phone_verification(OTHER_PHONE)

        with pytest.raises(LedgerValidationError):
            service.claim_commissions(PHONE, user_id, verification_token=pending.token)

        assert service.get_unclaimed_summary(PHONE).count == 1

    def test_unknown_token(self, service):
        with pytest.raises(NotFoundError):
            service.get_pending_verification("no-such-token")

    def test_expired_token(self, service, session_factory):
        created = utcnow() - timedelta(hours=48)
        with transaction(session_factory) as db:
            db.add(PhoneVerificationRow(
                token="stale-token",
                phone_number=PHONE,
                unclaimed_count=1,
                unclaimed_earnings=200,
                created_at=created,
                expires_at=created + timedelta(hours=24),
            ))

        with pytest.raises(NotFoundError):
            service.get_pending_verification("stale-token")

    def test_expiry_boundary(self, session_factory):
        now = utcnow()
        with transaction(session_factory) as db:
            db.add(PhoneVerificationRow(
                token="edge-token",
                phone_number=PHONE,
                unclaimed_count=0,
                unclaimed_earnings=0,
                created_at=now - timedelta(hours=24),
                expires_at=now,
            ))

        with transaction(session_factory) as db:
            with pytest.raises(NotFoundError):
                claims.load_pending_verification(db, "edge-token", now)
            pending = claims.load_pending_verification(db, "edge-token", now - timedelta(seconds=1))

        assert pending.is_expired(now) is True
        assert pending.is_expired(now - timedelta(seconds=1)) is False

    def test_unclaimed_summary(self, service, split_commission):
        summary = service.get_unclaimed_summary(OTHER_PHONE)

        assert summary.count == 1
        assert summary.earnings == 100
        assert summary.splits[0].commission_id == split_commission.id


class TestNormalizePhoneNumber:
    @pytest.mark.parametrize("raw,expected", [
        ("+15551234567", "+15551234567"),
        ("+1 (555) 123-4567", "+15551234567"),
        ("44 20 7946 0000", "+442079460000"),
    ])
    def test_normalizes(self, raw, expected):
        assert normalize_phone_number(raw) == expected

    @pytest.mark.parametrize("raw", ["", "   ", "123", "+1234567890123456"])
    def test_rejects(self, raw):
        with pytest.raises(LedgerValidationError):
            normalize_phone_number(raw)
