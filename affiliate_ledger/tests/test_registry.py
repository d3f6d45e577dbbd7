"""
Unit Tests for the Affiliate Registry

Tests cover:
1. Registration and code generation
2. Commission rate bounds and updates
3. Status changes hiding affiliates from lookups
4. Compare-and-set on the running totals
"""

import pytest
from decimal import Decimal

from affiliate_ledger.db_models import AffiliateRow
from affiliate_ledger.errors import (
    AffiliateNotFoundError,
    ConcurrentUpdateError,
    TransientStorageError,
    ValidationError,
)
from affiliate_ledger.database import run_in_transaction
from affiliate_ledger.models import AffiliateStatus, RegisterAffiliateRequest
from affiliate_ledger.registry import compare_and_set_totals


class TestRegistration:
    """Tests for registering affiliates."""

    def test_register_with_generated_code(self, ledger):
        """A missing code is generated as 8 upper-case hex characters."""
        affiliate = ledger.register_affiliate(RegisterAffiliateRequest(email="new@example.com"))

        assert len(affiliate.affiliate_code) == 8
        assert affiliate.affiliate_code == affiliate.affiliate_code.upper()
        assert affiliate.status == AffiliateStatus.ACTIVE
        assert affiliate.commission_rate == Decimal("10.00")
        assert affiliate.total_earnings == Decimal("0.00")
        assert affiliate.total_referrals == 0
        assert affiliate.total_visits == 0

    def test_duplicate_code_rejected(self, make_affiliate):
        """Affiliate codes map 1:1 to affiliates."""
        make_affiliate("SMX10")

        with pytest.raises(ValidationError):
            make_affiliate("SMX10", email="other@example.com")

    @pytest.mark.parametrize("rate", ["-1", "100.01"])
    def test_commission_rate_out_of_range(self, make_affiliate, rate):
        with pytest.raises(ValidationError):
            make_affiliate("BADRATE", rate=rate)


class TestAffiliateUpdates:
    """Tests for rate and status changes."""

    def test_update_commission_rate(self, ledger, make_affiliate):
        affiliate = make_affiliate("SMX10", rate="15")

        updated = ledger.registry.update_commission_rate(affiliate.id, Decimal("20"))

        assert updated.commission_rate == Decimal("20.00")

    def test_suspended_affiliate_not_found_by_code(self, ledger, make_affiliate):
        """Only active affiliates resolve by code unless asked otherwise."""
        affiliate = make_affiliate("SMX10")
        ledger.registry.set_status(affiliate.id, AffiliateStatus.SUSPENDED)

        with pytest.raises(AffiliateNotFoundError):
            ledger.registry.get_affiliate_by_code("SMX10")

        found = ledger.registry.get_affiliate_by_code("SMX10", active_only=False)
        assert found.status == AffiliateStatus.SUSPENDED

    def test_unknown_affiliate(self, ledger):
        with pytest.raises(AffiliateNotFoundError):
            ledger.registry.get_affiliate_by_code("NOPE")


class TestCompareAndSetTotals:
    """Tests for the guarded totals write."""

    def test_stale_version_is_rejected(self, session_factory, make_affiliate):
        """A writer holding an old version loses instead of overwriting."""
        affiliate = make_affiliate("SMX10")

        with session_factory() as stale_session:
            stale = stale_session.get(AffiliateRow, affiliate.id)

            # Another handler writes first
            with session_factory.begin() as session:
                fresh = session.get(AffiliateRow, affiliate.id)
                compare_and_set_totals(session, fresh, total_earnings=Decimal("50.00"))

            with pytest.raises(ConcurrentUpdateError):
                compare_and_set_totals(stale_session, stale, total_earnings=Decimal("10.00"))
            stale_session.rollback()

        with session_factory() as session:
            row = session.get(AffiliateRow, affiliate.id)
            assert row.total_earnings == Decimal("50.00")
            assert row.version == 1


class TestRunInTransaction:
    """Tests for the retrying transaction helper."""

    def test_retries_lost_race(self, session_factory):
        calls = []

        def work(session):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrentUpdateError("lost")
            return "done"

        assert run_in_transaction(session_factory, work, retries=3) == "done"
        assert len(calls) == 2

    def test_gives_up_after_retries(self, session_factory):
        def work(session):
            raise ConcurrentUpdateError("always lost")

        with pytest.raises(TransientStorageError):
            run_in_transaction(session_factory, work, retries=2)

    def test_operational_error_is_transient(self, session_factory):
        from sqlalchemy.exc import OperationalError

        def work(session):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        with pytest.raises(TransientStorageError):
            run_in_transaction(session_factory, work, retries=3)
