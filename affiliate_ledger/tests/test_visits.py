import pytest

from affiliate_ledger.db_models import VisitRow
from affiliate_ledger.errors import AffiliateNotFoundError, ValidationError
from affiliate_ledger.models import AffiliateStatus, TrackVisitRequest
from affiliate_ledger.visits import attribute_latest_visit, detect_browser, detect_device_type

from .conftest import at

IPHONE_SAFARI = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
DESKTOP_CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)


class TestRecordVisit:
    """Tests for recording referral link hits."""

    def test_record_visit(self, ledger, make_affiliate):
        affiliate = make_affiliate("SMX10")

        visit = ledger.record_visit(TrackVisitRequest(
            affiliate_code="SMX10",
            page_url="https://example.com/plans",
            user_agent=IPHONE_SAFARI,
        ))

        assert visit.affiliate_id == affiliate.id
        assert visit.converted is False
        assert visit.device_type == "mobile"
        assert visit.browser == "Safari"

    def test_visit_count_is_eventually_consistent(self, ledger, make_affiliate):
        """total_visits only moves on the recompute pass."""
        affiliate = make_affiliate("SMX10")
        ledger.record_visit(TrackVisitRequest(affiliate_code="SMX10"))
        ledger.record_visit(TrackVisitRequest(affiliate_code="SMX10"))

        assert ledger.registry.get_affiliate(affiliate.id).total_visits == 0

        ledger.recompute_affiliate_stats(affiliate.id)
        assert ledger.registry.get_affiliate(affiliate.id).total_visits == 2

    def test_unknown_code(self, ledger):
        with pytest.raises(AffiliateNotFoundError):
            ledger.record_visit(TrackVisitRequest(affiliate_code="NOPE"))

    def test_inactive_affiliate(self, ledger, make_affiliate):
        affiliate = make_affiliate("SMX10")
        ledger.registry.set_status(affiliate.id, AffiliateStatus.TERMINATED)

        with pytest.raises(AffiliateNotFoundError):
            ledger.record_visit(TrackVisitRequest(affiliate_code="SMX10"))

    def test_missing_code(self, ledger):
        with pytest.raises(ValidationError):
            ledger.record_visit(TrackVisitRequest())


class TestAttribution:
    """Tests for claiming the most recent unconverted visit."""

    def test_each_visit_claimed_once(self, session_factory, make_affiliate, add_visit):
        affiliate = make_affiliate("SMX10")
        older = add_visit(affiliate.id, at(1))
        newer = add_visit(affiliate.id, at(2))

        with session_factory.begin() as session:
            first = attribute_latest_visit(session, affiliate.id)
            second = attribute_latest_visit(session, affiliate.id)
            third = attribute_latest_visit(session, affiliate.id)

        assert first.id == newer
        assert second.id == older
        assert third is None

    def test_visit_lost_to_another_conversion_moves_on(
        self, session_factory, make_affiliate, add_visit, mocker
    ):
        """Another conversion claimed the newest visit between read and update."""
        affiliate = make_affiliate("SMX10")
        older = add_visit(affiliate.id, at(1))
        taken = add_visit(affiliate.id, at(2), converted=True)

        with session_factory.begin() as session:
            stale = session.get(VisitRow, taken)
            scalar = session.scalar
            reads = iter([stale])
            mocker.patch.object(session, "scalar", side_effect=lambda query: next(reads, None) or scalar(query))

            claimed = attribute_latest_visit(session, affiliate.id)

        assert claimed.id == older

    def test_other_affiliates_visits_untouched(self, ledger, session_factory, make_affiliate, add_visit):
        mine = make_affiliate("SMX10")
        theirs = make_affiliate("OTHER")
        visit_id = add_visit(theirs.id, at(1))

        with session_factory.begin() as session:
            assert attribute_latest_visit(session, mine.id) is None

        assert ledger.visits.get_visit(visit_id).converted is False


class TestUserAgentParsing:

    def test_device_type(self):
        assert detect_device_type(IPHONE_SAFARI) == "mobile"
        assert detect_device_type(DESKTOP_CHROME) == "desktop"
        assert detect_device_type("") == "desktop"

    def test_browser(self):
        assert detect_browser(DESKTOP_CHROME) == "Chrome"
        assert detect_browser(DESKTOP_CHROME + " Edg/120.0") == "Edge"
        assert detect_browser("Mozilla/5.0 Gecko/20100101 Firefox/121.0") == "Firefox"
        assert detect_browser("curl/8.0") == "Other"
