from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from .database import get_session_factory
from .leaderboard import LeaderboardAggregator
from .models import (
    Affiliate,
    AffiliateTotals,
    CreateReferralRequest,
    LeaderboardEntry,
    LeaderboardUpdateResponse,
    ProcessConversionRequest,
    ProcessWithdrawalRequest,
    ReferralResponse,
    RegisterAffiliateRequest,
    RequestWithdrawalRequest,
    TimeFrame,
    TrackVisitRequest,
    Visit,
    WithdrawalResponse,
)
from .notifications import Dispatch, NotificationSender
from .referrals import ReferralLedger
from .registry import AffiliateRegistry
from .visits import VisitTracker
from .withdrawals import WithdrawalProcessor


class AffiliateLedger:
    """
    The affiliate ledger components over one session factory.

    Components never call each other in-process except through the stored
    affiliate totals, so each handler can run on its own against shared
    storage.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker[Session]] = None,
        notifier: Optional[NotificationSender] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.notifier = notifier if notifier is not None else NotificationSender.from_settings()
        self.registry = AffiliateRegistry(self.session_factory)
        self.visits = VisitTracker(self.session_factory)
        self.referrals = ReferralLedger(self.session_factory, self.notifier)
        self.withdrawals = WithdrawalProcessor(self.session_factory, self.notifier)
        self.leaderboard = LeaderboardAggregator(self.session_factory, clock=clock)

    def register_affiliate(self, request: RegisterAffiliateRequest) -> Affiliate:
        return self.registry.register_affiliate(request)

    def record_visit(self, request: TrackVisitRequest) -> Visit:
        return self.visits.record_visit(request)

    def create_referral(self, request: CreateReferralRequest) -> ReferralResponse:
        return self.referrals.create_referral(request)

    def process_conversion(
        self, request: ProcessConversionRequest, dispatch: Optional[Dispatch] = None
    ) -> ReferralResponse:
        return self.referrals.process_conversion(request, dispatch=dispatch)

    def request_withdrawal(self, request: RequestWithdrawalRequest) -> WithdrawalResponse:
        return self.withdrawals.request_withdrawal(request)

    def process_withdrawal(
        self, request: ProcessWithdrawalRequest, dispatch: Optional[Dispatch] = None
    ) -> WithdrawalResponse:
        return self.withdrawals.process_withdrawal(request, dispatch=dispatch)

    def recompute_affiliate_stats(self, affiliate_id: UUID) -> AffiliateTotals:
        return self.leaderboard.recompute_affiliate_stats(affiliate_id)

    def update_leaderboard(self, force_update: bool = False) -> LeaderboardUpdateResponse:
        return self.leaderboard.update_leaderboard(force_update)

    def get_public_leaderboard(
        self,
        time_frame: TimeFrame = TimeFrame.ALL,
        limit: int = 10,
        show_earnings: bool = False,
        show_conversion: bool = False,
        offset: int = 0,
    ) -> list[LeaderboardEntry]:
        return self.leaderboard.get_public_leaderboard(
            time_frame=time_frame,
            limit=limit,
            offset=offset,
            show_earnings=show_earnings,
            show_conversion=show_conversion,
        )
