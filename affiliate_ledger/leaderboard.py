"""
Leaderboard Aggregator

Recomputes affiliate totals from the underlying referral, withdrawal and
visit records, runs the once-a-day sweep, and serves the public leaderboard.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterator, Optional
from uuid import UUID

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .database import run_in_transaction
from .db_models import AffiliateRow, ReferralRow, SystemSettingRow, VisitRow, WithdrawalRow, utcnow
from .errors import ConcurrentUpdateError, ValidationError
from .models import (
    AffiliateStatus,
    AffiliateTotals,
    LeaderboardEntry,
    LeaderboardUpdateResponse,
    ReferralStatus,
    TimeFrame,
    WithdrawalStatus,
)
from .registry import compare_and_set_totals, load_affiliate

logger = logging.getLogger(__name__)

LAST_LEADERBOARD_UPDATE = "last_leaderboard_update"

TIME_FRAME_DAYS = {
    TimeFrame.MONTH: 30,
    TimeFrame.QUARTER: 90,
}


def conversion_rate(referrals: int, visits: int) -> float:
    if not visits:
        return 0.0
    return referrals / visits * 100


def calculate_totals(session: Session, affiliate_id: UUID) -> AffiliateTotals:
    approved = session.execute(
        select(
            func.count(ReferralRow.id),
            func.coalesce(func.sum(ReferralRow.commission_amount), 0),
        ).where(
            ReferralRow.affiliate_id == affiliate_id,
            ReferralRow.status == ReferralStatus.APPROVED.value,
        )
    ).one()
    withdrawn = session.scalar(
        select(func.coalesce(func.sum(WithdrawalRow.amount), 0)).where(
            WithdrawalRow.affiliate_id == affiliate_id,
            WithdrawalRow.status == WithdrawalStatus.COMPLETED.value,
        )
    )
    visits = session.scalar(select(func.count(VisitRow.id)).where(VisitRow.affiliate_id == affiliate_id))

    earnings = Decimal(str(approved[1])) - Decimal(str(withdrawn))
    return AffiliateTotals(
        total_referrals=approved[0],
        total_earnings=earnings.quantize(Decimal("0.01")),
        total_visits=visits or 0,
    )


def recompute_totals(session: Session, affiliate: AffiliateRow) -> AffiliateTotals:
    """Full recalculation; running it twice gives the same answer."""
    totals = calculate_totals(session, affiliate.id)
    compare_and_set_totals(
        session,
        affiliate,
        total_earnings=totals.total_earnings,
        total_referrals=totals.total_referrals,
        total_visits=totals.total_visits,
    )
    return totals


class LeaderboardAggregator:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or utcnow

    def recompute_affiliate_stats(self, affiliate_id: UUID) -> AffiliateTotals:
        def work(session: Session) -> AffiliateTotals:
            return recompute_totals(session, load_affiliate(session, affiliate_id))

        totals = run_in_transaction(self.session_factory, work)
        logger.debug(f"Recomputed affiliate {affiliate_id}: {totals}")
        return totals

    def update_leaderboard(self, force_update: bool = False) -> LeaderboardUpdateResponse:
        now = self.clock()
        today = now.date().isoformat()

        claim = run_in_transaction(self.session_factory, lambda s: self._claim_day(s, today, force_update))
        if claim is None:
            logger.info("Leaderboard already updated today, skipping sweep")
            return LeaderboardUpdateResponse(
                message="Leaderboard already updated today",
                affiliates_updated=0,
                timestamp=now,
                last_update=today,
                updated=False,
            )

        previous_value, claimed_version = claim
        try:
            with self.session_factory() as session:
                affiliate_ids = session.scalars(
                    select(AffiliateRow.id).where(AffiliateRow.status == AffiliateStatus.ACTIVE.value)
                ).all()
            for affiliate_id in affiliate_ids:
                self.recompute_affiliate_stats(affiliate_id)
        except Exception:
            logger.error("Leaderboard sweep failed, releasing today's claim", exc_info=True)
            try:
                run_in_transaction(
                    self.session_factory,
                    lambda s: self._release_day(s, previous_value, claimed_version),
                )
            except Exception:
                logger.error(f"Could not release leaderboard claim for {today}", exc_info=True)
            raise

        logger.info(f"Leaderboard updated: {len(affiliate_ids)} affiliates recomputed")
        return LeaderboardUpdateResponse(
            message="Leaderboard updated successfully",
            affiliates_updated=len(affiliate_ids),
            timestamp=now,
            last_update=today,
            updated=True,
        )

    def last_update(self) -> Optional[date]:
        with self.session_factory() as session:
            row = session.get(SystemSettingRow, LAST_LEADERBOARD_UPDATE)
            return date.fromisoformat(row.value) if row else None

    def _claim_day(self, session: Session, today: str, force_update: bool) -> Optional[tuple[Optional[str], int]]:
        """
        Compare-and-set today's date into the throttle row.

        Returns (previous value, version now held) when this caller won the
        right to sweep, or None when today is already taken.
        """
        row = session.get(SystemSettingRow, LAST_LEADERBOARD_UPDATE)
        if row is None:
            try:
                session.execute(
                    insert(SystemSettingRow).values(
                        key=LAST_LEADERBOARD_UPDATE, value=today, version=1, updated_at=utcnow()
                    )
                )
            except IntegrityError as e:
                # Another tick inserted the row first; the retry re-reads it
                raise ConcurrentUpdateError("Leaderboard throttle row created concurrently") from e
            return None, 1

        if row.value == today and not force_update:
            return None

        observed = row.version
        result = session.execute(
            update(SystemSettingRow)
            .where(SystemSettingRow.key == LAST_LEADERBOARD_UPDATE, SystemSettingRow.version == observed)
            .values(value=today, version=observed + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError("Leaderboard throttle row changed concurrently")
        return row.value, observed + 1

    def _release_day(self, session: Session, previous_value: Optional[str], claimed_version: int) -> None:
        if previous_value is None:
            session.execute(
                delete(SystemSettingRow).where(
                    SystemSettingRow.key == LAST_LEADERBOARD_UPDATE,
                    SystemSettingRow.version == claimed_version,
                )
            )
            return
        session.execute(
            update(SystemSettingRow)
            .where(SystemSettingRow.key == LAST_LEADERBOARD_UPDATE, SystemSettingRow.version == claimed_version)
            .values(value=previous_value, version=claimed_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    def iter_public_leaderboard(
        self,
        time_frame: TimeFrame = TimeFrame.ALL,
        limit: int = 10,
        offset: int = 0,
        show_earnings: bool = False,
        show_conversion: bool = False,
    ) -> Iterator[LeaderboardEntry]:
        """
        Yield ranked entries lazily, one page of ``limit`` starting at ``offset``.

        ``all`` ranks on the stored totals. ``month`` and ``quarter`` rank on
        approved commissions, approved referrals and visits inside the window.
        """
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        if offset < 0:
            raise ValidationError("offset must not be negative")

        if time_frame == TimeFrame.ALL:
            stmt = select(
                AffiliateRow.affiliate_code,
                AffiliateRow.total_referrals,
                AffiliateRow.total_earnings,
                AffiliateRow.total_visits,
            ).where(AffiliateRow.status == AffiliateStatus.ACTIVE.value)
            earnings_column = AffiliateRow.total_earnings
        else:
            cutoff = self.clock() - timedelta(days=TIME_FRAME_DAYS[time_frame])
            referrals = (
                select(
                    ReferralRow.affiliate_id,
                    func.count(ReferralRow.id).label("referrals"),
                    func.sum(ReferralRow.commission_amount).label("earnings"),
                )
                .where(
                    ReferralRow.status == ReferralStatus.APPROVED.value,
                    ReferralRow.created_at >= cutoff,
                )
                .group_by(ReferralRow.affiliate_id)
                .subquery()
            )
            visits = (
                select(VisitRow.affiliate_id, func.count(VisitRow.id).label("visits"))
                .where(VisitRow.created_at >= cutoff)
                .group_by(VisitRow.affiliate_id)
                .subquery()
            )
            earnings_column = func.coalesce(referrals.c.earnings, 0)
            stmt = (
                select(
                    AffiliateRow.affiliate_code,
                    func.coalesce(referrals.c.referrals, 0),
                    earnings_column,
                    func.coalesce(visits.c.visits, 0),
                )
                .select_from(AffiliateRow)
                .outerjoin(referrals, referrals.c.affiliate_id == AffiliateRow.id)
                .outerjoin(visits, visits.c.affiliate_id == AffiliateRow.id)
                .where(AffiliateRow.status == AffiliateStatus.ACTIVE.value)
            )

        stmt = stmt.order_by(earnings_column.desc(), AffiliateRow.affiliate_code).offset(offset).limit(limit)

        with self.session_factory() as session:
            rows = session.execute(stmt.execution_options(yield_per=limit))
            for rank, (code, referral_count, earnings, visit_count) in enumerate(rows, start=offset + 1):
                entry = LeaderboardEntry(rank=rank, affiliate_code=code, total_referrals=referral_count)
                if show_earnings:
                    entry.total_earnings = Decimal(str(earnings)).quantize(Decimal("0.01"))
                if show_conversion:
                    entry.conversion_rate = conversion_rate(referral_count, visit_count)
                yield entry

    def get_public_leaderboard(self, *args, **kwargs) -> list[LeaderboardEntry]:
        return list(self.iter_public_leaderboard(*args, **kwargs))
