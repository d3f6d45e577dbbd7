"""
Affiliate Registry

Owns affiliate identity, commission rate and the running totals. The totals
are only ever written through ``compare_and_set_totals``, which both the
recompute pass and the settlement decrement go through.
"""

import logging
import secrets
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .database import run_in_transaction
from .db_models import AffiliateRow, utcnow
from .errors import AffiliateNotFoundError, ConcurrentUpdateError, ValidationError
from .models import Affiliate, AffiliateStatus, RegisterAffiliateRequest

logger = logging.getLogger(__name__)


def generate_affiliate_code() -> str:
    return secrets.token_hex(4).upper()


def load_affiliate(session: Session, affiliate_id: UUID) -> AffiliateRow:
    row = session.get(AffiliateRow, affiliate_id)
    if row is None:
        raise AffiliateNotFoundError(f"Affiliate {affiliate_id} not found")
    return row


def load_active_affiliate_by_code(session: Session, affiliate_code: str) -> AffiliateRow:
    row = session.scalar(
        select(AffiliateRow).where(
            AffiliateRow.affiliate_code == affiliate_code,
            AffiliateRow.status == AffiliateStatus.ACTIVE.value,
        )
    )
    if row is None:
        raise AffiliateNotFoundError("Affiliate not found or inactive")
    return row


def compare_and_set_totals(
    session: Session,
    affiliate: AffiliateRow,
    *,
    total_earnings: Decimal,
    total_referrals: Optional[int] = None,
    total_visits: Optional[int] = None,
) -> None:
    """
    Write the running totals only if nobody else has since the affiliate
    was read. Raises ConcurrentUpdateError when the version has moved.
    """
    observed_version = affiliate.version
    values = {
        "total_earnings": total_earnings,
        "version": observed_version + 1,
        "updated_at": utcnow(),
    }
    if total_referrals is not None:
        values["total_referrals"] = total_referrals
    if total_visits is not None:
        values["total_visits"] = total_visits

    result = session.execute(
        update(AffiliateRow)
        .where(AffiliateRow.id == affiliate.id, AffiliateRow.version == observed_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentUpdateError(f"Affiliate {affiliate.id} changed since version {observed_version}")
    session.refresh(affiliate)


class AffiliateRegistry:
    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def register_affiliate(self, request: RegisterAffiliateRequest) -> Affiliate:
        rate = request.commission_rate
        if rate is None:
            rate = Decimal(str(get_settings().DEFAULT_COMMISSION_RATE))
        if rate < 0 or rate > 100:
            raise ValidationError("commission_rate must be between 0 and 100")
        if not request.email or not request.email.strip():
            raise ValidationError("email is required")

        def work(session: Session) -> Affiliate:
            code = request.affiliate_code
            if code:
                if self._code_exists(session, code):
                    raise ValidationError(f"Affiliate code {code} is already taken")
            else:
                code = generate_affiliate_code()
                while self._code_exists(session, code):
                    code = generate_affiliate_code()

            now = utcnow()
            row = AffiliateRow(
                affiliate_code=code,
                email=request.email.strip(),
                payout_email=request.payout_email,
                payout_method=request.payout_method.value,
                commission_rate=rate,
                status=AffiliateStatus.ACTIVE.value,
                total_referrals=0,
                total_earnings=Decimal("0.00"),
                total_visits=0,
                version=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            logger.info(f"Registered affiliate {row.id} with code {code}")
            return Affiliate.model_validate(row)

        return run_in_transaction(self.session_factory, work)

    def get_affiliate(self, affiliate_id: UUID) -> Affiliate:
        with self.session_factory() as session:
            return Affiliate.model_validate(load_affiliate(session, affiliate_id))

    def get_affiliate_by_code(self, affiliate_code: str, active_only: bool = True) -> Affiliate:
        with self.session_factory() as session:
            if active_only:
                return Affiliate.model_validate(load_active_affiliate_by_code(session, affiliate_code))
            row = session.scalar(select(AffiliateRow).where(AffiliateRow.affiliate_code == affiliate_code))
            if row is None:
                raise AffiliateNotFoundError(f"Affiliate {affiliate_code} not found")
            return Affiliate.model_validate(row)

    def update_commission_rate(self, affiliate_id: UUID, commission_rate: Decimal) -> Affiliate:
        if commission_rate < 0 or commission_rate > 100:
            raise ValidationError("commission_rate must be between 0 and 100")

        def work(session: Session) -> Affiliate:
            row = load_affiliate(session, affiliate_id)
            row.commission_rate = commission_rate
            row.updated_at = utcnow()
            session.flush()
            logger.info(f"Affiliate {affiliate_id} commission rate set to {commission_rate}%")
            return Affiliate.model_validate(row)

        return run_in_transaction(self.session_factory, work)

    def set_status(self, affiliate_id: UUID, status: AffiliateStatus) -> Affiliate:
        def work(session: Session) -> Affiliate:
            row = load_affiliate(session, affiliate_id)
            row.status = status.value
            row.updated_at = utcnow()
            session.flush()
            logger.info(f"Affiliate {affiliate_id} is now {status.value}")
            return Affiliate.model_validate(row)

        return run_in_transaction(self.session_factory, work)

    @staticmethod
    def _code_exists(session: Session, code: str) -> bool:
        return session.scalar(select(AffiliateRow.id).where(AffiliateRow.affiliate_code == code)) is not None
