import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from .database import run_in_transaction
from .db_models import ReferralRow, utcnow
from .errors import (
    ConcurrentUpdateError,
    InvalidTransitionError,
    ReferralNotFoundError,
    ValidationError,
)
from .leaderboard import recompute_totals
from .models import (
    CreateReferralRequest,
    ProcessConversionRequest,
    Referral,
    ReferralResponse,
    ReferralStatus,
)
from .notifications import Dispatch, NotificationSender, ReferralNotice, dispatch_inline
from .registry import load_active_affiliate_by_code, load_affiliate
from .visits import attribute_latest_visit

logger = logging.getLogger(__name__)

DECISIONS = (ReferralStatus.APPROVED, ReferralStatus.REJECTED)
CENTS = Decimal("0.01")


def calculate_commission(order_amount: Optional[Decimal], commission_rate: Decimal) -> Decimal:
    if order_amount is None:
        return Decimal("0.00")
    return (Decimal(order_amount) * Decimal(commission_rate) / 100).quantize(CENTS, rounding=ROUND_HALF_UP)


class ReferralLedger:
    """Single writer of referral records and their commission amounts."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        notifier: Optional[NotificationSender] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier

    def create_referral(self, request: CreateReferralRequest) -> ReferralResponse:
        if not request.affiliate_code or not request.conversion_type:
            raise ValidationError("affiliate_code and conversion_type are required")

        def work(session: Session) -> Referral:
            affiliate = load_active_affiliate_by_code(session, request.affiliate_code)
            # Rate is snapshotted so later rate changes leave this record alone
            rate = affiliate.commission_rate
            now = utcnow()
            row = ReferralRow(
                affiliate_id=affiliate.id,
                referred_user_id=request.referred_user_id,
                order_id=request.order_id,
                order_amount=request.order_amount,
                commission_amount=calculate_commission(request.order_amount, rate),
                commission_rate=rate,
                conversion_type=request.conversion_type.value,
                status=ReferralStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)

            if request.referred_user_id:
                visit = attribute_latest_visit(session, affiliate.id)
                if visit is not None:
                    row.visit_id = visit.id
                else:
                    logger.info(f"No unconverted visit to attribute for affiliate {affiliate.id}")

            session.flush()
            return Referral.model_validate(row)

        referral = run_in_transaction(self.session_factory, work)
        logger.info(
            f"Created {referral.conversion_type.value} referral {referral.id} "
            f"for affiliate {referral.affiliate_id}, commission {referral.commission_amount}"
        )
        return ReferralResponse(message="Referral created successfully", data=referral)

    def process_conversion(
        self,
        request: ProcessConversionRequest,
        dispatch: Optional[Dispatch] = None,
    ) -> ReferralResponse:
        if not request.referral_id or not request.status:
            raise ValidationError("referral_id and status are required")
        if request.status not in [d.value for d in DECISIONS]:
            raise ValidationError("Status must be 'approved' or 'rejected'")
        decision = ReferralStatus(request.status)

        def work(session: Session) -> tuple[Referral, Optional[ReferralNotice]]:
            row = session.get(ReferralRow, request.referral_id)
            if row is None:
                raise ReferralNotFoundError(f"Referral {request.referral_id} not found")

            current = Referral.model_validate(row)
            if not current.can_transition_to(decision):
                raise InvalidTransitionError(
                    f"Cannot mark referral {row.id} {decision.value}, it is already {current.status.value}"
                )

            applied = current.status == ReferralStatus.PENDING
            if applied:
                result = session.execute(
                    update(ReferralRow)
                    .where(ReferralRow.id == row.id, ReferralRow.status == ReferralStatus.PENDING.value)
                    .values(status=decision.value, notes=request.notes, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrentUpdateError(f"Referral {row.id} was decided concurrently")
                session.refresh(row)

            affiliate = load_affiliate(session, row.affiliate_id)
            if decision == ReferralStatus.APPROVED:
                # A full recompute, so replaying an approval cannot double count
                recompute_totals(session, affiliate)

            notice = None
            if applied:
                notice = ReferralNotice(
                    email=affiliate.email,
                    status=decision.value,
                    commission_amount=row.commission_amount,
                    affiliate_code=affiliate.affiliate_code,
                )
            return Referral.model_validate(row), notice

        referral, notice = run_in_transaction(self.session_factory, work)

        if notice is None:
            logger.info(f"Referral {referral.id} already {decision.value}, nothing to apply")
            return ReferralResponse(message=f"Referral already {decision.value}", data=referral)

        logger.info(f"Referral {referral.id} {decision.value}")
        if self.notifier is not None:
            (dispatch or dispatch_inline)(self.notifier.deliver_referral_update, notice)
        return ReferralResponse(message=f"Referral {decision.value} successfully", data=referral)

    def get_referral(self, referral_id: UUID) -> Referral:
        with self.session_factory() as session:
            row = session.get(ReferralRow, referral_id)
            if row is None:
                raise ReferralNotFoundError(f"Referral {referral_id} not found")
            return Referral.model_validate(row)
