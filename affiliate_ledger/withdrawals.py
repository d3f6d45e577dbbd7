"""
Withdrawal Processor

Settlement state machine::

    requested -> processing -> completed
        |             |
        +-------------+-----> failed

``completed`` and ``failed`` are terminal. Completion writes the new status
and decrements the affiliate's earnings in one transaction, both guarded by
compare-and-set, so a withdrawal is paid out of the balance exactly once.
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from .database import run_in_transaction
from .db_models import AffiliateRow, WithdrawalRow, utcnow
from .errors import (
    AffiliateNotFoundError,
    ConcurrentUpdateError,
    InsufficientBalanceError,
    InvalidTransitionError,
    ValidationError,
    WithdrawalNotFoundError,
)
from .models import (
    AffiliateStatus,
    ProcessWithdrawalRequest,
    RequestWithdrawalRequest,
    Withdrawal,
    WithdrawalResponse,
    WithdrawalStatus,
)
from .notifications import Dispatch, NotificationSender, WithdrawalNotice, dispatch_inline
from .registry import compare_and_set_totals, load_affiliate

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    WithdrawalStatus.REQUESTED: {
        WithdrawalStatus.PROCESSING,
        WithdrawalStatus.COMPLETED,
        WithdrawalStatus.FAILED,
    },
    WithdrawalStatus.PROCESSING: {WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED},
    WithdrawalStatus.COMPLETED: set(),
    WithdrawalStatus.FAILED: set(),
}


class WithdrawalProcessor:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        notifier: Optional[NotificationSender] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier

    def request_withdrawal(self, request: RequestWithdrawalRequest) -> WithdrawalResponse:
        if request.amount <= 0:
            raise ValidationError("amount must be greater than zero")

        def work(session: Session) -> Withdrawal:
            affiliate = load_affiliate(session, request.affiliate_id)
            if affiliate.status != AffiliateStatus.ACTIVE.value:
                raise ValidationError(f"Affiliate {affiliate.id} is {affiliate.status}")
            if request.amount > affiliate.total_earnings:
                raise InsufficientBalanceError(
                    f"Requested {request.amount} exceeds available earnings {affiliate.total_earnings}"
                )

            row = WithdrawalRow(
                affiliate_id=affiliate.id,
                amount=request.amount,
                method=request.method.value,
                payout_email=request.payout_email or affiliate.payout_email,
                status=WithdrawalStatus.REQUESTED.value,
                requested_at=utcnow(),
            )
            session.add(row)
            session.flush()
            return Withdrawal.model_validate(row)

        withdrawal = run_in_transaction(self.session_factory, work)
        logger.info(f"Withdrawal {withdrawal.id} of {withdrawal.amount} requested by {withdrawal.affiliate_id}")
        return WithdrawalResponse(message="Withdrawal requested successfully", data=withdrawal)

    def process_withdrawal(
        self,
        request: ProcessWithdrawalRequest,
        dispatch: Optional[Dispatch] = None,
    ) -> WithdrawalResponse:
        if not request.withdrawal_id or not request.status:
            raise ValidationError("withdrawal_id and status are required")
        target = request.status
        if target == WithdrawalStatus.REQUESTED:
            raise ValidationError("Status must be 'processing', 'completed' or 'failed'")

        def work(session: Session) -> tuple[Withdrawal, Optional[WithdrawalNotice]]:
            row = session.get(WithdrawalRow, request.withdrawal_id)
            if row is None:
                raise WithdrawalNotFoundError(f"Withdrawal {request.withdrawal_id} not found")
            affiliate = session.get(AffiliateRow, row.affiliate_id)
            if affiliate is None:
                raise AffiliateNotFoundError(f"Affiliate {row.affiliate_id} not found")

            current = WithdrawalStatus(row.status)
            if current == target:
                return Withdrawal.model_validate(row), None
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Cannot move withdrawal {row.id} from {current.value} to {target.value}"
                )

            if target == WithdrawalStatus.COMPLETED and row.amount > affiliate.total_earnings:
                raise InsufficientBalanceError(
                    f"Withdrawal amount {row.amount} exceeds available earnings {affiliate.total_earnings}"
                )

            values = {
                "status": target.value,
                "processed_at": row.processed_at or utcnow(),
            }
            if request.transaction_id is not None:
                values["transaction_id"] = request.transaction_id
            if request.notes is not None:
                values["notes"] = request.notes

            result = session.execute(
                update(WithdrawalRow)
                .where(WithdrawalRow.id == row.id, WithdrawalRow.status == current.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrentUpdateError(f"Withdrawal {row.id} changed concurrently")

            if target == WithdrawalStatus.COMPLETED:
                compare_and_set_totals(
                    session,
                    affiliate,
                    total_earnings=affiliate.total_earnings - Decimal(row.amount),
                )

            session.refresh(row)
            notice = WithdrawalNotice(
                email=affiliate.email,
                status=target.value,
                amount=row.amount,
                affiliate_code=affiliate.affiliate_code,
            )
            return Withdrawal.model_validate(row), notice

        withdrawal, notice = run_in_transaction(self.session_factory, work)

        if notice is None:
            logger.info(f"Withdrawal {withdrawal.id} already {target.value}, nothing to apply")
            return WithdrawalResponse(message=f"Withdrawal already {target.value}", data=withdrawal)

        logger.info(f"Withdrawal {withdrawal.id} {target.value}")
        if self.notifier is not None:
            (dispatch or dispatch_inline)(self.notifier.deliver_withdrawal_update, notice)
        return WithdrawalResponse(message=f"Withdrawal {target.value} successfully", data=withdrawal)

    def get_withdrawal(self, withdrawal_id: UUID) -> Withdrawal:
        with self.session_factory() as session:
            row = session.get(WithdrawalRow, withdrawal_id)
            if row is None:
                raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
            return Withdrawal.model_validate(row)
