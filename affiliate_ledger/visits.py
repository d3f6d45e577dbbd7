import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from .database import run_in_transaction
from .db_models import VisitRow, utcnow
from .errors import ValidationError
from .models import TrackVisitRequest, Visit
from .registry import load_active_affiliate_by_code

logger = logging.getLogger(__name__)

MOBILE_MARKERS = ("Mobile", "Android", "iPhone", "iPad")


def detect_device_type(user_agent: str) -> str:
    return "mobile" if any(marker in user_agent for marker in MOBILE_MARKERS) else "desktop"


def detect_browser(user_agent: str) -> str:
    # Edge and Chrome both advertise Safari; check the most specific token first
    if "Edg" in user_agent:
        return "Edge"
    if "Chrome" in user_agent:
        return "Chrome"
    if "Firefox" in user_agent:
        return "Firefox"
    if "Safari" in user_agent:
        return "Safari"
    return "Other"


def attribute_latest_visit(session: Session, affiliate_id: UUID) -> Optional[VisitRow]:
    """
    Mark the most recent unconverted visit of an affiliate as converted.

    The UPDATE re-checks ``converted = false`` so two concurrent conversions
    cannot both claim the same visit. A visit lost to another conversion is
    skipped and the next newest one is tried in the same transaction, so a
    race never aborts the caller. Returns None when there is nothing left
    to attribute.
    """
    lost: list[UUID] = []
    while True:
        query = (
            select(VisitRow)
            .where(VisitRow.affiliate_id == affiliate_id, VisitRow.converted.is_(False))
            .order_by(VisitRow.created_at.desc())
            .limit(1)
        )
        if lost:
            query = query.where(VisitRow.id.not_in(lost))
        candidate = session.scalar(query)
        if candidate is None:
            return None

        result = session.execute(
            update(VisitRow)
            .where(VisitRow.id == candidate.id, VisitRow.converted.is_(False))
            .values(converted=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            session.refresh(candidate)
            return candidate

        logger.debug(f"Visit {candidate.id} was attributed concurrently, trying the next one")
        lost.append(candidate.id)


class VisitTracker:
    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def record_visit(self, request: TrackVisitRequest) -> Visit:
        if not request.affiliate_code:
            raise ValidationError("affiliate_code is required")

        # total_visits catches up on the next recompute pass
        def work(session: Session) -> Visit:
            affiliate = load_active_affiliate_by_code(session, request.affiliate_code)
            user_agent = request.user_agent or ""
            row = VisitRow(
                affiliate_id=affiliate.id,
                page_url=request.page_url,
                referrer=request.referrer,
                user_agent=request.user_agent,
                device_type=detect_device_type(user_agent),
                browser=detect_browser(user_agent),
                converted=False,
                created_at=utcnow(),
            )
            session.add(row)
            session.flush()
            return Visit.model_validate(row)

        visit = run_in_transaction(self.session_factory, work)
        logger.debug(f"Recorded visit {visit.id} for affiliate {visit.affiliate_id}")
        return visit

    def get_visit(self, visit_id: UUID) -> Optional[Visit]:
        with self.session_factory() as session:
            row = session.get(VisitRow, visit_id)
            return Visit.model_validate(row) if row else None
