import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import get_settings
from .db_models import utcnow
from .errors import (
    InvalidTransitionError,
    LedgerServiceError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)
from .logging_config import setup_logging
from .models import (
    AffiliateResponse,
    CreateReferralRequest,
    LeaderboardMetadata,
    LeaderboardUpdateResponse,
    ProcessConversionRequest,
    ProcessWithdrawalRequest,
    PublicLeaderboardResponse,
    ReferralResponse,
    RegisterAffiliateRequest,
    RequestWithdrawalRequest,
    TimeFrame,
    TrackVisitRequest,
    UpdateLeaderboardRequest,
    VisitResponse,
    WithdrawalResponse,
)
from .service import AffiliateLedger

logger = logging.getLogger(__name__)
settings = get_settings()

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}


@lru_cache()
def get_ledger() -> AffiliateLedger:
    return AffiliateLedger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} starting")
    yield


app = FastAPI(
    title=settings.APP_NAME,
    description="Affiliate referral, commission and withdrawal ledger",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError):
    if isinstance(exc, NotFoundError):
        return error_response(status.HTTP_404_NOT_FOUND, str(exc))
    if isinstance(exc, (ValidationError, InvalidTransitionError)):
        return error_response(status.HTTP_400_BAD_REQUEST, str(exc))
    if isinstance(exc, TransientStorageError):
        return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))
    logger.error(f"Ledger error for {request.method} {request.url}: {exc}")
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    )
    return error_response(status.HTTP_400_BAD_REQUEST, problems or "Invalid request")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == status.HTTP_404_NOT_FOUND and exc.detail == "Not Found":
        return error_response(status.HTTP_404_NOT_FOUND, "Unknown endpoint")
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.critical(f"Unhandled exception for request: {request.method} {request.url}", exc_info=exc)
    # Served outside the CORS middleware, so the header is added here
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": str(exc) or "Internal server error"},
        headers=CORS_HEADERS,
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "affiliate-ledger"}


@app.post("/register-affiliate", response_model=AffiliateResponse, tags=["Affiliates"])
def register_affiliate(
    request: RegisterAffiliateRequest, ledger: AffiliateLedger = Depends(get_ledger)
) -> AffiliateResponse:
    affiliate = ledger.register_affiliate(request)
    return AffiliateResponse(message="Affiliate registered successfully", data=affiliate)


@app.post("/track-visit", response_model=VisitResponse, tags=["Visits"])
def track_visit(request: TrackVisitRequest, ledger: AffiliateLedger = Depends(get_ledger)) -> VisitResponse:
    visit = ledger.record_visit(request)
    return VisitResponse(message="Visit recorded successfully", data=visit)


@app.post("/create-referral", response_model=ReferralResponse, tags=["Referrals"])
def create_referral(
    request: CreateReferralRequest, ledger: AffiliateLedger = Depends(get_ledger)
) -> ReferralResponse:
    return ledger.create_referral(request)


@app.post("/process-conversion", response_model=ReferralResponse, tags=["Referrals"])
def process_conversion(
    request: ProcessConversionRequest,
    background_tasks: BackgroundTasks,
    ledger: AffiliateLedger = Depends(get_ledger),
) -> ReferralResponse:
    return ledger.process_conversion(request, dispatch=background_tasks.add_task)


@app.post("/request-withdrawal", response_model=WithdrawalResponse, tags=["Withdrawals"])
def request_withdrawal(
    request: RequestWithdrawalRequest, ledger: AffiliateLedger = Depends(get_ledger)
) -> WithdrawalResponse:
    return ledger.request_withdrawal(request)


@app.post("/process-withdrawal", response_model=WithdrawalResponse, tags=["Withdrawals"])
def process_withdrawal(
    request: ProcessWithdrawalRequest,
    background_tasks: BackgroundTasks,
    ledger: AffiliateLedger = Depends(get_ledger),
) -> WithdrawalResponse:
    return ledger.process_withdrawal(request, dispatch=background_tasks.add_task)


@app.post("/update-leaderboard", response_model=LeaderboardUpdateResponse, tags=["Leaderboard"])
def update_leaderboard(
    request: Optional[UpdateLeaderboardRequest] = None,
    ledger: AffiliateLedger = Depends(get_ledger),
) -> LeaderboardUpdateResponse:
    force_update = request.force_update if request else False
    return ledger.update_leaderboard(force_update)


@app.get(
    "/leaderboard",
    response_model=PublicLeaderboardResponse,
    response_model_exclude_none=True,
    tags=["Leaderboard"],
)
def get_leaderboard(
    time_frame: TimeFrame = Query(TimeFrame.ALL, alias="timeFrame"),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    show_earnings: bool = Query(False, alias="showEarnings"),
    show_conversion: bool = Query(False, alias="showConversion"),
    ledger: AffiliateLedger = Depends(get_ledger),
) -> PublicLeaderboardResponse:
    page_size = min(limit or settings.LEADERBOARD_DEFAULT_LIMIT, settings.LEADERBOARD_MAX_LIMIT)
    entries = ledger.get_public_leaderboard(
        time_frame=time_frame,
        limit=page_size,
        offset=offset,
        show_earnings=show_earnings,
        show_conversion=show_conversion,
    )
    return PublicLeaderboardResponse(
        data=entries,
        metadata=LeaderboardMetadata(
            time_frame=time_frame,
            show_earnings=show_earnings,
            show_conversion=show_conversion,
            total_affiliates=len(entries),
            last_updated=utcnow(),
        ),
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
