import logging
from decimal import Decimal
from typing import Any, Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .config import Settings, get_settings
from .errors import NotificationError

logger = logging.getLogger(__name__)

# Schedules a callable with its arguments, e.g. BackgroundTasks.add_task
Dispatch = Callable[..., Any]


def dispatch_inline(task: Callable[..., Any], *args: Any) -> None:
    task(*args)


class WithdrawalNotice(BaseModel):
    email: str
    status: str
    amount: Decimal
    affiliate_code: str = Field(alias="affiliateCode")

    model_config = ConfigDict(populate_by_name=True)


class ReferralNotice(BaseModel):
    email: str
    status: str
    commission_amount: Decimal = Field(alias="commissionAmount")
    affiliate_code: str = Field(alias="affiliateCode")

    model_config = ConfigDict(populate_by_name=True)


class NotificationSender:
    """
    Client for the external notification collaborator.

    Delivery is advisory: ``deliver_*`` log and swallow NotificationError so
    a ledger outcome never depends on whether the affiliate was told.
    """

    def __init__(
        self,
        withdrawal_url: Optional[str] = None,
        referral_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.withdrawal_url = withdrawal_url
        self.referral_url = referral_url
        self.api_key = api_key
        self.timeout = timeout
        self.client = client

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "NotificationSender":
        settings = settings or get_settings()
        return cls(
            withdrawal_url=settings.NOTIFICATION_URL,
            referral_url=settings.REFERRAL_NOTIFICATION_URL,
            api_key=settings.NOTIFICATION_API_KEY,
            timeout=settings.NOTIFICATION_TIMEOUT,
        )

    def send_withdrawal_update(self, notice: WithdrawalNotice) -> None:
        self._post(self.withdrawal_url, notice.model_dump(mode="json", by_alias=True))

    def send_referral_update(self, notice: ReferralNotice) -> None:
        self._post(self.referral_url, notice.model_dump(mode="json", by_alias=True))

    def deliver_withdrawal_update(self, notice: WithdrawalNotice) -> bool:
        try:
            self.send_withdrawal_update(notice)
            return True
        except NotificationError as e:
            logger.error(f"Failed to send withdrawal notification to {notice.email}: {e}")
            return False

    def deliver_referral_update(self, notice: ReferralNotice) -> bool:
        try:
            self.send_referral_update(notice)
            return True
        except NotificationError as e:
            logger.error(f"Failed to send referral notification to {notice.email}: {e}")
            return False

    def _post(self, url: Optional[str], payload: dict) -> None:
        if not url:
            logger.info("Notification endpoint not configured, skipping delivery")
            return

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            if self.client is not None:
                response = self.client.post(url, json=payload, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationError(
                f"Notification endpoint returned {e.response.status_code}: {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise NotificationError(f"Notification request failed: {e}") from e
