import json
from decimal import Decimal

import httpx
import pytest

from affiliate_ledger.errors import NotificationError
from affiliate_ledger.models import ProcessWithdrawalRequest, RequestWithdrawalRequest, WithdrawalStatus
from affiliate_ledger.notifications import NotificationSender, WithdrawalNotice
from affiliate_ledger.service import AffiliateLedger

NOTICE = WithdrawalNotice(email="smx10@example.com", status="completed", amount=Decimal("50.00"), affiliate_code="SMX10")


def sender_with(handler, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return NotificationSender(
        withdrawal_url="https://notify.example.com/send-withdrawal-notification",
        client=client,
        **kwargs,
    )


class TestNotificationSender:

    def test_posts_payload_with_bearer_key(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"success": True})

        sender_with(handler, api_key="secret").send_withdrawal_update(NOTICE)

        assert seen[0].headers["Authorization"] == "Bearer secret"
        assert json.loads(seen[0].content) == {
            "email": "smx10@example.com",
            "status": "completed",
            "amount": "50.00",
            "affiliateCode": "SMX10",
        }

    def test_error_status_raises(self):
        sender = sender_with(lambda request: httpx.Response(502, text="bad gateway"))

        with pytest.raises(NotificationError):
            sender.send_withdrawal_update(NOTICE)

    def test_transport_failure_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(NotificationError):
            sender_with(handler).send_withdrawal_update(NOTICE)

    def test_deliver_swallows_failures(self):
        sender = sender_with(lambda request: httpx.Response(500))

        assert sender.deliver_withdrawal_update(NOTICE) is False

    def test_unconfigured_endpoint_is_skipped(self):
        def handler(request):
            raise AssertionError("should not be called")

        client = httpx.Client(transport=httpx.MockTransport(handler))
        sender = NotificationSender(client=client)

        assert sender.deliver_withdrawal_update(NOTICE) is True


class TestNotificationFailureDoesNotFailLedger:

    def test_withdrawal_stands_when_notification_fails(self, session_factory, make_affiliate, earn):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="mail service down")

        failing = AffiliateLedger(session_factory=session_factory, notifier=sender_with(handler))
        affiliate = make_affiliate("SMX10", rate="10")
        earn("SMX10", "800")
        withdrawal = failing.request_withdrawal(RequestWithdrawalRequest(
            affiliate_id=affiliate.id,
            amount=Decimal("50"),
        )).data

        response = failing.process_withdrawal(ProcessWithdrawalRequest(
            withdrawal_id=withdrawal.id,
            status=WithdrawalStatus.COMPLETED,
        ))

        assert len(calls) == 1
        assert response.success is True
        assert response.data.status == WithdrawalStatus.COMPLETED
        assert failing.registry.get_affiliate(affiliate.id).total_earnings == Decimal("30")
