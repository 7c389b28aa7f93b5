"""
Disbursement orchestrator tests
Testing: online and manual payouts, budget exhaustion, cancel/failure
compensation, retries, idempotent initiation, webhook parsing and signatures
"""
import json

import httpx
import pytest

from engine.disbursement_orchestrator import PAID_AFTER_RELEASE_ALERT_TYPE
from engine.exceptions import (
    BudgetExhausted,
    InvalidTransition,
    PaymentProviderError,
    PaymentStateError,
    PaymentValidationError,
    WebhookSignatureError,
)
from engine.payment_provider import (
    PayMongoProvider,
    compute_signature,
    parse_webhook_event,
    verify_webhook_signature,
)
from tests.factories import (
    BUDGET_TYPE,
    FINANCE,
    SCHOOL_YEAR,
    approved_application,
    run,
    seed_bucket,
    submit,
)


async def _bucket(engine):
    return await engine.ledger.get_bucket(BUDGET_TYPE, SCHOOL_YEAR)


class TestOnlineDisbursement:
    """process_grant → provider webhook"""

    def test_grant_paid_through_provider(self, engine):
        async def scenario():
            await seed_bucket(engine, total=100000)
            app_id = await approved_application(engine, requested_amount=15000, approved_amount=10000)
            started = await engine.orchestrator.process_grant(app_id, FINANCE, "gcash")
            during = await _bucket(engine)
            processing = await engine.lifecycle.get_application(app_id)
            paid = await engine.orchestrator.handle_provider_success(
                {"checkout_session_id": started["checkout_session_id"]}, "pay_123"
            )
            after = await _bucket(engine)
            doc = await engine.lifecycle.get_application(app_id)
            return started, during, processing, paid, after, doc

        started, during, processing, paid, after, doc = run(scenario())
        assert started["status"] == "processing"
        assert started["checkout_session_id"].startswith("mock_")
        assert started["checkout_url"].startswith("http://frontend.test/")
        assert started["application_status"] == "grants_processing"
        assert processing["active_payment_id"] == started["payment_id"]
        assert during["allocated_budget"] == 10000.0
        assert paid["status"] == "completed"
        assert paid["provider_payment_id"] == "pay_123"
        assert paid["application_status"] == "grants_disbursed"
        assert after["allocated_budget"] == 0.0
        assert after["disbursed_budget"] == 10000.0
        assert after["remaining_budget"] == 90000.0
        assert doc["status"] == "grants_disbursed"
        assert doc["disbursed_payment_id"] == started["payment_id"]

    def test_duplicate_success_is_noop(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            await engine.orchestrator.process_grant(app_id, FINANCE)
            first = await engine.orchestrator.handle_provider_success({"application_id": app_id}, "pay_1")
            second = await engine.orchestrator.handle_provider_success({"application_id": app_id}, "pay_1")
            return first, second, await _bucket(engine)

        first, second, bucket = run(scenario())
        assert first["changed"] is True
        assert second["changed"] is False
        assert bucket["disbursed_budget"] == 10000.0

    def test_provider_failure_event_returns_to_approved(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            started = await engine.orchestrator.process_grant(app_id, FINANCE)
            failed = await engine.orchestrator.handle_provider_failure(
                {"transaction_reference": started["transaction_reference"]}, "insufficient wallet balance"
            )
            return app_id, failed, await _bucket(engine)

        app_id, failed, bucket = run(scenario())
        assert failed["status"] == "failed"
        assert failed["failure_reason"] == "insufficient wallet balance"
        assert failed["application_status"] == "approved"
        assert bucket["allocated_budget"] == 0.0
        assert bucket["remaining_budget"] == 100000.0

    def test_checkout_failure_is_compensated(self, engine):
        engine.orchestrator.provider.fail_with = "gateway unavailable"

        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            with pytest.raises(PaymentProviderError):
                await engine.orchestrator.process_grant(app_id, FINANCE, "gcash")
            records = await engine.orchestrator.get_payment_records(app_id)
            return await engine.lifecycle.get_application(app_id), records, await _bucket(engine)

        doc, records, bucket = run(scenario())
        assert doc["status"] == "approved"
        assert doc.get("active_payment_id") is None
        assert [r["status"] for r in records] == ["failed"]
        assert bucket["allocated_budget"] == 0.0
        assert bucket["reservation_counts"]["released"] == 1


class TestManualDisbursement:
    """confirm_disbursement"""

    def test_receipt_required(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            await engine.orchestrator.process_grant(app_id, FINANCE, "cash")
            with pytest.raises(PaymentValidationError):
                await engine.orchestrator.confirm_disbursement(app_id, FINANCE, "OR-2025-001")
            with pytest.raises(PaymentValidationError):
                await engine.orchestrator.confirm_disbursement(app_id, FINANCE, None, "RCPT-1")
            return await engine.lifecycle.get_application(app_id)

        assert run(scenario())["status"] == "grants_processing"

    def test_cash_payout_confirmed_once(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            started = await engine.orchestrator.process_grant(app_id, FINANCE, "cash")
            confirmed = await engine.orchestrator.confirm_disbursement(app_id, FINANCE, "OR-2025-001", "RCPT-1")
            repeat = await engine.orchestrator.confirm_disbursement(app_id, FINANCE, "OR-2025-001", "RCPT-1")
            return started, confirmed, repeat, await _bucket(engine)

        started, confirmed, repeat, bucket = run(scenario())
        assert started["status"] == "initiated"
        assert started["payment_provider"] == "manual"
        assert started["checkout_session_id"] is None
        assert confirmed["status"] == "completed"
        assert confirmed["receipt_reference"] == "RCPT-1"
        assert confirmed["disbursed_by"] == FINANCE.user_id
        assert repeat["changed"] is False
        assert repeat["application_status"] == "grants_disbursed"
        assert bucket["disbursed_budget"] == 10000.0

    def test_confirm_before_processing(self, engine):
        async def scenario():
            app_id = await approved_application(engine)
            await engine.orchestrator.confirm_disbursement(app_id, FINANCE, "OR-1", "RCPT-1")

        with pytest.raises(InvalidTransition):
            run(scenario())


class TestReceiptPolicy:
    """require_receipt_for_manual disabled"""

    @pytest.fixture
    def policy_overrides(self):
        return {"require_receipt_for_manual": False}

    def test_confirm_without_receipt(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            await engine.orchestrator.process_grant(app_id, FINANCE, "bank_transfer")
            return await engine.orchestrator.confirm_disbursement(app_id, FINANCE, "BT-778")

        assert run(scenario())["status"] == "completed"


class TestInitiationGuards:
    """Preconditions of process_grant"""

    def test_budget_exhausted_leaves_application_approved(self, engine):
        async def scenario():
            await seed_bucket(engine, total=5000)
            app_id = await approved_application(engine, approved_amount=10000)
            with pytest.raises(BudgetExhausted) as exc:
                await engine.orchestrator.process_grant(app_id, FINANCE)
            doc = await engine.lifecycle.get_application(app_id)
            records = await engine.orchestrator.get_payment_records(app_id)
            return exc.value, doc, records

        error, doc, records = run(scenario())
        assert error.details["remaining"] == 5000.0
        assert doc["status"] == "approved"
        assert records == []

    def test_requires_approved_application(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await submit(engine)
            await engine.orchestrator.process_grant(app_id, FINANCE)

        with pytest.raises(InvalidTransition):
            run(scenario())

    def test_unsupported_method(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            await engine.orchestrator.process_grant(app_id, FINANCE, "crypto")

        with pytest.raises(PaymentValidationError):
            run(scenario())

    def test_same_operation_id_replays(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            first = await engine.orchestrator.process_grant(app_id, FINANCE, operation_id="op-grant-1")
            second = await engine.orchestrator.process_grant(app_id, FINANCE, operation_id="op-grant-1")
            records = await engine.orchestrator.get_payment_records(app_id)
            return first, second, records, await _bucket(engine)

        first, second, records, bucket = run(scenario())
        assert second["idempotent_replay"] is True
        assert second["payment_id"] == first["payment_id"]
        assert len(records) == 1
        assert bucket["allocated_budget"] == 10000.0

    def test_second_grant_without_operation_id_rejected(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            await engine.orchestrator.process_grant(app_id, FINANCE)
            await engine.orchestrator.process_grant(app_id, FINANCE)

        with pytest.raises(InvalidTransition):
            run(scenario())


class TestCancelAndRetry:
    """Payer cancellation and new attempts"""

    def test_double_cancel(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            started = await engine.orchestrator.process_grant(app_id, FINANCE)
            first = await engine.orchestrator.handle_provider_cancel({"application_id": app_id})
            second = await engine.orchestrator.handle_provider_cancel(
                {"checkout_session_id": started["checkout_session_id"]}
            )
            return first, second, await _bucket(engine)

        first, second, bucket = run(scenario())
        assert first["status"] == "reverted"
        assert first["payment_status"] == "cancelled"
        assert first["application_status"] == "approved"
        assert second["status"] == "not_applicable"
        assert second["message"] == "no reversion needed"
        assert bucket["allocated_budget"] == 0.0
        assert bucket["reservation_counts"]["released"] == 1

    def test_cancel_after_disbursement_is_not_applicable(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            await engine.orchestrator.process_grant(app_id, FINANCE)
            await engine.orchestrator.handle_provider_success({"application_id": app_id}, "pay_9")
            return await engine.orchestrator.handle_provider_cancel({"application_id": app_id}), await _bucket(engine)

        result, bucket = run(scenario())
        assert result["status"] == "not_applicable"
        assert bucket["disbursed_budget"] == 10000.0

    def test_failure_after_completion_rejected(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            started = await engine.orchestrator.process_grant(app_id, FINANCE)
            await engine.orchestrator.handle_provider_success({"application_id": app_id}, "pay_9")
            await engine.orchestrator.handle_provider_failure(
                {"checkout_session_id": started["checkout_session_id"]}, "late failure"
            )

        with pytest.raises(PaymentStateError):
            run(scenario())

    def test_retry_creates_new_attempt(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            first = await engine.orchestrator.process_grant(app_id, FINANCE)
            await engine.orchestrator.handle_provider_failure({"application_id": app_id}, "timeout")
            retried = await engine.orchestrator.retry_payment(first["payment_id"], FINANCE, "paymaya")
            with pytest.raises(PaymentStateError):
                await engine.orchestrator.retry_payment(first["payment_id"], FINANCE)
            records = await engine.orchestrator.get_payment_records(app_id)
            doc = await engine.lifecycle.get_application(app_id)
            return first, retried, records, doc, await _bucket(engine)

        first, retried, records, doc, bucket = run(scenario())
        assert retried["attempt"] == 2
        assert retried["retry_count"] == 1
        assert retried["retry_of"] == first["payment_id"]
        assert retried["payment_method"] == "paymaya"
        assert records[0]["superseded_by"] == retried["payment_id"]
        assert doc["status"] == "grants_processing"
        assert doc["active_payment_id"] == retried["payment_id"]
        assert bucket["allocated_budget"] == 10000.0

    def test_redelivered_cancel_after_retry(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            started = await engine.orchestrator.process_grant(app_id, FINANCE)
            first = await engine.orchestrator.handle_provider_cancel(
                {"checkout_session_id": started["checkout_session_id"]}
            )
            retried = await engine.orchestrator.retry_payment(started["payment_id"], FINANCE)
            again = await engine.orchestrator.handle_provider_cancel(
                {"checkout_session_id": started["checkout_session_id"], "application_id": app_id}
            )
            records = await engine.orchestrator.get_payment_records(app_id)
            doc = await engine.lifecycle.get_application(app_id)
            return started, first, retried, again, records, doc, await _bucket(engine)

        started, first, retried, again, records, doc, bucket = run(scenario())
        assert first["status"] == "reverted"
        assert again["status"] == "not_applicable"
        assert again["payment_id"] == started["payment_id"]
        assert doc["status"] == "grants_processing"
        assert doc["active_payment_id"] == retried["payment_id"]
        assert [r["status"] for r in records] == ["cancelled", "processing"]
        assert bucket["allocated_budget"] == 10000.0

    def test_stale_failure_leaves_new_attempt(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            started = await engine.orchestrator.process_grant(app_id, FINANCE)
            await engine.orchestrator.handle_provider_failure(
                {"checkout_session_id": started["checkout_session_id"]}, "timeout"
            )
            retried = await engine.orchestrator.retry_payment(started["payment_id"], FINANCE)
            stale = await engine.orchestrator.handle_provider_failure(
                {"checkout_session_id": started["checkout_session_id"]}, "timeout"
            )
            retry_record = await engine.orchestrator.get_payment(retried["payment_id"])
            return stale, retry_record, await _bucket(engine)

        stale, retry_record, bucket = run(scenario())
        assert stale["status"] == "failed"
        assert stale["application_status"] == "grants_processing"
        assert retry_record["status"] == "processing"
        assert bucket["allocated_budget"] == 10000.0

    def test_retry_of_processing_payment_rejected(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            started = await engine.orchestrator.process_grant(app_id, FINANCE)
            await engine.orchestrator.retry_payment(started["payment_id"], FINANCE)

        with pytest.raises(PaymentStateError):
            run(scenario())


class TestPaidAfterRelease:
    """Provider reports money collected for an attempt already cancelled"""

    def test_alert_raised_once_and_nothing_committed(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            started = await engine.orchestrator.process_grant(app_id, FINANCE)
            await engine.orchestrator.handle_provider_cancel({"application_id": app_id})
            paid = await engine.orchestrator.handle_provider_success(
                {"checkout_session_id": started["checkout_session_id"]}, "pay_late"
            )
            again = await engine.orchestrator.handle_provider_success(
                {"checkout_session_id": started["checkout_session_id"]}, "pay_late"
            )
            alerts = await engine.db.alerts.find({"alert_type": PAID_AFTER_RELEASE_ALERT_TYPE}).to_list(length=None)
            doc = await engine.lifecycle.get_application(app_id)
            return started, paid, again, alerts, doc, await _bucket(engine)

        started, paid, again, alerts, doc, bucket = run(scenario())
        assert paid["status"] == "cancelled"
        assert paid["changed"] is False
        assert paid["alert"] == PAID_AFTER_RELEASE_ALERT_TYPE
        assert paid["application_status"] == "approved"
        assert again["changed"] is False
        assert len(alerts) == 1
        assert alerts[0]["severity"] == "CRITICAL"
        assert alerts[0]["details"]["payment_id"] == started["payment_id"]
        assert alerts[0]["details"]["provider_payment_id"] == "pay_late"
        assert doc["status"] == "approved"
        assert bucket["disbursed_budget"] == 0.0
        assert bucket["allocated_budget"] == 0.0

    def test_webhook_acknowledged(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            started = await engine.orchestrator.process_grant(app_id, FINANCE)
            await engine.orchestrator.handle_provider_failure({"application_id": app_id}, "expired")
            event = parse_webhook_event({
                "data": {"attributes": {
                    "type": "checkout_session.payment.paid",
                    "data": {"id": started["checkout_session_id"], "attributes": {"payments": [{"id": "pay_2"}]}},
                }}
            })
            return await engine.orchestrator.handle_webhook_event(event)

        result = run(scenario())
        assert result["status"] == "processed"
        assert result["payment"]["status"] == "failed"
        assert result["payment"]["alert"] == PAID_AFTER_RELEASE_ALERT_TYPE


class TestWebhookEvents:
    """Provider payload handling"""

    def _payload(self, event_type, application_id, session_id="cs_abc123"):
        return {
            "data": {
                "id": "evt_1",
                "attributes": {
                    "type": event_type,
                    "data": {
                        "id": session_id,
                        "attributes": {
                            "payments": [{"id": "pay_777"}],
                            "amount": 1000000,
                            "metadata": {"application_id": application_id, "transaction_reference": "TXN-1"},
                        },
                    },
                },
            }
        }

    def test_parse_checkout_paid(self):
        event = parse_webhook_event(self._payload("checkout_session.payment.paid", "app-1"))
        assert event.is_success
        assert event.checkout_session_id == "cs_abc123"
        assert event.payment_id == "pay_777"
        assert event.application_id == "app-1"
        assert event.transaction_reference == "TXN-1"
        assert event.amount == 10000

    def test_parse_payment_failed(self):
        payload = {
            "data": {
                "attributes": {
                    "type": "payment.failed",
                    "data": {"id": "pay_1", "attributes": {"failed_message": "card declined", "metadata": {}}},
                }
            }
        }
        event = parse_webhook_event(payload)
        assert event.is_failure
        assert event.payment_id == "pay_1"
        assert event.failure_reason == "card declined"

    def test_webhook_dispatch(self, engine):
        async def scenario():
            await seed_bucket(engine)
            app_id = await approved_application(engine)
            await engine.orchestrator.process_grant(app_id, FINANCE)
            ignored = await engine.orchestrator.handle_webhook_event(
                parse_webhook_event(self._payload("source.chargeable", app_id))
            )
            processed = await engine.orchestrator.handle_webhook_event(
                parse_webhook_event(self._payload("checkout_session.payment.paid", app_id))
            )
            return ignored, processed

        ignored, processed = run(scenario())
        assert ignored["status"] == "ignored"
        assert processed["status"] == "processed"
        assert processed["payment"]["application_status"] == "grants_disbursed"

    def test_signature_verification(self):
        body = json.dumps({"data": {}}).encode()
        signature = compute_signature("whsk_test", "1700000000", body)
        assert verify_webhook_signature(f"t=1700000000,te={signature},li=", body, "whsk_test")
        assert verify_webhook_signature(f"t=1700000000,te=,li={signature}", body, "whsk_test")
        assert verify_webhook_signature(None, body, None)
        with pytest.raises(WebhookSignatureError):
            verify_webhook_signature(f"t=1700000000,te={signature}", body + b" ", "whsk_test")
        with pytest.raises(WebhookSignatureError):
            verify_webhook_signature(None, body, "whsk_test")
        with pytest.raises(WebhookSignatureError):
            verify_webhook_signature(f"te={signature}", body, "whsk_test")


class TestPayMongoCheckout:
    """PayMongo request building over a mocked transport"""

    APPLICATION = {"_id": "65a000000000000000000001", "application_number": "SCH-2025-0001", "student_id": "s-1"}

    def test_payload_in_centavos(self):
        provider = PayMongoProvider("sk_test", frontend_url="http://frontend.test")
        payload = provider.build_checkout_payload(self.APPLICATION, 10000.5, "TXN-1", "gcash")
        attributes = payload["data"]["attributes"]
        assert attributes["amount"] == 1000050
        assert attributes["currency"] == "PHP"
        assert attributes["payment_method_types"] == ["card", "gcash"]
        assert attributes["metadata"]["transaction_reference"] == "TXN-1"

    def test_checkout_session_created(self):
        def handler(request):
            assert request.url.path.endswith("/checkout_sessions")
            return httpx.Response(200, json={
                "data": {"id": "cs_live_1", "attributes": {"checkout_url": "https://checkout.test/cs_live_1"}}
            })

        provider = PayMongoProvider("sk_test", transport=httpx.MockTransport(handler))
        session = run(provider.create_checkout_session(self.APPLICATION, 2500, "TXN-2", "card"))
        assert session.session_id == "cs_live_1"
        assert session.checkout_url == "https://checkout.test/cs_live_1"
        assert session.reference_number == "TXN-2"

    def test_provider_error_status(self):
        provider = PayMongoProvider(
            "sk_test", transport=httpx.MockTransport(lambda request: httpx.Response(400, json={"errors": []}))
        )
        with pytest.raises(PaymentProviderError) as exc:
            run(provider.create_checkout_session(self.APPLICATION, 2500, "TXN-3", "card"))
        assert exc.value.details["status_code"] == 400
