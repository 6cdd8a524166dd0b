"""Tests for the email service, the email worker and payment-webhook reconciliation."""

import smtplib
from unittest.mock import patch

import pytest

from indexnow_worker.errors import ExternalServiceError, NotFoundError, PayloadValidationError
from indexnow_worker.queue.job_queue import Job
from indexnow_worker.services.email_service import EmailService
from indexnow_worker.workers.email import process_email
from indexnow_worker.workers.payments import process_payment_webhook


def make_job(queue, data, job_id="job-1") -> Job:
    return Job(id=job_id, name=queue, queue=queue, data=data, attempts_made=1, created_at="2024-03-01T00:00:00Z")


@pytest.mark.asyncio
async def test_email_worker_renders_and_sends_through_mock(worker_context):
    job = make_job("email", {
        "to": "jane.doe@customer.example.org",
        "subject": "Welcome aboard",
        "template": "package_activated",
        "data": {"customerName": "Jane", "packageName": "Pro"},
    })

    result = await process_email(job, worker_context)

    assert result == {"success": True, "provider": "mock", "to": "j***@customer.example.org", "template": "package_activated"}
    (mail,) = worker_context.email_service.outbox
    assert mail["to"] == "jane.doe@customer.example.org"
    assert "Jane" in mail["html_body"]
    assert "Pro" in mail["html_body"]


@pytest.mark.asyncio
async def test_email_worker_rejects_invalid_payload_without_sending(worker_context):
    job = make_job("email", {"subject": "No recipient", "template": "order_expired"})
    with pytest.raises(PayloadValidationError):
        await process_email(job, worker_context)
    assert worker_context.email_service.outbox == []


@pytest.mark.asyncio
async def test_missing_template_data_is_permanent(settings):
    service = EmailService(settings)
    with pytest.raises(PayloadValidationError):
        await service.send_email("a@customer.example.org", "Expired", "order_expired", {"customerName": "A"})


@pytest.mark.asyncio
async def test_smtp_failure_is_transient(settings):
    settings.email_provider = "smtp"
    settings.smtp_host = "smtp.example.org"
    service = EmailService(settings)

    with patch("indexnow_worker.services.email_service.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, b"busy")):
        with pytest.raises(ExternalServiceError):
            await service.send_email("a@customer.example.org", "Hi", "login_notification", {"loginTime": "now"})


@pytest.fixture
def pending_order(fake_db):
    row = {
        "id": "tx-1",
        "user_id": "user-1",
        "order_id": "ORDER-1",
        "transaction_status": "pending",
        "gateway_transaction_id": None,
        "payment_method": None,
        "processed_at": None,
    }
    fake_db.rows("indb_payment_transactions").append(row)
    return row


def webhook(status, order_id="ORDER-1"):
    return make_job("payments", {
        "orderId": order_id,
        "transactionId": "gw-123",
        "status": status,
        "paymentType": "bank_transfer",
        "webhookData": {"fraud_status": "accept"},
    })


@pytest.mark.asyncio
@pytest.mark.parametrize("gateway_status,expected", [
    ("settlement", "completed"),
    ("expire", "cancelled"),
    ("cancel", "cancelled"),
    ("deny", "failed"),
])
async def test_webhook_status_mapping(worker_context, pending_order, gateway_status, expected):
    result = await process_payment_webhook(webhook(gateway_status), worker_context)

    assert result == {"orderId": "ORDER-1", "status": expected, "updated": True}
    assert pending_order["transaction_status"] == expected
    assert pending_order["gateway_transaction_id"] == "gw-123"
    assert pending_order["payment_method"] == "bank_transfer"
    assert pending_order["processed_at"] is not None


@pytest.mark.asyncio
async def test_pending_webhook_changes_nothing(worker_context, pending_order, fake_db):
    result = await process_payment_webhook(webhook("pending"), worker_context)

    assert result["updated"] is False
    assert pending_order["transaction_status"] == "pending"
    assert ("update", "indb_payment_transactions") not in fake_db.calls


@pytest.mark.asyncio
async def test_redelivered_webhook_does_not_overwrite_terminal_state(worker_context, pending_order):
    await process_payment_webhook(webhook("settlement"), worker_context)
    result = await process_payment_webhook(webhook("expire"), worker_context)

    assert result == {"orderId": "ORDER-1", "status": "completed", "updated": False}
    assert pending_order["transaction_status"] == "completed"


@pytest.mark.asyncio
async def test_unknown_order_is_not_found(worker_context, pending_order):
    with pytest.raises(NotFoundError):
        await process_payment_webhook(webhook("settlement", order_id="ORDER-404"), worker_context)
