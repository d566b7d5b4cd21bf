"""Outbox draining of order.created notifications."""

import json
from unittest.mock import MagicMock, patch

import requests

from kcs.models import WebhookOutbox
from kcs.models.webhook_outbox import OutboxStatus
from kcs.services.webhooks import SIGNATURE_HEADER, sign_body
from kcs.tasks.outbox import drain_outbox, drain_outbox_task


def ok_response(status_code=200):
    response = MagicMock()
    response.status_code = status_code
    return response


def outbox_row(db) -> WebhookOutbox:
    db.expire_all()
    return db.query(WebhookOutbox).one()


@patch("kcs.services.webhooks.requests.post")
def test_pending_row_is_delivered(mock_post, submit, db, test_settings):
    mock_post.return_value = ok_response()
    order_id = submit()

    counts = drain_outbox(db, test_settings)

    assert counts["delivered"] == 1
    row = outbox_row(db)
    assert row.status == OutboxStatus.DELIVERED
    assert row.attempts == 1
    assert row.delivered_at is not None

    body = mock_post.call_args.kwargs["data"]
    assert mock_post.call_args.kwargs["headers"][SIGNATURE_HEADER] == sign_body(body, "webhook-secret")
    assert row.signature == sign_body(body, "webhook-secret")
    payload = json.loads(body)
    assert payload["event"] == "order.created"
    assert payload["order_id"] == str(order_id)


@patch("kcs.services.webhooks.requests.post")
def test_delivered_rows_are_not_sent_again(mock_post, submit, db, test_settings):
    mock_post.return_value = ok_response()
    submit()

    drain_outbox(db, test_settings)
    drain_outbox(db, test_settings)

    assert mock_post.call_count == 1


@patch("kcs.services.webhooks.requests.post")
def test_failure_is_retried_until_max_attempts(mock_post, submit, db, test_settings):
    mock_post.side_effect = requests.ConnectionError("refused")
    submit()
    app_settings = test_settings.model_copy(update={"OUTBOX_MAX_ATTEMPTS": 2})

    first = drain_outbox(db, app_settings)
    row = outbox_row(db)
    assert first["pending"] == 1
    assert row.status == OutboxStatus.PENDING
    assert "refused" in row.last_error

    second = drain_outbox(db, app_settings)
    row = outbox_row(db)
    assert second["failed"] == 1
    assert row.status == OutboxStatus.FAILED
    assert row.attempts == 2

    drain_outbox(db, app_settings)
    assert mock_post.call_count == 2


@patch("kcs.services.webhooks.requests.post")
def test_http_error_keeps_row_pending(mock_post, submit, db, test_settings):
    mock_post.return_value = ok_response(500)
    submit()

    drain_outbox(db, test_settings)

    row = outbox_row(db)
    assert row.status == OutboxStatus.PENDING
    assert row.last_error == "HTTP 500"


@patch("kcs.services.webhooks.requests.post")
def test_row_without_target_is_skipped(mock_post, submit, db, test_settings, partner):
    partner.webhook_url = None
    db.commit()
    submit()

    counts = drain_outbox(db, test_settings)

    assert counts["skipped"] == 1
    assert outbox_row(db).status == OutboxStatus.SKIPPED
    mock_post.assert_not_called()


@patch("kcs.services.webhooks.requests.post")
def test_beat_task_uses_worker_runtime(mock_post, submit, runtime, db):
    mock_post.return_value = ok_response()
    submit()

    with patch("kcs.tasks.outbox.get_runtime", return_value=runtime):
        counts = drain_outbox_task.run()

    assert counts["delivered"] == 1
    assert outbox_row(db).status == OutboxStatus.DELIVERED
