"""Handoff status derivation, webhook delivery and metrics."""

import io
import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import EndpointConnectionError
from prometheus_client import REGISTRY

from kcs.core.exceptions import PipelineIntegrityError
from kcs.core.stages import STORY_ASSEMBLY, STORY_HANDOFF
from kcs.models import Event, Order, OrderStatus, PrintStatus, Story
from kcs.services.webhooks import SIGNATURE_HEADER, sign_body
from kcs.tasks.base import execute_stage
from kcs.tasks.handoff import handoff_status, run_handoff


def handoff_count(status: str, has_drive: str, has_webhook: str) -> float:
    value = REGISTRY.get_sample_value(
        "print_handoff_total",
        {"status": status, "has_drive": has_drive, "has_webhook": has_webhook},
    )
    return value or 0.0


def webhook_response(status_code=200):
    response = MagicMock()
    response.status_code = status_code
    return response


@pytest.fixture
def assembled_order(submit, run_stages):
    order_id = submit()
    run_stages(order_id, STORY_ASSEMBLY)
    return order_id


def configure_partner(db, partner, folder, webhook):
    partner.delivery_folder = folder
    partner.webhook_url = "https://partner.example.com/hooks/kcs" if webhook else None
    db.commit()


def run(order_id, runtime):
    return execute_stage(STORY_HANDOFF, order_id, run_handoff, runtime=runtime)


def load(db, order_id):
    db.expire_all()
    story = db.query(Story).filter(Story.order_id == order_id).one()
    order = db.query(Order).filter(Order.id == order_id).one()
    return order, story


class TestStatusRule:
    def test_handoff_status(self):
        assert handoff_status(has_folder=False, uploaded=0) == PrintStatus.COMPLETED
        assert handoff_status(has_folder=True, uploaded=2) == PrintStatus.COMPLETED
        assert handoff_status(has_folder=True, uploaded=1) == PrintStatus.PARTIAL_UPLOAD
        assert handoff_status(has_folder=True, uploaded=0) == PrintStatus.UPLOAD_FAILED


class TestUploadAndWebhookCombinations:
    @patch("kcs.services.webhooks.requests.post")
    def test_upload_ok_with_webhook(self, mock_post, assembled_order, runtime, db, partner):
        mock_post.return_value = webhook_response()
        configure_partner(db, partner, "acme/deliveries", webhook=True)

        run(assembled_order, runtime)

        order, story = load(db, assembled_order)
        assert story.print_status == PrintStatus.COMPLETED
        assert order.status == OrderStatus.FULFILLED
        assert story.print_meta.handoff.webhook_delivered is True

        mock_post.assert_called_once()
        body = mock_post.call_args.kwargs["data"]
        headers = mock_post.call_args.kwargs["headers"]
        assert headers[SIGNATURE_HEADER] == sign_body(body, "webhook-secret")
        payload = json.loads(body)
        assert payload["orderId"] == str(assembled_order)
        assert payload["orderNumber"] == "ACME-1001"
        assert payload["status"] == "completed"
        assert payload["coverSpreadUrl"] == story.print_meta.cover_spread
        assert payload["insideBookUrl"] == story.print_meta.inside_book_pdf
        assert payload["driveFolderId"] == "acme/deliveries"
        assert payload["driveFileIds"]["inside_book_pdf"].endswith(
            f"{assembled_order}/inside-book.pdf"
        )
        assert payload["completedAt"]

    @patch("kcs.services.webhooks.requests.post")
    def test_upload_ok_without_webhook(self, mock_post, assembled_order, runtime, db, partner, test_settings):
        configure_partner(db, partner, "acme/deliveries", webhook=False)

        run(assembled_order, runtime)

        _, story = load(db, assembled_order)
        assert story.print_status == PrintStatus.COMPLETED
        mock_post.assert_not_called()
        delivered = Path(test_settings.LOCAL_DELIVERY_PATH)
        assert (delivered / "acme/deliveries" / str(assembled_order) / "cover-spread.pdf").exists()

    @patch("kcs.services.webhooks.requests.post")
    def test_upload_failed_with_webhook(self, mock_post, assembled_order, runtime, db, partner):
        configure_partner(db, partner, "acme/deliveries", webhook=True)

        with patch.object(runtime.delivery, "upload", side_effect=OSError("bucket unavailable")):
            run(assembled_order, runtime)

        _, story = load(db, assembled_order)
        assert story.print_status == PrintStatus.UPLOAD_FAILED
        assert set(story.print_meta.handoff.upload_errors) == {"cover_spread", "inside_book_pdf"}
        mock_post.assert_not_called()

    @patch("kcs.services.webhooks.requests.post")
    def test_upload_failed_without_webhook(self, mock_post, assembled_order, runtime, db, partner):
        configure_partner(db, partner, "acme/deliveries", webhook=False)

        with patch.object(runtime.delivery, "upload", side_effect=OSError("bucket unavailable")):
            run(assembled_order, runtime)

        _, story = load(db, assembled_order)
        assert story.print_status == PrintStatus.UPLOAD_FAILED
        mock_post.assert_not_called()


class TestPartialAndFailures:
    @patch("kcs.services.webhooks.requests.post")
    def test_one_upload_failing_is_partial(self, mock_post, assembled_order, runtime, db, partner):
        mock_post.return_value = webhook_response()
        configure_partner(db, partner, "acme/deliveries", webhook=True)

        with patch.object(
            runtime.delivery, "upload", side_effect=["acme/deliveries/x/cover-spread.pdf", OSError("timeout")]
        ):
            run(assembled_order, runtime)

        order, story = load(db, assembled_order)
        assert story.print_status == PrintStatus.PARTIAL_UPLOAD
        assert order.status == OrderStatus.PRINT_SUBMITTED
        assert json.loads(mock_post.call_args.kwargs["data"])["status"] == "partial_upload"
        event_types = [e.type for e in db.query(Event).filter(Event.order_id == assembled_order)]
        assert "print.handoff_partial_upload" in event_types

    @patch("kcs.services.webhooks.requests.post")
    def test_s3_connection_error_on_one_download_is_partial(
        self, mock_post, assembled_order, runtime, db, partner
    ):
        mock_post.return_value = webhook_response()
        configure_partner(db, partner, "acme/deliveries", webhook=True)
        _, story = load(db, assembled_order)
        interior = runtime.storage.download(story.print_meta.inside_book_pdf)
        s3 = MagicMock()
        s3.get_object.side_effect = [
            EndpointConnectionError(endpoint_url="https://s3.example.com"),
            {"Body": io.BytesIO(interior)},
        ]

        with patch.object(runtime.storage, "use_local", False), \
                patch.object(runtime.storage, "s3_client", s3):
            run(assembled_order, runtime)

        order, story = load(db, assembled_order)
        assert story.print_status == PrintStatus.PARTIAL_UPLOAD
        assert order.status == OrderStatus.PRINT_SUBMITTED
        handoff = story.print_meta.handoff
        assert set(handoff.upload_errors) == {"cover_spread"}
        assert set(handoff.drive_file_ids) == {"inside_book_pdf"}

    @patch("kcs.services.webhooks.requests.post")
    def test_webhook_failure_does_not_change_status(self, mock_post, assembled_order, runtime, db, partner):
        mock_post.return_value = webhook_response(503)
        configure_partner(db, partner, "acme/deliveries", webhook=True)

        run(assembled_order, runtime)

        _, story = load(db, assembled_order)
        assert story.print_status == PrintStatus.COMPLETED
        assert story.print_meta.handoff.webhook_delivered is False

    def test_unexpected_error_forces_upload_failed(self, assembled_order, runtime, db, partner):
        configure_partner(db, partner, "acme/deliveries", webhook=True)
        before = handoff_count("upload_failed", "true", "true")

        with patch("kcs.tasks.handoff.send_signed_webhook", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                run(assembled_order, runtime)

        _, story = load(db, assembled_order)
        assert story.print_status == PrintStatus.UPLOAD_FAILED
        event_types = [e.type for e in db.query(Event).filter(Event.order_id == assembled_order)]
        assert "print.handoff_upload_failed" in event_types
        assert handoff_count("upload_failed", "true", "true") == before + 1

    def test_nothing_to_deliver(self, submit, runtime, run_stages, db):
        order_id = submit()
        run_stages(order_id, "story.polish")

        with pytest.raises(PipelineIntegrityError):
            run(order_id, runtime)

        _, story = load(db, order_id)
        assert story.print_status == PrintStatus.UPLOAD_FAILED

    def test_missing_interior_pdf_settles_upload_failed(self, assembled_order, runtime, db, partner):
        configure_partner(db, partner, "acme/deliveries", webhook=True)
        _, story = load(db, assembled_order)
        assert story.print_status == PrintStatus.ASSEMBLED
        story.print_metadata = {**story.print_metadata, "inside_book_pdf": None}
        db.commit()
        before = handoff_count("upload_failed", "true", "true")

        with patch("kcs.services.webhooks.requests.post") as mock_post:
            with pytest.raises(PipelineIntegrityError):
                run(assembled_order, runtime)
            mock_post.assert_not_called()

        _, story = load(db, assembled_order)
        assert story.print_status == PrintStatus.UPLOAD_FAILED
        event_types = [e.type for e in db.query(Event).filter(Event.order_id == assembled_order)]
        assert "print.handoff_upload_failed" in event_types
        assert handoff_count("upload_failed", "true", "true") == before + 1


class TestMetrics:
    @patch("kcs.services.webhooks.requests.post")
    def test_no_folder_with_webhook_records_one_observation(
        self, mock_post, assembled_order, runtime, db, partner
    ):
        mock_post.return_value = webhook_response()
        configure_partner(db, partner, None, webhook=True)
        before = handoff_count("completed", "false", "true")
        before_total = sum(
            handoff_count(status, drive, hook)
            for status in ("completed", "partial_upload", "upload_failed")
            for drive in ("true", "false")
            for hook in ("true", "false")
        )

        with patch.object(runtime.delivery, "upload") as upload:
            run(assembled_order, runtime)
            upload.assert_not_called()

        _, story = load(db, assembled_order)
        assert story.print_status == PrintStatus.COMPLETED
        mock_post.assert_called_once()
        assert handoff_count("completed", "false", "true") == before + 1
        after_total = sum(
            handoff_count(status, drive, hook)
            for status in ("completed", "partial_upload", "upload_failed")
            for drive in ("true", "false")
            for hook in ("true", "false")
        )
        assert after_total == before_total + 1
