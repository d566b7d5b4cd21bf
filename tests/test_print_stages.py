"""Cover, interior, CMYK and assembly stages on small page geometry."""

from unittest.mock import patch

import pytest

from conftest import order_payload
from kcs.core.exceptions import PipelineIntegrityError, ProviderError
from kcs.core.stages import STORY_ASSEMBLY, STORY_CMYK, STORY_COVER, STORY_INTERIOR, STORY_POLISH
from kcs.models import Asset, OrderStatus, PrintConfig, PrintStatus, ProviderCall, Story
from kcs.models.order import Order
from kcs.services.print_finishing import open_image
from kcs.tasks.base import execute_stage
from kcs.tasks.print import run_cmyk, run_cover, run_interior


@pytest.fixture
def polished_order(submit, run_stages):
    order_id = submit()
    run_stages(order_id, STORY_POLISH)
    return order_id


def load_story(db, order_id) -> Story:
    db.expire_all()
    return db.query(Story).filter(Story.order_id == order_id).one()


class TestCover:
    def test_cover_outputs(self, polished_order, run_stages, runtime, db):
        run_stages(polished_order, STORY_COVER, first=STORY_COVER)

        story = load_story(db, polished_order)
        meta = story.print_meta
        assert story.print_status == PrintStatus.COVER_GENERATED
        assert meta.cover_provider == "mock"
        # four story pages, promo page, padded to even
        assert meta.estimated_page_count == 6
        assert meta.cover_front_cmyk.endswith(f"print/{polished_order}/covers/front-cmyk.tif")

        front = open_image(runtime.storage.download(meta.cover_front_cmyk))
        assert front.mode == "CMYK"
        assert front.size == (64, 64)
        spread = runtime.storage.download(meta.cover_spread)
        assert spread.startswith(b"%PDF")

        order = db.query(Order).filter(Order.id == polished_order).one()
        assert order.status == OrderStatus.COVERS_READY

    def test_partner_model_preference_is_used(self, polished_order, run_stages, runtime, db, partner):
        db.add(
            PrintConfig(
                partner_id=partner.id,
                reading_age="4-6",
                image_model_preferences={"cover_front": "mock-image-hd"},
            )
        )
        db.commit()

        run_stages(polished_order, STORY_COVER, first=STORY_COVER)

        models = {
            call.logical_stage: call.model
            for call in db.query(ProviderCall)
        }
        assert models["cover_front"] == "mock-image-hd"
        assert models["cover_back"] == "mock-image"

    def test_requires_final_text(self, submit, run_stages, runtime):
        order_id = submit()
        run_stages(order_id, "story.packaging")

        with pytest.raises(PipelineIntegrityError):
            execute_stage(STORY_COVER, order_id, run_cover, runtime=runtime)


class TestInterior:
    def test_best_candidate_is_chosen_per_page(self, polished_order, run_stages, runtime, db):
        run_stages(polished_order, STORY_INTERIOR, first=STORY_COVER)

        story = load_story(db, polished_order)
        meta = story.print_meta
        assert story.print_status == PrintStatus.INTERIOR_GENERATED
        assert len(meta.interior_images) == 4
        # the mock scorer prefers the second candidate
        assert all(url.endswith("-candidate-2.png") for url in meta.interior_images)
        assert meta.interior_scores == [8.0, 8.0, 8.0, 8.0]
        pages = db.query(Asset).filter(Asset.order_id == polished_order).all()
        assert len([a for a in pages if a.meta.get("role") == "interior-page"]) == 4

    def test_scoring_failure_falls_back_to_first_candidate(self, polished_order, run_stages, runtime, db):
        run_stages(polished_order, STORY_COVER, first=STORY_COVER)

        with patch.object(runtime.providers, "analyze_images", side_effect=ProviderError("vision down")):
            execute_stage(STORY_INTERIOR, polished_order, run_interior, runtime=runtime)

        meta = load_story(db, polished_order).print_meta
        assert all(url.endswith("-candidate-1.png") for url in meta.interior_images)
        assert meta.interior_scores == [None, None, None, None]

    def test_requires_cover(self, polished_order, runtime):
        with pytest.raises(PipelineIntegrityError):
            execute_stage(STORY_INTERIOR, polished_order, run_interior, runtime=runtime)


class TestCmyk:
    def test_converts_covers_and_pages(self, polished_order, run_stages, runtime, db):
        run_stages(polished_order, STORY_CMYK, first=STORY_COVER)

        story = load_story(db, polished_order)
        meta = story.print_meta
        assert story.print_status == PrintStatus.CMYK_CONVERTED
        assert set(meta.cmyk_covers) == {"front", "back"}
        assert len(meta.cmyk_interior) == 4
        page = open_image(runtime.storage.download(meta.cmyk_interior[0]))
        assert page.mode == "CMYK"
        assert page.size == (64, 64)

    def test_missing_cover_fails_before_any_conversion(self, polished_order, run_stages, runtime, db):
        run_stages(polished_order, STORY_INTERIOR, first=STORY_COVER)
        story = load_story(db, polished_order)
        meta = dict(story.print_metadata)
        meta["cover_back"] = None
        story.print_metadata = meta
        db.commit()

        with patch.object(runtime.storage, "upload_bytes") as upload:
            with pytest.raises(PipelineIntegrityError):
                execute_stage(STORY_CMYK, polished_order, run_cmyk, runtime=runtime)
            upload.assert_not_called()

        assert load_story(db, polished_order).print_status == PrintStatus.INTERIOR_GENERATED


class TestAssembly:
    def test_inside_book_pdf(self, polished_order, run_stages, runtime, db):
        run_stages(polished_order, STORY_ASSEMBLY, first=STORY_COVER)

        story = load_story(db, polished_order)
        meta = story.print_meta
        assert story.print_status == PrintStatus.ASSEMBLED
        assert meta.page_count == 6
        assert meta.reading_age == "4-6"
        pdf = runtime.storage.download(meta.inside_book_pdf)
        assert pdf.startswith(b"%PDF")
        assert pdf.count(b"/Type /Page") - pdf.count(b"/Type /Pages") == 6

    def test_dedication_adds_a_page(self, submit, run_stages, runtime, db):
        payload = order_payload()
        payload["brief"]["dedication"] = "For Maya, who loves maps."
        order_id = submit(payload)

        run_stages(order_id, STORY_ASSEMBLY)

        meta = load_story(db, order_id).print_meta
        # dedication, four story pages, promo
        assert meta.page_count == 6
        assert meta.estimated_page_count == 6

    def test_print_status_only_moves_forward(self, polished_order, run_stages, runtime, db):
        run_stages(polished_order, STORY_ASSEMBLY, first=STORY_COVER)

        with pytest.raises(PipelineIntegrityError):
            execute_stage(STORY_COVER, polished_order, run_cover, runtime=runtime)

        assert load_story(db, polished_order).print_status == PrintStatus.ASSEMBLED


def test_generated_pages_are_print_size(polished_order, run_stages, runtime, db):
    run_stages(polished_order, STORY_INTERIOR, first=STORY_COVER)
    meta = load_story(db, polished_order).print_meta
    image = open_image(runtime.storage.download(meta.interior_images[0]))
    assert image.size == (64, 64)
