"""
Print finishing stages: cover, interior, CMYK conversion and assembly.

Each stage moves `story.print_status` one step forward and writes its
outputs under `print/{order_id}/...`. Keys are fixed per order and page, so
re-running a stage replaces its files rather than adding new ones.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from kcs.core.exceptions import PipelineIntegrityError, ProviderError
from kcs.core.metrics import (
    PRINT_ASSEMBLY_SECONDS,
    PRINT_CMYK_SECONDS,
    PRINT_COVER_SECONDS,
    PRINT_INTERIOR_SECONDS,
)
from kcs.core.stages import STORY_ASSEMBLY, STORY_CMYK, STORY_COVER, STORY_INTERIOR
from kcs.models.order import OrderStatus
from kcs.models.story import PrintStatus
from kcs.schemas.story import AssemblyView, CmykView, CoverView, InteriorView
from kcs.services import print_finishing as pf
from kcs.services.print_config import PrintSettings, load_print_settings
from kcs.services.reading_profile import get_reading_stage_profile
from kcs.tasks.assets import record_generated_asset
from kcs.tasks.base import StageContext, stage_task

logger = logging.getLogger(__name__)


def print_settings_for(ctx: StageContext, order) -> PrintSettings:
    reading_age = get_reading_stage_profile(order.brief.reading_level).print_age
    return load_print_settings(ctx.db, order.partner_id, reading_age)


def resolve_icc_path(ctx: StageContext, print_settings: PrintSettings) -> str:
    """The config names a profile file; look for it next to the default profile."""
    configured = Path(print_settings.icc_profile)
    if configured.is_absolute() or configured.exists():
        return str(configured)
    return str(Path(ctx.settings.ICC_PROFILE_PATH).parent / configured)


def image_route(ctx: StageContext, print_settings: PrintSettings, logical_stage: str):
    base = ctx.providers.route_for(logical_stage, "image")
    return print_settings.route_override(logical_stage, base)


def book_title(order, plan) -> str:
    if plan.title_options:
        return plan.title_options[0]
    return f"{order.brief.raw['brief']['child']['first_name']}'s Adventure"


def _cmyk_upload(ctx: StageContext, url: str, key: str, icc_path: str) -> str:
    """Download, bring to print size, convert to CMYK TIFF and store."""
    size = ctx.settings.PRINT_PAGE_PX
    image = pf.upscale(pf.open_image(ctx.storage.download(url)), size)
    if not pf.has_print_dimensions(image, size):
        logger.warning(f"{key} is {image.size}, expected {size}x{size}", extra=ctx.log_extra)
    return ctx.storage.upload_bytes(pf.to_cmyk_tiff(image, icc_path), key, "image/tiff")


def run_cover(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    final_text = ctx.require(story.final_text, "final text")
    plan = story.plan
    print_settings = print_settings_for(ctx, order)
    icc_path = resolve_icc_path(ctx, print_settings)
    title = book_title(order, plan)
    prefix = f"print/{order.id}/covers"
    started = time.monotonic()

    front = ctx.image(
        "cover_front",
        f"Front cover for the picture book '{title}'. {plan.main_character_prompt or ''}",
        f"{prefix}/front-rgb.png",
        route=image_route(ctx, print_settings, "cover_front"),
    )
    back = ctx.image(
        "cover_back",
        f"Back cover artwork for '{title}', calm background with space for text. {plan.blurb or ''}",
        f"{prefix}/back-rgb.png",
        route=image_route(ctx, print_settings, "cover_back"),
    )

    size = ctx.settings.PRINT_PAGE_PX
    front_image = pf.upscale(pf.open_image(ctx.storage.download(front["output"])), size)
    back_image = pf.upscale(pf.open_image(ctx.storage.download(back["output"])), size)
    front_cmyk, _ = pf.convert_to_cmyk(front_image, icc_path)
    back_cmyk, _ = pf.convert_to_cmyk(back_image, icc_path)
    front_cmyk_url = ctx.storage.upload_bytes(
        pf.to_cmyk_tiff(front_cmyk, icc_path), f"{prefix}/front-cmyk.tif", "image/tiff"
    )
    back_cmyk_url = ctx.storage.upload_bytes(
        pf.to_cmyk_tiff(back_cmyk, icc_path), f"{prefix}/back-cmyk.tif", "image/tiff"
    )

    brief = order.brief.raw["brief"]
    page_count = pf.estimate_page_count(
        final_text, ctx.settings.MAX_INTERIOR_PAGES, bool(brief.get("dedication"))
    )
    spine_px = pf.spine_width_px(page_count, size, ctx.settings.PRINT_DPI)
    spread = pf.compose_cover_spread(
        front_cmyk, back_cmyk, spine_px, title, f"#{order.order_number[:8]}"
    )
    spread_url = ctx.storage.upload_bytes(
        pf.export_pdf([spread], ctx.settings.PRINT_DPI, title=f"{title} cover"),
        f"{prefix}/cover-spread.pdf",
        "application/pdf",
    )

    story.merge_print_metadata(
        CoverView(
            cover_front=front["output"],
            cover_back=back["output"],
            cover_front_cmyk=front_cmyk_url,
            cover_back_cmyk=back_cmyk_url,
            cover_spread=spread_url,
            estimated_page_count=page_count,
            cover_provider=front["provider"] or "unknown",
        )
    )
    story.advance_print_status(PrintStatus.COVER_GENERATED)
    order.status = OrderStatus.COVERS_READY
    PRINT_COVER_SECONDS.labels(provider=front["provider"] or "unknown").observe(time.monotonic() - started)
    ctx.record_event(
        "print.cover_generated",
        {"cover_spread": spread_url, "estimated_page_count": page_count, "spine_px": spine_px},
    )


def render_interior_page(
    ctx: StageContext,
    index: int,
    text: str,
    image_prompt: str | None,
    descriptor: str,
    print_settings: PrintSettings,
) -> tuple[str, float | None]:
    """Generate candidates for one page and return the chosen URL and its score."""
    prompt = f"{image_prompt or ''}\nIllustrate this page: {text}\nMain character: {descriptor}"
    count = ctx.settings.INTERIOR_CANDIDATES
    route = image_route(ctx, print_settings, "interior_page")
    candidates: list[str] = []
    last_error: ProviderError | None = None
    for candidate in range(count):
        try:
            result = ctx.image(
                "interior_page",
                prompt,
                f"print/{ctx.order_id}/interior/page-{index + 1}-candidate-{candidate + 1}.png",
                route=route,
                slot=index * count + candidate,
            )
            candidates.append(result["output"])
        except ProviderError as exc:
            last_error = exc
            logger.warning(
                f"Candidate {candidate + 1} for page {index + 1} failed: {exc}", extra=ctx.log_extra
            )
    if not candidates:
        raise last_error or PipelineIntegrityError(f"No candidates for page {index + 1}")
    if len(candidates) == 1:
        return candidates[0], None

    scoring_prompt = (
        "Score each image from 1 to 10 for how well it illustrates the text and keeps the "
        f"main character consistent. Answer one line per image as 'Image N: score'.\nText: {text}"
    )
    try:
        response = ctx.vision(
            "vision_score", scoring_prompt, candidates,
            route=image_route(ctx, print_settings, "vision_score"), slot=index,
        )
        scores = pf.parse_vision_scores(response["output"], len(candidates))
    except ProviderError as exc:
        logger.warning(f"Scoring failed for page {index + 1}, using first candidate: {exc}", extra=ctx.log_extra)
        scores = [None] * len(candidates)
    best = pf.pick_best_candidate(scores)
    return candidates[best], scores[best]


def run_interior(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    if story.print_meta.cover_spread is None:
        raise PipelineIntegrityError(f"{ctx.stage}: cover spread missing for order {order.id}")
    pages = pf.split_pages(ctx.require(story.final_text, "final text"), ctx.settings.MAX_INTERIOR_PAGES)
    ctx.require(pages, "story pages")
    plan = story.plan
    prompts = plan.image_prompt_list_enhanced
    print_settings = print_settings_for(ctx, order)
    descriptor = plan.main_character_descriptor or ""
    started = time.monotonic()

    # Worker threads only touch providers, storage and the ledger; the session stays here
    workers = max(1, min(ctx.settings.INTERIOR_PAGE_CONCURRENCY, len(pages)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [
            pool.submit(
                render_interior_page, ctx, index, text,
                prompts[index] if index < len(prompts) else None, descriptor, print_settings,
            )
            for index, text in enumerate(pages)
        ]
        results = [future.result() for future in futures]

    images = [url for url, _ in results]
    scores = [score for _, score in results]
    for index, url in enumerate(images):
        record_generated_asset(ctx, url, "interior-page", index, {"score": scores[index]})
    story.merge_print_metadata(InteriorView(interior_images=images, interior_scores=scores))
    story.advance_print_status(PrintStatus.INTERIOR_GENERATED)
    PRINT_INTERIOR_SECONDS.labels(page_count=str(len(images))).observe(time.monotonic() - started)
    ctx.record_event("print.interior_generated", {"page_count": len(images), "scores": scores})


def run_cmyk(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    meta = story.print_meta
    # Covers are checked before any conversion so a failed run leaves nothing behind
    if not meta.cover_front or not meta.cover_back:
        raise PipelineIntegrityError(f"{ctx.stage}: cover images missing for order {order.id}")
    interior = ctx.require(meta.interior_images, "interior images")
    icc_path = resolve_icc_path(ctx, print_settings_for(ctx, order))
    prefix = f"print/{order.id}"
    started = time.monotonic()

    covers = {
        "front": _cmyk_upload(ctx, meta.cover_front, f"{prefix}/covers/front-cmyk.tif", icc_path),
        "back": _cmyk_upload(ctx, meta.cover_back, f"{prefix}/covers/back-cmyk.tif", icc_path),
    }
    pages = [
        _cmyk_upload(ctx, url, f"{prefix}/interior/page-{index + 1}-cmyk.tif", icc_path)
        for index, url in enumerate(interior)
    ]

    story.merge_print_metadata(CmykView(cmyk_covers=covers, cmyk_interior=pages))
    story.advance_print_status(PrintStatus.CMYK_CONVERTED)
    image_count = len(pages) + 2
    PRINT_CMYK_SECONDS.labels(image_count=str(image_count)).observe(time.monotonic() - started)
    ctx.record_event("print.cmyk_converted", {"image_count": image_count})


def choose_overlay_position(
    ctx: StageContext, image_url: str, text: str, print_settings: PrintSettings, index: int
) -> str:
    """Ask a vision model where the text panel fits; the default position on any failure."""
    if not print_settings.ai_placement_enabled or len(text) > print_settings.max_char_threshold:
        return pf.DEFAULT_OVERLAY_POSITION
    prompt = (
        "Where on this illustration can a text panel sit without covering faces or the main "
        f"action? Answer with one code from: {', '.join(print_settings.overlay_positions)}.\n"
        f"Text length: {len(text)} characters"
    )
    try:
        response = ctx.vision(
            "overlay_position", prompt, [image_url],
            route=image_route(ctx, print_settings, "overlay_position"), slot=index,
        )
    except ProviderError as exc:
        logger.warning(f"Overlay placement failed for page {index + 1}: {exc}", extra=ctx.log_extra)
        return pf.DEFAULT_OVERLAY_POSITION
    return pf.parse_overlay_position(response["output"], print_settings.overlay_positions)


def run_assembly(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    meta = story.print_meta
    cmyk_pages = ctx.require(meta.cmyk_interior, "CMYK interior pages")
    texts = pf.split_pages(ctx.require(story.final_text, "final text"), ctx.settings.MAX_INTERIOR_PAGES)
    if len(texts) != len(cmyk_pages):
        raise PipelineIntegrityError(
            f"{ctx.stage}: {len(texts)} text pages but {len(cmyk_pages)} CMYK images"
        )
    print_settings = print_settings_for(ctx, order)
    size = ctx.settings.PRINT_PAGE_PX
    dedication = order.brief.raw["brief"].get("dedication")
    started = time.monotonic()

    positions = [
        choose_overlay_position(ctx, meta.interior_images[i], text, print_settings, i)
        for i, text in enumerate(texts)
    ]
    page_count = len(texts) + (1 if dedication else 0) + 1
    padded = page_count % 2 == 1
    if padded:
        page_count += 1

    def book_pages():
        if dedication:
            yield pf.text_page(dedication, size, print_settings)
        for url, text, position in zip(cmyk_pages, texts, positions):
            page = pf.upscale(pf.open_image(ctx.storage.download(url)), size)
            yield pf.overlay_text(page, text, position, print_settings)
        yield pf.text_page(ctx.settings.PROMO_TEXT, size, print_settings)
        if padded:
            yield pf.blank_page(size)

    pdf = pf.export_pdf(book_pages(), ctx.settings.PRINT_DPI, title=book_title(order, story.plan))
    pdf_url = ctx.storage.upload_bytes(pdf, f"print/{order.id}/inside-book.pdf", "application/pdf")

    story.merge_print_metadata(
        AssemblyView(inside_book_pdf=pdf_url, page_count=page_count, reading_age=print_settings.reading_age)
    )
    story.advance_print_status(PrintStatus.ASSEMBLED)
    PRINT_ASSEMBLY_SECONDS.labels(page_count=str(page_count)).observe(time.monotonic() - started)
    ctx.record_event(
        "print.assembled",
        {"inside_book_pdf": pdf_url, "page_count": page_count, "overlay_positions": positions},
    )


cover_task = stage_task(STORY_COVER, run_cover)
interior_task = stage_task(STORY_INTERIOR, run_interior)
cmyk_task = stage_task(STORY_CMYK, run_cmyk)
assembly_task = stage_task(STORY_ASSEMBLY, run_assembly)
