"""
Illustration stages.

`story.assets` generates the main character reference image and one
illustration per enhanced page prompt. It is the heaviest provider user in
the pipeline, so its queue runs with a concurrency of one.
`story.assets_refine` checks that every page got an illustration and fixes
the ordered list later stages consume.
"""

import logging

from kcs.core.exceptions import PipelineIntegrityError
from kcs.core.stages import STORY_ASSETS, STORY_ASSETS_REFINE
from kcs.models.asset import Asset, AssetType
from kcs.schemas.story import GenerationView, RefineView
from kcs.tasks.base import StageContext, stage_task

logger = logging.getLogger(__name__)


def record_generated_asset(ctx: StageContext, url: str, role: str, ordinal: int, result: dict) -> None:
    """One Asset row per generated file. Re-runs that hit the ledger reuse the URL and add nothing."""
    exists = (
        ctx.db.query(Asset.id)
        .filter(Asset.order_id == ctx.order_id, Asset.url == url)
        .first()
    )
    if exists is None:
        ctx.db.add(
            Asset(
                order_id=ctx.order_id,
                type=AssetType.IMAGE,
                url=url,
                meta={
                    "role": role,
                    "ordinal": ordinal,
                    "provenance": "generated",
                    "provider": result.get("provider"),
                    "model": result.get("model"),
                    "generation_id": (result.get("meta") or {}).get("generation_id"),
                },
            )
        )


def run_assets(ctx: StageContext) -> None:
    story = ctx.load_story()
    plan = story.plan
    main_prompt = ctx.require(plan.main_character_prompt, "main character prompt")
    prompts = ctx.require(plan.image_prompt_list_enhanced, "enhanced image prompts")

    main = ctx.image("main_character", main_prompt, f"story/{ctx.order_id}/main-character.png")
    record_generated_asset(ctx, main["output"], "main-character", 0, main)

    links, status, ids, providers = [], {}, {}, {}
    for index, prompt in enumerate(prompts):
        page_prompt = f"{prompt}\nMain character reference: {plan.main_character_descriptor}"
        result = ctx.image(
            "secondary_image", page_prompt, f"story/{ctx.order_id}/page-{index + 1}.png", slot=index
        )
        record_generated_asset(ctx, result["output"], "secondary-character", index, result)
        links.append(result["output"])
        status[str(index)] = "completed"
        ids[str(index)] = (result.get("meta") or {}).get("generation_id") or ""
        providers[str(index)] = result.get("provider") or ""

    story.merge_asset_plan(
        GenerationView(
            main_character_image_url=main["output"],
            generated_links=links,
            generation_status=status,
            generation_ids=ids,
            generation_provider=providers,
        )
    )
    ctx.record_event(
        "story.assets_generated",
        {"image_count": len(links) + 1, "ledger_hits": ctx.ledger.hits},
    )


def run_assets_refine(ctx: StageContext) -> None:
    story = ctx.load_story()
    plan = story.plan
    links = ctx.require(plan.generated_links, "generated links")
    missing = len(plan.image_prompt_list_enhanced) - len(links)
    incomplete = [k for k, v in plan.generation_status.items() if v != "completed"]
    if missing or incomplete:
        raise PipelineIntegrityError(
            f"{ctx.stage}: {missing} illustrations missing, incomplete pages {incomplete}"
        )
    story.merge_asset_plan(RefineView(packaged_links=list(links)))
    ctx.record_event("story.assets_ready", {"packaged_count": len(links)})


assets_task = stage_task(STORY_ASSETS, run_assets)
assets_refine_task = stage_task(STORY_ASSETS_REFINE, run_assets_refine)
