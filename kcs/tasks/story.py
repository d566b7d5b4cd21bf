"""
Text stages: plan, style, focus, profile, outline, draft, revise, prompts,
packaging and polish.

Each handler reads what earlier stages persisted, makes its provider calls
through the context (so they land in the call ledger), writes its own slice
of the story and records one event.
"""

import json
import logging

from kcs.core import stages
from kcs.models.order import OrderStatus
from kcs.models.story import StoryStatus, StoryVersion
from kcs.schemas.story import (
    FocusItem,
    FocusView,
    PackagingView,
    Paragraph,
    PlanInitView,
    PromptsView,
    StyleView,
)
from kcs.services.print_finishing import split_pages
from kcs.services.reading_profile import get_reading_stage_profile
from kcs.tasks.base import StageContext, stage_task

logger = logging.getLogger(__name__)

# Overlay template by total story length in characters
CHOICE_RULES = [
    (0, 199, "3-4"),
    (200, 269, "4-6"),
    (270, 399, "6-7"),
    (400, None, "8"),
]


def overlay_choice_for(text: str) -> str:
    total = len(text)
    for low, high, choice in CHOICE_RULES:
        if total >= low and (high is None or total <= high):
            return choice
    return CHOICE_RULES[-1][2]


def brief_context(order) -> str:
    """The brief as prompt lines shared by every text stage."""
    brief = order.brief.raw["brief"]
    constraints = order.brief.constraints or {}
    profile = get_reading_stage_profile(order.brief.reading_level)
    lines = [
        f"Child name: {brief['child']['first_name']}",
        f"Child age: {brief['child']['age']}",
        f"Reading stage: {profile.stage} (max {profile.max_words} words per page)",
        f"Vocabulary: {profile.vocab}",
        f"Sentence guidance: {profile.sentence_guidance}",
        f"Tone: {brief['tone']}. {profile.tone_note}",
        f"Theme: {brief['core_theme']}",
        f"Objective: {brief['objective']}",
        f"Interests: {', '.join(brief.get('interests') or []) or 'none given'}",
        f"Language: {brief.get('language', 'en-GB')}",
    ]
    for character in brief.get("characters") or []:
        lines.append(f"Supporting character: {character['name']} ({character['relationship']})")
    for location in brief.get("locations") or []:
        lines.append(f"Location: {location['description']}")
    if constraints.get("exclude_topics"):
        lines.append(f"Never mention: {', '.join(constraints['exclude_topics'])}")
    return "\n".join(lines)


def has_version(story, stage_name: str, content: str) -> bool:
    return any(v.stage == stage_name and v.content == content for v in story.versions)


def add_version(story, stage_name: str, content: str, **meta) -> bool:
    """Snapshot the text once. A redelivered job finds its snapshot already there."""
    if has_version(story, stage_name, content):
        return False
    story.versions.append(
        StoryVersion(version=story.version, stage=stage_name, content=content, meta=meta)
    )
    return True


def run_asset_plan(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    profile = get_reading_stage_profile(order.brief.reading_level)
    brief = order.brief.raw["brief"]
    style_prompt = (
        f"Warm, painterly children's picture book illustration for {profile.stage} readers; "
        f"{brief['tone']} mood; consistent character design across pages"
    )
    story.merge_asset_plan(
        PlanInitView(
            reading_stage=profile.stage,
            reading_profile=profile.to_dict(),
            style_prompt=style_prompt,
        )
    )
    order.status = OrderStatus.STORY_PENDING
    ctx.record_event("story.asset_plan_ready", {"reading_stage": profile.stage})


def run_style(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    plan = story.plan
    ctx.require(plan.style_prompt, "style prompt")
    descriptors = order.brief.image_descriptors or []
    child = next((d for d in descriptors if d.get("role") == "child"), {})
    traits = "\n".join(f"{k}: {v}" for k, v in child.items() if k not in ("role", "ordinal"))
    prompt = (
        "Write a one-paragraph visual description of the main character.\n"
        f"{brief_context(order)}\nObserved traits:\n{traits or 'none'}\nStyle: {plan.style_prompt}"
    )
    result = ctx.text("style_main_character", prompt)
    descriptor = result["output"].strip()
    story.merge_asset_plan(
        StyleView(
            main_character_descriptor=descriptor,
            main_character_prompt=f"{plan.style_prompt}. Main character: {descriptor}",
        )
    )
    ctx.record_event("story.style_ready", {"provider": result["provider"], "model": result["model"]})


def run_focus(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    ctx.require(story.plan.main_character_descriptor, "main character descriptor")
    brief = order.brief.raw["brief"]
    descriptors = order.brief.image_descriptors or []

    def described(role: str, ordinal: int) -> str | None:
        for d in descriptors:
            if d.get("role") == role and d.get("ordinal", 0) == ordinal:
                return "; ".join(f"{k}: {v}" for k, v in d.items() if k not in ("role", "ordinal"))
        return None

    items = [FocusItem(label=brief["child"]["first_name"], kind="child", description=story.plan.main_character_descriptor)]
    for ordinal, character in enumerate(brief.get("characters") or []):
        items.append(FocusItem(label=character["name"], kind="character", description=described("supporting", ordinal)))
    for ordinal, location in enumerate(brief.get("locations") or []):
        items.append(
            FocusItem(
                label=location["description"],
                kind="location",
                description=described("location", ordinal) or location["description"],
            )
        )
    for interest in brief.get("interests") or []:
        items.append(FocusItem(label=interest, kind="interest"))

    focus_list = []
    for item in items:
        if item.label not in focus_list:
            focus_list.append(item.label)
    story.merge_asset_plan(FocusView(focus_list=focus_list, focus_items=items))
    ctx.record_event("story.focus_ready", {"focus_count": len(focus_list)})


def run_profile(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    ctx.require(story.plan.focus_list, "focus list")
    prompt = (
        "Describe the emotional profile this story should have, as JSON with keys "
        "primary_emotion and arc.\n" + brief_context(order)
    )
    result = ctx.text("emotional_profile", prompt)
    try:
        profile = json.loads(result["output"])
        if not isinstance(profile, dict):
            profile = {"summary": profile}
    except ValueError:
        profile = {"summary": result["output"].strip()}
    story.emotional_profile = profile
    story.status = StoryStatus.PROFILE_READY
    ctx.record_event("story.profile_ready", {"profile": profile})


def run_outline(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    profile = ctx.require(story.emotional_profile, "emotional profile")
    plan = story.plan
    prompt = (
        "Outline a short picture book story, one line per page.\n"
        f"{brief_context(order)}\nEmotional profile: {json.dumps(profile)}\n"
        f"Things to feature: {', '.join(plan.focus_list)}"
    )
    result = ctx.text("story_outline", prompt)
    story.outline_text = result["output"].strip()
    story.status = StoryStatus.OUTLINE_READY
    ctx.record_event("story.outline_ready", {"outline_length": len(story.outline_text)})


def run_draft(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    outline = ctx.require(story.outline_text, "outline")
    prompt = (
        "Write the story. Separate pages with a blank line.\n"
        f"{brief_context(order)}\nOutline:\n{outline}"
    )
    result = ctx.text("story_draft", prompt)
    story.draft_text = result["output"].strip()
    story.status = StoryStatus.STORY_DRAFT_READY
    add_version(story, "draft_v1", story.draft_text, provider=result["provider"], model=result["model"])
    order.status = OrderStatus.STORY_DRAFT_READY
    ctx.record_event("story.draft_ready", {"version": story.version, "length": len(story.draft_text)})


def run_revise(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    draft = ctx.require(story.draft_text, "draft text")
    context = brief_context(order)
    critique = ctx.text(
        "story_critique",
        f"Critique this draft for the reader described below.\n{context}\nDraft:\n{draft}",
    )
    story.critique_text = critique["output"].strip()
    revision = ctx.text(
        "story_revision",
        "Revise the draft using the critique. Keep pages separated by a blank line.\n"
        f"{context}\nCritique:\n{story.critique_text}\nDraft:\n{draft}",
    )
    story.revised_text = revision["output"].strip()
    if not has_version(story, "revised", story.revised_text):
        story.version = story.version + 1
    story.status = StoryStatus.STORY_REVISED
    add_version(story, "revised", story.revised_text, critique=story.critique_text)
    ctx.record_event("story.revised", {"version": story.version})


def run_prompts(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    revised = ctx.require(story.revised_text, "revised text")
    plan = story.plan
    pages = split_pages(revised, ctx.settings.MAX_INTERIOR_PAGES)
    ctx.require(pages, "story paragraphs")
    paragraphs = [Paragraph(index=i, text=text) for i, text in enumerate(pages)]

    prompts, enhanced = [], []
    for paragraph in paragraphs:
        base = ctx.text(
            "story_paragraph_prompt",
            "Write an illustration prompt for this page.\n"
            f"Main character: {plan.main_character_descriptor}\n"
            f"Focus: {', '.join(plan.focus_list)}\nPage {paragraph.index + 1}: {paragraph.text}",
            slot=paragraph.index,
        )["output"].strip()
        prompts.append(base)
        better = ctx.text(
            "story_prompt_enhance",
            f"Improve this illustration prompt. Style: {plan.style_prompt}\nPrompt: {base}",
            slot=paragraph.index,
        )["output"].strip()
        enhanced.append(better)

    story.merge_asset_plan(
        PromptsView(
            paragraph_count=len(paragraphs),
            paragraphs=paragraphs,
            image_prompt_list=prompts,
            image_prompt_list_enhanced=enhanced,
        )
    )
    order.status = OrderStatus.ASSETS_IN_PROGRESS
    ctx.record_event("story.prompts_ready", {"paragraph_count": len(paragraphs)})


def run_packaging(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    text = ctx.require(story.revised_text, "revised text")
    ctx.require(story.plan.packaged_links, "packaged illustration links")
    context = brief_context(order)
    titles_raw = ctx.text("story_packaging_titles", f"Suggest three book titles, one per line.\n{context}\nStory:\n{text}")
    titles = [line.strip(" -*0123456789.").strip() for line in titles_raw["output"].splitlines()]
    titles = [t for t in titles if t][:3]
    ctx.require(titles, "title options")
    blurb = ctx.text("story_packaging_blurb", f"Write a back-cover blurb.\n{context}\nStory:\n{text}")
    choice = overlay_choice_for(text)
    story.merge_asset_plan(
        PackagingView(overlay_choice=choice, title_options=titles, blurb=blurb["output"].strip())
    )
    ctx.record_event("story.packaged", {"overlay_choice": choice, "title": titles[0]})


def run_polish(ctx: StageContext) -> None:
    order = ctx.load_order()
    story = ctx.load_story()
    revised = ctx.require(story.revised_text, "revised text")
    ctx.require(story.plan.title_options, "packaging")
    result = ctx.text(
        "story_polish",
        "Polish the story for print: fix typos and rhythm, keep every page and "
        f"the blank lines between them.\n{brief_context(order)}\nStory:\n{revised}",
    )
    polished = result["output"].strip()
    # Pages were illustrated from the revised text; polishing may not change the page count
    if len(split_pages(polished, ctx.settings.MAX_INTERIOR_PAGES)) != story.plan.paragraph_count:
        logger.warning("Polish changed the page count, keeping revised text", extra=ctx.log_extra)
        polished = revised
    story.final_text = polished
    story.status = StoryStatus.STORY_FINALIZED
    add_version(story, "polished", polished)
    order.status = OrderStatus.PREPRESS_READY
    ctx.record_event("story.polished", {"version": story.version, "length": len(polished)})


asset_plan_task = stage_task(stages.STORY_ASSET_PLAN, run_asset_plan)
style_task = stage_task(stages.STORY_STYLE, run_style)
focus_task = stage_task(stages.STORY_FOCUS, run_focus)
profile_task = stage_task(stages.STORY_PROFILE, run_profile)
outline_task = stage_task(stages.STORY_OUTLINE, run_outline)
draft_task = stage_task(stages.STORY_DRAFT, run_draft)
revise_task = stage_task(stages.STORY_REVISE, run_revise)
prompts_task = stage_task(stages.STORY_PROMPTS, run_prompts)
packaging_task = stage_task(stages.STORY_PACKAGING, run_packaging)
polish_task = stage_task(stages.STORY_POLISH, run_polish)
