"""
Stage names and the fixed order they run in.

Each name is both the Celery task name and the queue that task is routed to.
"""

IMAGE_ANALYSIS = "image-analysis"
STORY_ASSET_PLAN = "story.asset_plan"
STORY_STYLE = "story.style"
STORY_FOCUS = "story.focus"
STORY_PROFILE = "story.profile"
STORY_OUTLINE = "story.outline"
STORY_DRAFT = "story.draft"
STORY_REVISE = "story.revise"
STORY_PROMPTS = "story.prompts"
STORY_ASSETS = "story.assets"
STORY_ASSETS_REFINE = "story.assets_refine"
STORY_PACKAGING = "story.packaging"
STORY_POLISH = "story.polish"
STORY_COVER = "story.cover"
STORY_INTERIOR = "story.interior"
STORY_CMYK = "story.cmyk"
STORY_ASSEMBLY = "story.assembly"
STORY_HANDOFF = "story.handoff"

PIPELINE = (
    IMAGE_ANALYSIS,
    STORY_ASSET_PLAN,
    STORY_STYLE,
    STORY_FOCUS,
    STORY_PROFILE,
    STORY_OUTLINE,
    STORY_DRAFT,
    STORY_REVISE,
    STORY_PROMPTS,
    STORY_ASSETS,
    STORY_ASSETS_REFINE,
    STORY_PACKAGING,
    STORY_POLISH,
    STORY_COVER,
    STORY_INTERIOR,
    STORY_CMYK,
    STORY_ASSEMBLY,
    STORY_HANDOFF,
)

OUTBOX_DRAIN = "webhooks.drain_outbox"
OUTBOX_QUEUE = "webhooks"


def next_stage(stage: str) -> str | None:
    """Successor of `stage`, or None for the terminal handoff stage."""
    index = PIPELINE.index(stage)
    if index + 1 < len(PIPELINE):
        return PIPELINE[index + 1]
    return None
