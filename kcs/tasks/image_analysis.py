"""
Image analysis stage.

Describes the child (from the photo when there is one, from the brief
otherwise), every supporting character photo and every location photo.
This is the only stage that retries internally: a failed or unparseable
analysis is retried with a face crop of the photo as extra context.
"""

import logging
import re
from dataclasses import dataclass

import requests
from PIL import Image

from kcs.core.exceptions import ProviderError
from kcs.core.stages import IMAGE_ANALYSIS
from kcs.models.asset import Asset
from kcs.models.image_analysis_audit import ImageAnalysisAudit
from kcs.models.order import OrderStatus
from kcs.models.story import Story, StoryStatus
from kcs.schemas.story import CharacterDescriptor
from kcs.services.print_finishing import open_image, to_png_bytes
from kcs.tasks.base import StageContext, stage_task

logger = logging.getLogger(__name__)

_DESCRIPTOR_LINE = re.compile(r"^\s*\{?\s*([A-Za-z_ ]+?)\s*\}?\s*:\s*(.+?)\s*$")

LOGICAL_STAGES = {
    "child": "image_analysis_child",
    "supporting": "image_analysis_supporting",
    "location": "image_analysis_location",
}


@dataclass
class AnalysisTarget:
    role: str
    ordinal: int
    asset: Asset | None
    context: dict


def parse_descriptor(text: str, role: str, ordinal: int) -> CharacterDescriptor:
    """Parse `{key}: value` lines (or `@`-separated pairs) into a descriptor."""
    fields: dict[str, str] = {}
    for chunk in re.split(r"[\n@]", text or ""):
        match = _DESCRIPTOR_LINE.match(chunk)
        if match:
            key = match.group(1).strip().lower().replace(" ", "_")
            fields[key] = match.group(2)
    if not fields:
        raise ValueError(f"No descriptor fields in {role} analysis response")
    fields.pop("role", None)
    fields.pop("ordinal", None)
    return CharacterDescriptor(role=role, ordinal=ordinal, **fields)


def build_prompt(target: AnalysisTarget, face_crop: dict | None) -> str:
    lines = []
    if target.role == "child":
        lines.append("Describe the child's appearance for a picture book illustrator.")
        lines.append(f"Child name: {target.context.get('name')}")
        lines.append(f"Age: {target.context.get('age')}")
        lines.append(f"Gender: {target.context.get('gender')}")
        if target.asset is None:
            lines.append("No photo was supplied; suggest a friendly, neutral appearance.")
    elif target.role == "supporting":
        lines.append("Describe this person's appearance for a picture book illustrator.")
        lines.append(f"Name: {target.context.get('name')} ({target.context.get('relationship')})")
    else:
        lines.append("Describe this place as a picture book setting.")
        lines.append(f"Partner description: {target.context.get('description')}")
    lines.append("Answer with one `{key}: value` line per trait.")
    if face_crop:
        lines.append(f"A close crop of the face is attached as the second image ({face_crop['url']}).")
    return "\n".join(lines)


def attempt_face_crop(ctx: StageContext, target: AnalysisTarget) -> dict | None:
    """Crop the upper centre of the photo and store it. Best effort: None on failure."""
    try:
        image = open_image(ctx.storage.download(target.asset.url))
        width, height = image.size
        side = int(min(width, height) * 0.6)
        left = (width - side) // 2
        top = int(height * 0.1)
        box = (left, top, left + side, min(height, top + side))
        crop = image.crop(box).convert("RGB").resize((512, 512), Image.LANCZOS)
        key = f"analysis/{ctx.order_id}/{target.role}-{target.ordinal}-face.png"
        url = ctx.storage.upload_bytes(to_png_bytes(crop), key, "image/png")
    except (requests.RequestException, OSError, ValueError) as exc:
        logger.warning(f"Face crop failed for {target.role} {target.ordinal}: {exc}", extra=ctx.log_extra)
        return None
    return {"url": url, "box": list(box)}


def analyze_target(ctx: StageContext, target: AnalysisTarget) -> tuple[CharacterDescriptor, dict, dict | None, int]:
    max_retries = ctx.settings.IMAGE_ANALYSIS_MAX_RETRIES
    logical_stage = LOGICAL_STAGES[target.role]
    face_crop = None
    last_error: Exception | None = None
    for attempt in range(max_retries):
        if attempt > 0 and target.asset is not None and face_crop is None:
            face_crop = attempt_face_crop(ctx, target)
        urls = []
        if target.asset is not None:
            urls.append(target.asset.url)
            if face_crop:
                urls.append(face_crop["url"])
        try:
            result = ctx.vision(logical_stage, build_prompt(target, face_crop), urls, slot=attempt)
            descriptor = parse_descriptor(result["output"], target.role, target.ordinal)
            return descriptor, result, face_crop, attempt + 1
        except (ProviderError, ValueError) as exc:
            last_error = exc
            logger.warning(
                f"Analysis of {target.role} {target.ordinal} failed (attempt {attempt + 1}/{max_retries}): {exc}",
                extra=ctx.log_extra,
            )
    raise last_error


def collect_targets(order) -> list[AnalysisTarget]:
    raw = order.brief.raw
    brief = raw["brief"]
    by_role: dict[str, dict[int, Asset]] = {"child": {}, "supporting": {}, "location": {}}
    for asset in order.assets:
        meta = asset.meta or {}
        if meta.get("provenance") == "partner_upload" and meta.get("role") in by_role:
            by_role[meta["role"]][meta.get("ordinal", 0)] = asset

    child = brief["child"]
    targets = [
        AnalysisTarget(
            role="child",
            ordinal=0,
            asset=by_role["child"].get(0),
            context={"name": child["first_name"], "age": child["age"], "gender": child.get("gender")},
        )
    ]
    for ordinal, character in enumerate(brief.get("characters") or []):
        if ordinal in by_role["supporting"]:
            targets.append(
                AnalysisTarget("supporting", ordinal, by_role["supporting"][ordinal], character)
            )
    for ordinal, location in enumerate(brief.get("locations") or []):
        if ordinal in by_role["location"]:
            targets.append(AnalysisTarget("location", ordinal, by_role["location"][ordinal], location))
    return targets


def run_image_analysis(ctx: StageContext) -> None:
    order = ctx.load_order()
    ctx.require(order.brief, "order brief")

    targets = collect_targets(order)
    descriptors = []
    for target in targets:
        descriptor, result, face_crop, attempts = analyze_target(ctx, target)
        descriptors.append(descriptor.model_dump(exclude_none=True))
        ctx.db.add(
            ImageAnalysisAudit(
                order_id=order.id,
                asset_id=target.asset.id if target.asset else None,
                role=target.role,
                ordinal=target.ordinal,
                descriptor=descriptor.model_dump(exclude_none=True),
                raw_response=result["output"],
                face_crop_meta=face_crop,
                provider=result.get("provider"),
                model=result.get("model"),
                attempts=attempts,
            )
        )

    order.brief.image_descriptors = descriptors
    if order.story is None:
        order.story = Story(status=StoryStatus.PENDING_EMOTIONAL_PROFILE)
    order.status = OrderStatus.IMAGE_ANALYSIS_COMPLETE
    ctx.record_event(
        "images.uploads_analyzed",
        {
            "descriptor_count": len(descriptors),
            "roles": [d["role"] for d in descriptors],
            "child_photo": targets[0].asset is not None,
        },
    )


image_analysis_task = stage_task(IMAGE_ANALYSIS, run_image_analysis)
