"""
Print configuration lookup.

Order of precedence: the partner's own row for the reading age, then the
default row for that reading age, then the built-in defaults below.
"""

import logging
from dataclasses import dataclass, field, replace

from sqlalchemy.orm import Session

from kcs.models.print_config import PrintConfig
from kcs.services.providers import StageRoute

logger = logging.getLogger(__name__)

OVERLAY_POSITIONS = ["b", "t", "tr", "tl", "br", "bl"]


@dataclass
class PrintSettings:
    """Resolved configuration handed to the cover, interior and assembly stages."""

    reading_age: str
    font_family: str = "Arial"
    font_size: int = 100
    line_spacing: int = 110
    text_color: str = "#000000"
    text_width_percent: int = 80
    border_percent: int = 5
    max_words: int = 60
    bleed_percent: float = 3.5
    safe_margin_mm: float = 6.0
    icc_profile: str = "CGATS21_CRPC1.icc"
    overlay_positions: list[str] = field(default_factory=lambda: list(OVERLAY_POSITIONS))
    max_char_threshold: int = 450
    ai_placement_enabled: bool = True
    image_model_preferences: dict = field(default_factory=dict)

    def route_override(self, logical_stage: str, base: StageRoute) -> StageRoute | None:
        """
        Route for `logical_stage` after applying this config's model preferences.

        A preference is either a bare model name, which keeps the base
        provider, or a dict in the PROVIDER_ROUTES shape.
        """
        preference = self.image_model_preferences.get(logical_stage)
        if preference is None:
            preference = self.image_model_preferences.get("default")
        if preference is None:
            return None
        if isinstance(preference, str):
            return StageRoute(
                primary=base.primary,
                model=preference,
                fallback=base.fallback,
                fallback_model=base.fallback_model,
            )
        return StageRoute.from_dict(preference)


BUILTIN_PRINT_SETTINGS = {
    "3-4": PrintSettings(
        reading_age="3-4", font_family="Arial", font_size=120, line_spacing=130,
        border_percent=5, max_words=25,
    ),
    "4-6": PrintSettings(
        reading_age="4-6", font_family="Verdana", font_size=110, line_spacing=120,
        border_percent=4, max_words=40,
    ),
    "6-7": PrintSettings(
        reading_age="6-7", font_family="Georgia", font_size=100, line_spacing=110,
        border_percent=3, max_words=60,
    ),
    "8": PrintSettings(
        reading_age="8", font_family="Arial", font_size=90, line_spacing=100,
        border_percent=2, max_words=100,
    ),
}


def _from_row(row: PrintConfig) -> PrintSettings:
    overlay = row.overlay_preferences or {}
    return PrintSettings(
        reading_age=row.reading_age,
        font_family=row.font_family or "Arial",
        font_size=row.font_size or 100,
        line_spacing=row.line_spacing or 110,
        text_color=row.text_color or "#000000",
        text_width_percent=row.text_width_percent or 80,
        border_percent=row.border_percent or 5,
        max_words=row.max_words or 60,
        bleed_percent=row.bleed_percent or 3.5,
        safe_margin_mm=row.safe_margin_mm or 6.0,
        icc_profile=row.icc_profile or "CGATS21_CRPC1.icc",
        overlay_positions=overlay.get("positions") or list(OVERLAY_POSITIONS),
        max_char_threshold=overlay.get("maxCharThreshold", 450),
        ai_placement_enabled=overlay.get("aiPlacementEnabled", True),
        image_model_preferences=row.image_model_preferences or {},
    )


def load_print_settings(db: Session, partner_id, reading_age: str) -> PrintSettings:
    row = None
    if partner_id is not None:
        row = (
            db.query(PrintConfig)
            .filter(PrintConfig.partner_id == partner_id, PrintConfig.reading_age == reading_age)
            .first()
        )
    if row is None:
        row = (
            db.query(PrintConfig)
            .filter(
                PrintConfig.partner_id.is_(None),
                PrintConfig.is_default.is_(True),
                PrintConfig.reading_age == reading_age,
            )
            .first()
        )
    if row is not None:
        return _from_row(row)

    logger.info(f"No print config stored for reading age {reading_age}, using built-in defaults")
    builtin = BUILTIN_PRINT_SETTINGS.get(reading_age, BUILTIN_PRINT_SETTINGS["6-7"])
    return replace(builtin, reading_age=reading_age)
