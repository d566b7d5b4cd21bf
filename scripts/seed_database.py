"""Script to create tables and seed default print configs (and optionally a partner)."""

import argparse
import secrets
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from kcs.db.base import Base, SessionLocal, engine
from kcs.models import Partner, PrintConfig
from kcs.services.print_config import BUILTIN_PRINT_SETTINGS


def seed_print_configs(db):
    """Default print config rows for every reading age, skipping ones that exist."""
    for reading_age, builtin in BUILTIN_PRINT_SETTINGS.items():
        existing = (
            db.query(PrintConfig)
            .filter(
                PrintConfig.partner_id.is_(None),
                PrintConfig.is_default.is_(True),
                PrintConfig.reading_age == reading_age,
            )
            .first()
        )
        if existing:
            print(f"Print config for {reading_age} already exists. Skipping.")
            continue
        db.add(
            PrintConfig(
                reading_age=reading_age,
                is_default=True,
                font_family=builtin.font_family,
                font_size=builtin.font_size,
                line_spacing=builtin.line_spacing,
                text_color=builtin.text_color,
                text_width_percent=builtin.text_width_percent,
                border_percent=builtin.border_percent,
                max_words=builtin.max_words,
                bleed_percent=builtin.bleed_percent,
                safe_margin_mm=builtin.safe_margin_mm,
                icc_profile=builtin.icc_profile,
                overlay_preferences={
                    "positions": builtin.overlay_positions,
                    "maxCharThreshold": builtin.max_char_threshold,
                    "aiPlacementEnabled": builtin.ai_placement_enabled,
                },
                image_model_preferences={},
            )
        )
        print(f"Created print config: {reading_age}")


def seed_partner(db, slug: str, webhook_url: str | None, delivery_folder: str | None):
    partner = db.query(Partner).filter(Partner.slug == slug).first()
    if partner:
        print(f"Partner {slug} already exists. Skipping.")
        return
    partner = Partner(
        slug=slug,
        name=slug.replace("-", " ").title(),
        intake_secret=secrets.token_hex(32),
        webhook_url=webhook_url,
        webhook_secret=secrets.token_hex(32) if webhook_url else None,
        delivery_folder=delivery_folder,
    )
    db.add(partner)
    print(f"Created partner {slug} with intake secret {partner.intake_secret}")


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--partner", help="slug of a partner to create")
    parser.add_argument("--webhook-url")
    parser.add_argument("--delivery-folder")
    args = parser.parse_args()

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_print_configs(db)
        if args.partner:
            seed_partner(db, args.partner, args.webhook_url, args.delivery_folder)
        db.commit()
        print("Successfully seeded database!")
    except Exception as e:
        print(f"Error seeding database: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
