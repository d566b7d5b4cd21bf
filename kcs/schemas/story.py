"""
Typed shapes for the story's JSON columns.

`AssetPlan` and `PrintMetadata` are the full documents. Each stage writes
through a smaller view that names only the fields it owns; every field on a
view is required, so a stage cannot silently drop part of its slice.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Paragraph(BaseModel):
    index: int
    text: str


class FocusItem(BaseModel):
    label: str
    kind: str  # child, character, location, interest
    description: str | None = None


class AssetPlan(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Reading stage and style
    reading_stage: str | None = None
    reading_profile: dict[str, Any] | None = None
    style_prompt: str | None = None

    # Main character
    main_character_descriptor: str | None = None
    main_character_prompt: str | None = None
    main_character_image_url: str | None = None

    # Focus
    focus_list: list[str] = Field(default_factory=list)
    focus_items: list[FocusItem] = Field(default_factory=list)

    # Prompts
    paragraph_count: int = 0
    paragraphs: list[Paragraph] = Field(default_factory=list)
    image_prompt_list: list[str] = Field(default_factory=list)
    image_prompt_list_enhanced: list[str] = Field(default_factory=list)

    # Generation
    generated_links: list[str] = Field(default_factory=list)
    generation_status: dict[str, str] = Field(default_factory=dict)
    generation_ids: dict[str, str] = Field(default_factory=dict)
    generation_provider: dict[str, str] = Field(default_factory=dict)
    packaged_links: list[str] = Field(default_factory=list)

    # Packaging
    overlay_choice: str | None = None
    title_options: list[str] = Field(default_factory=list)
    blurb: str | None = None


class PlanView(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PlanInitView(PlanView):
    reading_stage: str
    reading_profile: dict[str, Any]
    style_prompt: str


class StyleView(PlanView):
    main_character_descriptor: str
    main_character_prompt: str


class FocusView(PlanView):
    focus_list: list[str]
    focus_items: list[FocusItem]


class PromptsView(PlanView):
    paragraph_count: int
    paragraphs: list[Paragraph]
    image_prompt_list: list[str]
    image_prompt_list_enhanced: list[str]


class GenerationView(PlanView):
    main_character_image_url: str
    generated_links: list[str]
    generation_status: dict[str, str]
    generation_ids: dict[str, str]
    generation_provider: dict[str, str]


class RefineView(PlanView):
    packaged_links: list[str]


class PackagingView(PlanView):
    overlay_choice: str
    title_options: list[str]
    blurb: str


class HandoffResult(BaseModel):
    status: str
    drive_folder_id: str | None = None
    drive_file_ids: dict[str, str] = Field(default_factory=dict)
    upload_errors: dict[str, str] = Field(default_factory=dict)
    webhook_delivered: bool | None = None
    completed_at: str | None = None


class PrintMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Cover
    cover_front: str | None = None
    cover_back: str | None = None
    cover_front_cmyk: str | None = None
    cover_back_cmyk: str | None = None
    cover_spread: str | None = None
    estimated_page_count: int | None = None
    cover_provider: str | None = None

    # Interior
    interior_images: list[str] = Field(default_factory=list)
    interior_scores: list[float | None] = Field(default_factory=list)

    # CMYK
    cmyk_covers: dict[str, str] = Field(default_factory=dict)
    cmyk_interior: list[str] = Field(default_factory=list)

    # Assembly
    inside_book_pdf: str | None = None
    page_count: int | None = None
    reading_age: str | None = None

    handoff: HandoffResult | None = None


class PrintView(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CoverView(PrintView):
    cover_front: str
    cover_back: str
    cover_front_cmyk: str
    cover_back_cmyk: str
    cover_spread: str
    estimated_page_count: int
    cover_provider: str


class InteriorView(PrintView):
    interior_images: list[str]
    interior_scores: list[float | None]


class CmykView(PrintView):
    cmyk_covers: dict[str, str]
    cmyk_interior: list[str]


class AssemblyView(PrintView):
    inside_book_pdf: str
    page_count: int
    reading_age: str


class HandoffView(PrintView):
    handoff: HandoffResult


class CharacterDescriptor(BaseModel):
    """Appearance notes parsed from a vision response."""

    model_config = ConfigDict(extra="allow")

    role: str
    ordinal: int = 0
    name: str | None = None
    hair: str | None = None
    eyes: str | None = None
    skin: str | None = None
    clothing: str | None = None
    features: str | None = None
    description: str | None = None
