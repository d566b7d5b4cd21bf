"""
Reading stage profiles.

Partners send the reading level as a human label ("KS1 Confident, Approx age
6-7"). Story stages need word limits and tone guidance; the print stages
need the reading-age key their print configuration is stored under.
"""

from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class ReadingStageProfile:
    stage: str
    max_words: int
    target_age: int
    print_age: str
    vocab: str
    reference_books: str
    tone_note: str
    sentence_guidance: str

    def to_dict(self) -> dict:
        return asdict(self)


PROFILES = {
    "Nursery & Reception, Approx age 3-5": ReadingStageProfile(
        stage="Nursery-Rec",
        max_words=25,
        target_age=4,
        print_age="3-4",
        vocab="CVC words, heavy picture cues",
        reference_books="The Very Hungry Caterpillar, Goodnight Moon, Owl Babies",
        tone_note="Use repetition, soft emotion, and safe curiosity. Keep the story quiet, rhythmic, and gentle.",
        sentence_guidance="Very short, one-clause sentences. Lots of repetition.",
    ),
    "Early KS1 Reader, Approx age 5-6": ReadingStageProfile(
        stage="Early-KS1",
        max_words=40,
        target_age=6,
        print_age="4-6",
        vocab="simple sight words + digraphs",
        reference_books="Zog, We're Going on a Bear Hunt, Stick Man",
        tone_note="Let the story move quickly but simply. Add gentle challenges or fun cause-and-effect moments.",
        sentence_guidance="One idea per sentence. Some dialogue and light description okay.",
    ),
    "KS1 Confident, Approx age 6-7": ReadingStageProfile(
        stage="KS1-Conf",
        max_words=60,
        target_age=7,
        print_age="6-7",
        vocab="two-clause sentences",
        reference_books="Flat Stanley, Katie in London, The Tiger Who Came to Tea",
        tone_note="Introduce simple journeys, emotional shifts, or small surprises. Keep a playful but clear narrative.",
        sentence_guidance="Compound sentences allowed. Dialogue and narration should be balanced.",
    ),
    "Lower KS2 Starter, Approx age 7-8": ReadingStageProfile(
        stage="LKS2-Start",
        max_words=100,
        target_age=8,
        print_age="8",
        vocab="intro figurative language",
        reference_books="The Twits, Magic Tree House, Dog Man",
        tone_note="The main character should face a real challenge. Let imagination and humour mix with vivid action.",
        sentence_guidance="Vary sentence openers. Add character agency and lively language.",
    ),
    "Lower KS2 Confident, Approx age 8-9": ReadingStageProfile(
        stage="LKS2-Conf",
        max_words=120,
        target_age=9,
        print_age="8",
        vocab="varied openers, dialogue tags",
        reference_books="Charlotte's Web, The Worst Witch, Amelia Fang",
        tone_note="Let the story feel deeper, with stronger emotion, growth, or surprise. It should still end gently and safely.",
        sentence_guidance="Use layered sentence structures with clear grammar. Emotional beats and pacing matter.",
    ),
}

FALLBACK_PROFILE = PROFILES["Nursery & Reception, Approx age 3-5"]


def get_reading_stage_profile(label: str | None) -> ReadingStageProfile:
    if not label:
        return FALLBACK_PROFILE
    return PROFILES.get(label.strip(), FALLBACK_PROFILE)
