"""Provider registry: routing, retries and fallback."""

import base64
import io

import pytest
import requests
from PIL import Image

from kcs.core.config import Settings
from kcs.core.exceptions import ProviderError, TransientProviderError
from kcs.services.providers import (
    ImageProvider,
    ImageResult,
    MockImageProvider,
    MockTextProvider,
    ProviderRegistry,
    StageRoute,
    TextProvider,
    build_registry,
    classify_sdk_error,
)


class ScriptedText(TextProvider):
    """Raises the queued errors in order, then answers."""

    default_model = "scripted-1"

    def __init__(self, name, errors=(), answer="ok"):
        self.name = name
        self.errors = list(errors)
        self.answer = answer
        self.calls = []

    def complete(self, stage, prompt, model, system_prompt=None):
        self.calls.append((stage, model))
        if self.errors:
            raise self.errors.pop(0)
        return self.answer


class BlankImage(ImageProvider):
    name = "blank"
    default_model = "blank-1"
    vision_model = "blank-vision"

    def generate(self, stage, prompt, model, width, height):
        return ImageResult(provider=self.name, model=model)

    def analyze(self, stage, prompt, image_urls, model):
        return ""


def make_registry(*providers, route=None, attempts=2):
    delays = []
    registry = ProviderRegistry(
        default_text_route=route or StageRoute(primary="primary", fallback="secondary"),
        default_image_route=StageRoute(primary="blank"),
        attempts=attempts,
        retry_delay=1.0,
        sleep=delays.append,
    )
    for provider in providers:
        registry.register_text(provider)
    return registry, delays


class TestRetriesAndFallback:
    def test_primary_answers(self):
        primary = ScriptedText("primary", answer="hello")
        registry, _ = make_registry(primary, ScriptedText("secondary"))

        response = registry.call("story_draft", "prompt")

        assert response.output == "hello"
        assert response.provider == "primary"
        assert response.model == "scripted-1"

    def test_transient_error_is_retried_with_backoff(self):
        primary = ScriptedText("primary", errors=[TransientProviderError("429")], answer="second try")
        registry, delays = make_registry(primary, ScriptedText("secondary"))

        response = registry.call("story_draft", "prompt")

        assert response.output == "second try"
        assert len(primary.calls) == 2
        assert delays == [1.0]

    def test_falls_back_after_retries_are_exhausted(self):
        primary = ScriptedText(
            "primary", errors=[TransientProviderError("503"), TransientProviderError("503")]
        )
        secondary = ScriptedText("secondary", answer="from fallback")
        registry, _ = make_registry(primary, secondary)

        response = registry.call("story_draft", "prompt")

        assert response.provider == "secondary"
        assert response.output == "from fallback"

    def test_permanent_error_is_not_retried(self):
        primary = ScriptedText("primary", errors=[ProviderError("bad request")])
        secondary = ScriptedText("secondary", answer="fallback")
        registry, delays = make_registry(primary, secondary)

        response = registry.call("story_draft", "prompt")

        assert len(primary.calls) == 1
        assert delays == []
        assert response.provider == "secondary"

    def test_error_without_fallback_propagates(self):
        primary = ScriptedText("primary", errors=[TransientProviderError("a"), TransientProviderError("b")])
        registry, _ = make_registry(primary, route=StageRoute(primary="primary"))

        with pytest.raises(TransientProviderError):
            registry.call("story_draft", "prompt")

    def test_unregistered_provider(self):
        registry, _ = make_registry(route=StageRoute(primary="nobody"))

        with pytest.raises(ProviderError):
            registry.call("story_draft", "prompt")

    def test_image_without_content_is_an_error(self):
        registry, _ = make_registry()
        registry.register_image(BlankImage())

        with pytest.raises(ProviderError):
            registry.generate_image("cover_front", "prompt", 64, 64)


class TestRouting:
    def test_stage_specific_route_and_model(self):
        primary = ScriptedText("primary")
        secondary = ScriptedText("secondary")
        registry, _ = make_registry(primary, secondary)
        registry.routes["story_polish"] = StageRoute(primary="secondary", model="big-model")

        response = registry.call("story_polish", "prompt")

        assert response.provider == "secondary"
        assert secondary.calls == [("story_polish", "big-model")]

    def test_route_from_dict(self):
        route = StageRoute.from_dict({"provider": "openai", "model": "gpt-image-1", "fallback": "mock"})
        assert route == StageRoute(primary="openai", model="gpt-image-1", fallback="mock")

    def test_mock_registry(self):
        registry = build_registry(Settings(PROVIDER_MODE="mock"))
        assert isinstance(registry.text_providers["mock"], MockTextProvider)
        assert isinstance(registry.image_providers["mock"], MockImageProvider)

    def test_live_registry_needs_a_key(self):
        settings = Settings(PROVIDER_MODE="live", OPENAI_API_KEY=None, ANTHROPIC_API_KEY=None)
        with pytest.raises(ValueError):
            build_registry(settings)


class TestClassification:
    def test_network_errors_are_transient(self):
        assert isinstance(classify_sdk_error(requests.ConnectionError("reset"), "openai"), TransientProviderError)
        assert isinstance(classify_sdk_error(TimeoutError(), "openai"), TransientProviderError)

    def test_status_codes(self):
        class HTTPish(Exception):
            def __init__(self, status_code):
                super().__init__(f"HTTP {status_code}")
                self.status_code = status_code

        assert isinstance(classify_sdk_error(HTTPish(429), "x"), TransientProviderError)
        assert isinstance(classify_sdk_error(HTTPish(502), "x"), TransientProviderError)
        error = classify_sdk_error(HTTPish(400), "x")
        assert type(error) is ProviderError
        assert error.provider == "x"


class TestMockProviders:
    def test_story_uses_child_name(self):
        text = MockTextProvider().complete("story_draft", "Child name: Maya\nOther: x", "mock-text")
        assert text.startswith("Maya found")
        assert text.count("\n\n") == 3

    def test_generated_image_size(self):
        result = MockImageProvider().generate("cover_front", "prompt", "mock-image", 32, 48)
        image = Image.open(io.BytesIO(base64.b64decode(result.image_base64)))
        assert image.size == (32, 48)
        assert result.generation_id
