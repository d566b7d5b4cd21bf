"""
Provider clients for text generation, image generation and vision.

Stages never talk to an SDK directly. They call the `ProviderRegistry` with a
logical stage name ("story_draft", "cover_front", "vision_score", ...) and the
registry picks the primary provider/model configured for that name, retries
transient failures a bounded number of times, then falls back to the
secondary provider if one is configured.

The registry is built once per worker process (see `kcs.tasks.runtime`) and
passed into stage handlers, so tests can hand in fakes.
"""

import base64
import hashlib
import io
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

import anthropic
import openai
import requests
from anthropic import Anthropic
from openai import OpenAI
from PIL import Image

from kcs.core.config import Settings
from kcs.core.exceptions import ProviderError, TransientProviderError
from kcs.core.metrics import record_provider_call

logger = logging.getLogger(__name__)


@dataclass
class ProviderResponse:
    """Result of a text or vision call."""

    output: str
    provider: str
    model: str


@dataclass
class ImageResult:
    """Result of an image generation call. Exactly one of url/image_base64 is set."""

    provider: str
    model: str
    url: str | None = None
    image_base64: str | None = None
    generation_id: str | None = None


@dataclass(frozen=True)
class StageRoute:
    """Primary and optional fallback provider for one logical stage."""

    primary: str
    model: str | None = None
    fallback: str | None = None
    fallback_model: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "StageRoute":
        return cls(
            primary=data.get("primary") or data["provider"],
            model=data.get("model"),
            fallback=data.get("fallback"),
            fallback_model=data.get("fallback_model"),
        )


class TextProvider(ABC):
    """A backend that turns a prompt into text."""

    name: str
    default_model: str

    @abstractmethod
    def complete(self, stage: str, prompt: str, model: str, system_prompt: str | None = None) -> str:
        pass


class ImageProvider(ABC):
    """A backend that generates images and answers questions about them."""

    name: str
    default_model: str
    vision_model: str

    @abstractmethod
    def generate(self, stage: str, prompt: str, model: str, width: int, height: int) -> ImageResult:
        pass

    @abstractmethod
    def analyze(self, stage: str, prompt: str, image_urls: list[str], model: str) -> str:
        pass


def classify_sdk_error(exc: Exception, provider: str) -> ProviderError:
    """Map SDK and network errors onto transient or permanent provider errors."""
    if isinstance(exc, ProviderError):
        return exc
    transient_types = (
        anthropic.APIConnectionError,
        anthropic.RateLimitError,
        anthropic.InternalServerError,
        openai.APIConnectionError,
        openai.RateLimitError,
        openai.InternalServerError,
        requests.ConnectionError,
        requests.Timeout,
        TimeoutError,
    )
    if isinstance(exc, transient_types):
        return TransientProviderError(f"{provider}: {exc}", provider=provider)
    status = getattr(exc, "status_code", None)
    if status is not None and (status == 429 or status >= 500):
        return TransientProviderError(f"{provider}: {exc}", provider=provider)
    return ProviderError(f"{provider}: {exc}", provider=provider)


# ---------------------------------------------------------------------------
# Live providers
# ---------------------------------------------------------------------------


class AnthropicTextProvider(TextProvider):
    """Anthropic Claude client."""

    name = "anthropic"
    default_model = "claude-3-5-sonnet-20241022"

    def __init__(self, api_key: str):
        self.client = Anthropic(api_key=api_key)

    def complete(self, stage, prompt, model, system_prompt=None):
        message = self.client.messages.create(
            model=model,
            max_tokens=4096,
            temperature=0.7,
            system=system_prompt or "You write warm, age-appropriate children's stories.",
            messages=[{"role": "user", "content": prompt}],
        )
        return message.content[0].text if message.content else ""


class OpenAITextProvider(TextProvider):
    """OpenAI GPT client."""

    name = "openai"
    default_model = "gpt-4o"

    def __init__(self, api_key: str):
        self.client = OpenAI(api_key=api_key)

    def complete(self, stage, prompt, model, system_prompt=None):
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        response = self.client.chat.completions.create(
            model=model, messages=messages, max_tokens=4096, temperature=0.7
        )
        return response.choices[0].message.content or ""


class OpenAIImageProvider(ImageProvider):
    """OpenAI images API for generation, chat completions for vision."""

    name = "openai"
    default_model = "gpt-image-1"
    vision_model = "gpt-4o"

    def __init__(self, api_key: str):
        self.client = OpenAI(api_key=api_key)

    def generate(self, stage, prompt, model, width, height):
        # The images API only accepts a few fixed sizes; print sizing happens later
        response = self.client.images.generate(
            model=model, prompt=prompt, size="1024x1024", n=1
        )
        item = response.data[0]
        return ImageResult(
            provider=self.name,
            model=model,
            url=getattr(item, "url", None),
            image_base64=getattr(item, "b64_json", None),
            generation_id=str(getattr(response, "created", "")) or None,
        )

    def analyze(self, stage, prompt, image_urls, model):
        content = [{"type": "text", "text": prompt}]
        content.extend({"type": "image_url", "image_url": {"url": url}} for url in image_urls)
        response = self.client.chat.completions.create(
            model=model, messages=[{"role": "user", "content": content}], max_tokens=1024
        )
        return response.choices[0].message.content or ""


# ---------------------------------------------------------------------------
# Mock providers (local development and tests)
# ---------------------------------------------------------------------------

MOCK_STORY = (
    "{name} found a tiny map tucked inside a library book.\n\n"
    "The map led past the old oak tree, where a friendly fox was waiting.\n\n"
    "Together they followed the stream to a hidden garden full of glowing flowers.\n\n"
    "{name} planted a seed of kindness and walked home smiling under the stars."
)

MOCK_TEXT_RESPONSES = {
    "style_main_character": (
        "A cheerful child with curly brown hair, bright green eyes and a yellow raincoat, "
        "painted in soft watercolour."
    ),
    "emotional_profile": '{"primary_emotion": "wonder", "arc": "curiosity to confidence"}',
    "story_outline": "1. Discovery\n2. A new friend\n3. The hidden garden\n4. Home again",
    "story_critique": "Pacing is good. Add more sensory detail in the garden scene.",
    "story_paragraph_prompt": "Watercolour illustration of the scene, child in the foreground",
    "story_prompt_enhance": (
        "Soft watercolour illustration, warm evening light, child in yellow raincoat, "
        "storybook composition"
    ),
    "story_packaging_titles": "The Hidden Garden\nThe Map in the Library\nA Seed of Kindness",
    "story_packaging_blurb": "A gentle adventure about curiosity, friendship and kindness.",
}

MOCK_VISION_RESPONSES = {
    "image_analysis_child": (
        "{hair}: curly brown hair\n{eyes}: green eyes\n{skin}: light skin\n"
        "{clothing}: yellow raincoat\n{features}: freckles"
    ),
    "image_analysis_supporting": "{hair}: short grey hair\n{clothing}: blue cardigan",
    "image_analysis_location": "{description}: a sunny park with a pond and tall trees",
    "vision_score": "Image 1: 7\nImage 2: 8",
    "overlay_position": "b",
}


class MockTextProvider(TextProvider):
    """Deterministic text responses keyed by logical stage."""

    name = "mock"
    default_model = "mock-text"

    def complete(self, stage, prompt, model, system_prompt=None):
        if stage in ("story_draft", "story_revision", "story_polish"):
            name = "The child"
            for line in prompt.splitlines():
                if line.lower().startswith("child name:"):
                    name = line.split(":", 1)[1].strip() or name
            return MOCK_STORY.format(name=name)
        return MOCK_TEXT_RESPONSES.get(stage, f"[{stage}] {prompt[:80]}")


class MockImageProvider(ImageProvider):
    """Solid-colour PNGs whose colour is derived from the prompt."""

    name = "mock"
    default_model = "mock-image"
    vision_model = "mock-vision"

    def generate(self, stage, prompt, model, width, height):
        digest = hashlib.sha256(f"{stage}:{prompt}".encode()).digest()
        image = Image.new("RGB", (width, height), (digest[0], digest[1], digest[2]))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return ImageResult(
            provider=self.name,
            model=model,
            image_base64=base64.b64encode(buffer.getvalue()).decode("ascii"),
            generation_id=digest.hex()[:16],
        )

    def analyze(self, stage, prompt, image_urls, model):
        return MOCK_VISION_RESPONSES.get(stage, "")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass
class ProviderRegistry:
    """Providers available to this process plus the per-stage routing table."""

    default_text_route: StageRoute
    default_image_route: StageRoute
    routes: dict[str, StageRoute] = field(default_factory=dict)
    attempts: int = 2
    retry_delay: float = 1.0
    sleep: Callable[[float], None] = time.sleep
    text_providers: dict[str, TextProvider] = field(default_factory=dict)
    image_providers: dict[str, ImageProvider] = field(default_factory=dict)

    def register_text(self, provider: TextProvider) -> None:
        self.text_providers[provider.name] = provider

    def register_image(self, provider: ImageProvider) -> None:
        self.image_providers[provider.name] = provider

    def route_for(self, stage: str, kind: str) -> StageRoute:
        if stage in self.routes:
            return self.routes[stage]
        return self.default_text_route if kind == "text" else self.default_image_route

    def call(
        self,
        stage: str,
        prompt: str,
        system_prompt: str | None = None,
        route: StageRoute | None = None,
    ) -> ProviderResponse:
        """Text generation for a logical stage."""
        route = route or self.route_for(stage, "text")

        def attempt(name: str, model: str | None) -> ProviderResponse:
            provider = self._text_provider(name)
            model = model or provider.default_model
            output = provider.complete(stage, prompt, model, system_prompt)
            return ProviderResponse(output=output, provider=name, model=model)

        return self._dispatch(stage, "text", route, attempt)

    def generate_image(
        self,
        stage: str,
        prompt: str,
        width: int,
        height: int,
        route: StageRoute | None = None,
    ) -> ImageResult:
        route = route or self.route_for(stage, "image")

        def attempt(name: str, model: str | None) -> ImageResult:
            provider = self._image_provider(name)
            model = model or provider.default_model
            result = provider.generate(stage, prompt, model, width, height)
            if not result.url and not result.image_base64:
                raise ProviderError(f"{name} returned no image", provider=name)
            return result

        return self._dispatch(stage, "image", route, attempt)

    def analyze_images(
        self,
        stage: str,
        prompt: str,
        image_urls: list[str],
        route: StageRoute | None = None,
    ) -> ProviderResponse:
        """Vision call. An empty url list is allowed and sends the prompt alone."""
        route = route or self.route_for(stage, "image")

        def attempt(name: str, model: str | None) -> ProviderResponse:
            provider = self._image_provider(name)
            model = model or provider.vision_model
            output = provider.analyze(stage, prompt, image_urls, model)
            return ProviderResponse(output=output, provider=name, model=model)

        return self._dispatch(stage, "vision", route, attempt)

    def _text_provider(self, name: str) -> TextProvider:
        if name not in self.text_providers:
            raise ProviderError(f"No text provider registered as '{name}'", provider=name)
        return self.text_providers[name]

    def _image_provider(self, name: str) -> ImageProvider:
        if name not in self.image_providers:
            raise ProviderError(f"No image provider registered as '{name}'", provider=name)
        return self.image_providers[name]

    def _dispatch(self, stage, operation, route: StageRoute, attempt):
        candidates = [(route.primary, route.model)]
        if route.fallback:
            candidates.append((route.fallback, route.fallback_model))

        last_error: ProviderError | None = None
        for index, (name, model) in enumerate(candidates):
            try:
                return self._with_retry(stage, operation, name, model, attempt)
            except ProviderError as exc:
                last_error = exc
                if index + 1 < len(candidates):
                    logger.warning(f"{operation} call for {stage} failed on {name}, trying fallback: {exc}")
        raise last_error

    def _with_retry(self, stage, operation, name, model, attempt):
        for i in range(max(1, self.attempts)):
            started = time.monotonic()
            try:
                result = attempt(name, model)
            except Exception as exc:
                error = classify_sdk_error(exc, name)
                record_provider_call(name, model or "default", operation, "error", time.monotonic() - started)
                if not isinstance(error, TransientProviderError) or i + 1 >= self.attempts:
                    if error is exc:
                        raise
                    raise error from exc
                delay = self.retry_delay * (2 ** i)
                logger.info(f"Transient {operation} error for {stage} on {name}, retrying in {delay:.1f}s: {exc}")
                self.sleep(delay)
                continue
            record_provider_call(name, result.model, operation, "success", time.monotonic() - started)
            return result


def build_registry(settings: Settings) -> ProviderRegistry:
    """Create the registry for this process from settings."""
    if settings.PROVIDER_MODE == "mock":
        registry = ProviderRegistry(
            default_text_route=StageRoute(primary="mock"),
            default_image_route=StageRoute(primary="mock"),
            attempts=settings.PROVIDER_CALL_ATTEMPTS,
            retry_delay=settings.PROVIDER_RETRY_DELAY_SECONDS,
        )
        registry.register_text(MockTextProvider())
        registry.register_image(MockImageProvider())
        return registry

    registry = ProviderRegistry(
        default_text_route=StageRoute(
            primary=settings.DEFAULT_TEXT_PROVIDER, fallback=settings.DEFAULT_TEXT_FALLBACK
        ),
        default_image_route=StageRoute(primary=settings.DEFAULT_IMAGE_PROVIDER),
        routes={
            stage: StageRoute.from_dict(route)
            for stage, route in settings.PROVIDER_ROUTES.items()
        },
        attempts=settings.PROVIDER_CALL_ATTEMPTS,
        retry_delay=settings.PROVIDER_RETRY_DELAY_SECONDS,
    )
    if settings.ANTHROPIC_API_KEY:
        registry.register_text(AnthropicTextProvider(settings.ANTHROPIC_API_KEY))
    if settings.OPENAI_API_KEY:
        registry.register_text(OpenAITextProvider(settings.OPENAI_API_KEY))
        registry.register_image(OpenAIImageProvider(settings.OPENAI_API_KEY))
    if not registry.text_providers:
        raise ValueError("PROVIDER_MODE=live needs ANTHROPIC_API_KEY or OPENAI_API_KEY")
    return registry
