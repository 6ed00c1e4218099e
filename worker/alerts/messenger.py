"""
Message generation for matched triggers.

Implements ``MessageGenerator.render(trigger, match) -> str``. The trigger's
notification style selects one handler:

    - ``CUSTOM_TEMPLATE`` -- ``{{token}}`` substitution, deterministic.
    - ``LOCAL_VOICE``     -- short casual update from the text generation service.
    - ``HYPED_VOICE``     -- short excited update from the text generation service.

Voice styles go through a ``TextGenerator`` with a per-call timeout. Any
failure there (timeout, service error, empty or non-text response) is logged
and replaced by ``fallback_message``, so a genuine match always gets text.
A custom-template trigger with an empty template is rendered in the local
voice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

from worker.alerts.logic.templates import (
    build_push_title,
    build_subject,
    fallback_message,
    interpolate_template,
    template_tokens,
)
from worker.alerts.models import (
    ConditionLabel,
    MatchResult,
    NotificationStyle,
    RenderedMessage,
    Trigger,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-haiku-4-5-20251001"
DEFAULT_MAX_TOKENS = 150


class GenerationError(Exception):
    """Raised when the text generation service returns nothing usable."""


class TextGenerator(Protocol):
    """Narrow interface over the external text generation service."""

    async def generate(self, instruction: str, facts: dict[str, str]) -> str:
        ...


# ---------------------------------------------------------------------------
# Style guides
# ---------------------------------------------------------------------------

LOCAL_STYLE_GUIDE = (
    "Write like a chill local surfer giving a quick update. Be casual, brief, "
    "no fluff. Use simple language. Don't use emojis unless the conditions are "
    "truly epic.\n"
    'Example tone: "Looking solid out there. 4-5ft, clean, rising tide. '
    'Worth checking."'
)

HYPED_STYLE_GUIDE = (
    "Write like an excited surf forecaster who's stoked about the conditions. "
    "Be energetic and enthusiastic. Use 1-2 emojis max.\n"
    "Example tone: \"It's PUMPING! 🔥 6ft sets rolling through, offshore "
    'winds, this is what we\'ve been waiting for!"'
)

_REQUIREMENTS = (
    "Requirements:\n"
    "- Keep it under 2 sentences\n"
    "- Just the message, no greeting or sign-off\n"
    "- Be specific about what makes it good right now"
)


def build_instruction(style: NotificationStyle, spot_name: str) -> str:
    guide = HYPED_STYLE_GUIDE if style == NotificationStyle.HYPED_VOICE else LOCAL_STYLE_GUIDE
    return (
        f"Generate a short surf alert message for {spot_name}.\n\n"
        f"{guide}\n\n"
        f"{_REQUIREMENTS}"
    )


def _fmt(value: float) -> str:
    return f"{value:g}"


def build_facts(trigger: Trigger, match: MatchResult) -> dict[str, str]:
    """Condition values as labelled facts for the generation prompt."""
    values = match.values
    if trigger.condition == ConditionLabel.EPIC:
        label = "EPIC"
    elif trigger.condition == ConditionLabel.GOOD:
        label = "good"
    else:
        label = "decent"

    facts = {
        "Conditions": label,
        "Wave height": f"{_fmt(values.wave_height)}ft",
        "Wave period": f"{_fmt(values.wave_period)}s",
        "Swell direction": f"{_fmt(values.swell_direction)}°",
        "Wind": f"{_fmt(values.wind_speed)} knots {values.wind_direction}",
    }
    if values.tide_height is not None:
        facts["Tide"] = f"{_fmt(values.tide_height)}ft {values.tide_direction or ''}".strip()
    return facts


# ---------------------------------------------------------------------------
# Anthropic-backed generator
# ---------------------------------------------------------------------------


class AnthropicTextGenerator:
    """``TextGenerator`` backed by the Anthropic Messages API.

    The SDK client is created on first use so that a missing API key only
    matters once a voice-style alert actually needs generating.

    Parameters
    ----------
    api_key : str or None
        Anthropic API key.
    model : str
        Model name.
    max_tokens : int
        Output cap; alerts are one or two sentences.
    timeout : float
        SDK-level request timeout in seconds.
    """

    def __init__(
        self,
        api_key: str | None,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            import anthropic

            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    async def generate(self, instruction: str, facts: dict[str, str]) -> str:
        lines = "\n".join(f"- {key}: {value}" for key, value in facts.items())
        prompt = f"{instruction}\n\nCurrent conditions:\n{lines}"

        client = self._get_client()
        response = await client.messages.create(
            model=self._model,
            max_tokens=self._max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )

        if not response.content:
            raise GenerationError("empty response")
        block = response.content[0]
        if getattr(block, "type", None) != "text":
            raise GenerationError(f"unexpected content block type {block.type!r}")
        text = block.text.strip()
        if not text:
            raise GenerationError("blank text")
        return text

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


# ---------------------------------------------------------------------------
# Message generator
# ---------------------------------------------------------------------------


class MessageGenerator:
    """Renders alert text for a matched trigger.

    Parameters
    ----------
    text_generator : TextGenerator or None
        Service used by the voice styles. When ``None``, voice styles go
        straight to the fallback message.
    timeout_seconds : float
        Per-call timeout for the text generation service.
    concurrency : int
        Maximum number of in-flight generation calls.
    """

    def __init__(
        self,
        text_generator: TextGenerator | None,
        timeout_seconds: float = 10.0,
        concurrency: int = 4,
    ) -> None:
        self._text_generator = text_generator
        self._timeout = timeout_seconds
        self._semaphore = asyncio.Semaphore(concurrency)
        self._handlers: dict[
            NotificationStyle, Callable[[Trigger, MatchResult], Awaitable[str]]
        ] = {
            NotificationStyle.CUSTOM_TEMPLATE: self._render_template,
            NotificationStyle.LOCAL_VOICE: self._render_voice,
            NotificationStyle.HYPED_VOICE: self._render_voice,
        }

    @staticmethod
    def style_for(trigger: Trigger) -> NotificationStyle:
        """Effective style: unset means local voice, and so does an empty template."""
        style = trigger.notification_style or NotificationStyle.LOCAL_VOICE
        if style == NotificationStyle.CUSTOM_TEMPLATE and not (trigger.message_template or "").strip():
            return NotificationStyle.LOCAL_VOICE
        return style

    async def render(self, trigger: Trigger, match: MatchResult) -> str:
        """Produce alert text; never raises for generation failures."""
        handler = self._handlers[self.style_for(trigger)]
        return await handler(trigger, match)

    async def build(self, trigger: Trigger, match: MatchResult) -> RenderedMessage:
        body = await self.render(trigger, match)
        return RenderedMessage(
            subject=build_subject(trigger.emoji, trigger.spot.name, trigger.condition),
            body=body,
            push_title=build_push_title(trigger.emoji, trigger.spot.name),
        )

    # -- handlers -----------------------------------------------------------

    async def _render_template(self, trigger: Trigger, match: MatchResult) -> str:
        tokens = template_tokens(
            trigger.spot.name, trigger.name, trigger.condition, match.values
        )
        return interpolate_template(trigger.message_template or "", tokens)

    async def _render_voice(self, trigger: Trigger, match: MatchResult) -> str:
        fallback = fallback_message(trigger.spot.name, trigger.condition, match.values)
        if self._text_generator is None:
            return fallback

        style = self.style_for(trigger)
        instruction = build_instruction(style, trigger.spot.name)
        facts = build_facts(trigger, match)

        try:
            async with self._semaphore:
                return await asyncio.wait_for(
                    self._text_generator.generate(instruction, facts),
                    timeout=self._timeout,
                )
        except asyncio.TimeoutError:
            logger.warning(
                "Text generation timed out after %.1fs for trigger=%s; using fallback",
                self._timeout,
                trigger.id,
            )
        except GenerationError as exc:
            logger.warning(
                "Text generation returned no usable text for trigger=%s: %s; using fallback",
                trigger.id,
                exc,
            )
        except Exception:
            logger.warning(
                "Text generation failed for trigger=%s; using fallback",
                trigger.id,
                exc_info=True,
            )
        return fallback
