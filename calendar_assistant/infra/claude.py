"""
Claude API Client

The assistant asks the model for two things: a JSON classification of each
utterance and, now and then, a short free-text answer to a general calendar
question. Transport retries are left to the Anthropic SDK; this wrapper adds
a fallback model and JSON extraction.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from anthropic import APIConnectionError, APIStatusError, APITimeoutError, AsyncAnthropic

from calendar_assistant.config import settings

logger = logging.getLogger(__name__)

# Errors worth a second attempt on the fallback model
RECOVERABLE_ERRORS = (APIConnectionError, APITimeoutError, APIStatusError)


class ClaudeClientError(Exception):
    """A Claude call failed or returned output the caller cannot use."""


@dataclass
class ClaudeResponse:
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Pull the first JSON object out of a model reply.

    Models sometimes wrap the object in a ```json fence or add a sentence
    around it; everything outside the outermost braces is ignored.

    Raises:
        ClaudeClientError: if no object can be decoded
    """
    start = text.find("{")
    if start == -1:
        raise ClaudeClientError("No JSON object in model reply")

    try:
        data, _ = json.JSONDecoder().raw_decode(text[start:])
    except json.JSONDecodeError as e:
        raise ClaudeClientError(f"Unparsable JSON from model: {e}") from e

    if not isinstance(data, dict):
        raise ClaudeClientError(f"Expected JSON object, got {type(data).__name__}")
    return data


class ClaudeClient:
    """Async wrapper around AsyncAnthropic with a fallback model."""

    def __init__(self, api_key: Optional[str] = None, client: Optional[AsyncAnthropic] = None):
        api_key = api_key or settings.anthropic_api_key
        if client is None and not api_key:
            raise ClaudeClientError("ANTHROPIC_API_KEY is not set")

        self._client = client or AsyncAnthropic(
            api_key=api_key,
            max_retries=2,
            timeout=settings.claude_timeout,
        )
        self._default_model = settings.claude_intent_model
        self._fallback_model = settings.claude_fallback_model

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.0,
        use_fallback_on_error: bool = True,
    ) -> ClaudeResponse:
        """
        Send one user message and return the text reply.

        Raises:
            ClaudeClientError: if the call fails (after the fallback model,
                when enabled)
        """
        model = model or self._default_model
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        started = time.perf_counter()
        try:
            message = await self._client.messages.create(**kwargs)
        except RECOVERABLE_ERRORS as e:
            if use_fallback_on_error and model != self._fallback_model:
                logger.warning(f"{model} failed ({type(e).__name__}); retrying on {self._fallback_model}")
                return await self.generate(
                    prompt,
                    system_prompt=system_prompt,
                    model=self._fallback_model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    use_fallback_on_error=False,
                )
            raise ClaudeClientError(f"Claude API call failed: {e}") from e

        text = "".join(block.text for block in message.content if getattr(block, "type", "") == "text")
        latency_ms = (time.perf_counter() - started) * 1000
        logger.debug(f"{model} replied in {latency_ms:.0f}ms")

        return ClaudeResponse(
            content=text,
            model=model,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
            latency_ms=latency_ms,
        )

    async def classify_json(
        self,
        system_prompt: str,
        utterance: str,
        model: Optional[str] = None,
        max_tokens: int = 300,
    ) -> dict[str, Any]:
        """
        Run a classification prompt and return the reply as a dict.

        The fallback model is not used: a degraded classification is cheaper
        than a second slow call in the middle of a chat turn.
        """
        response = await self.generate(
            prompt=utterance,
            system_prompt=system_prompt,
            model=model,
            max_tokens=max_tokens,
            temperature=0.0,
            use_fallback_on_error=False,
        )
        return extract_json_object(response.content)

    async def close(self) -> None:
        await self._client.close()


_client: Optional[ClaudeClient] = None


async def get_claude_client() -> ClaudeClient:
    """Get singleton ClaudeClient."""
    global _client
    if _client is None:
        _client = ClaudeClient()
    return _client
