"""
Intent classification.

Replies to an offered slot list ("2", "14:00", "cancel") are resolved
locally; everything else goes to Claude Haiku with a JSON-only prompt.
Any model failure degrades to general_query instead of raising.
"""

import logging
import re
import time
from datetime import datetime
from typing import Any, Optional

from calendar_assistant.config import settings
from calendar_assistant.infra.claude import ClaudeClient, ClaudeClientError, get_claude_client
from .normalizer import find_time, get_zone, normalize_params, parse_date
from .types import IntentResult, IntentType

logger = logging.getLogger(__name__)

SLOT_INDEX = re.compile(r"^\s*(\d+)\s*$")
SLOT_TIME = re.compile(r"^\s*(\d{1,2}:\d{2})\s*$")
CANCEL = re.compile(r"^\s*cancel\s*$", re.IGNORECASE)

ACTIVE_STAGES = {"collecting_params", "awaiting_slot_choice"}


CLASSIFICATION_PROMPT = """You are the intent classifier for a calendar assistant that schedules meetings on Google Calendar and Microsoft Outlook.

Today is {today} ({weekday}) in the user's timezone ({timezone}).

Classify the user's message into ONE type:
- create_meeting: the user wants to schedule / book / set up a new meeting
- check_schedule: the user wants to see what is on their calendar
- slot_selection: the user is picking one of the time slots they were offered
- general_query: anything else

{context}

Extract parameters when present (omit keys you cannot fill):
- title: short meeting title
- date: YYYY-MM-DD (resolve "tomorrow", "next Monday" against today)
- time: HH:MM 24-hour start time
- duration: minutes as an integer
- attendees: list of e-mail addresses
- description: agenda or notes
- provider: "google" or "microsoft" if the user names a calendar
- time_range: "morning", "afternoon" or "evening" (check_schedule only)
- choice: the option number or HH:MM the user picked (slot_selection only)

Respond with ONLY valid JSON:
{{"type": "<type>", "params": {{...}}}}"""


class IntentClassifier:
    """
    Utterance classifier.

    Local rules first (cheap and deterministic), then Claude Haiku.
    """

    def __init__(self, claude_client: Optional[ClaudeClient] = None):
        """Initialize classifier.

        Args:
            claude_client: Optional Claude client (for testing)
        """
        self._client = claude_client

    async def _get_client(self) -> ClaudeClient:
        """Get or create Claude client."""
        if self._client is None:
            self._client = await get_claude_client()
        return self._client

    async def classify(
        self,
        utterance: str,
        context: Optional[dict] = None,
        model: Optional[str] = None,
    ) -> IntentResult:
        """
        Classify a user utterance.

        Args:
            utterance: Raw user text
            context: Conversation context (stage, timezone, expected_field)
            model: Model chosen for this request (defaults to the intent model)

        Returns:
            IntentResult; never raises
        """
        context = context or {}
        utterance = utterance.strip()
        start_time = time.time()

        if not utterance:
            return IntentResult(type=IntentType.GENERAL_QUERY, local=True)

        local = self._classify_locally(utterance, context.get("stage"))
        if local is not None:
            logger.debug(f"Resolved locally: {local.type.value} {local.params}")
            return local

        tz = get_zone(context.get("timezone"), settings.default_timezone)
        today = datetime.now(tz).date()

        try:
            client = await self._get_client()
            data = await client.classify_json(
                system_prompt=self._build_prompt(today, tz.key, context),
                utterance=utterance,
                model=model or settings.claude_intent_model,
            )
            result = self._parse_response(data, utterance, today)
        except ClaudeClientError as e:
            logger.error(f"Claude API error: {e}")
            result = self._degraded()
        except Exception as e:
            logger.error(f"Classification failed: {e}")
            result = self._degraded()

        result.processing_time_ms = (time.time() - start_time) * 1000
        logger.debug(f"Classified intent: {result.type.value} params={list(result.params)}")
        return result

    def _classify_locally(self, utterance: str, stage: Optional[str]) -> Optional[IntentResult]:
        """Short-circuit replies that need no language model."""
        if stage in ACTIVE_STAGES and CANCEL.match(utterance):
            return IntentResult(
                type=IntentType.SLOT_SELECTION,
                params={"cancel": True},
                local=True,
            )

        if stage != "awaiting_slot_choice":
            return None

        match = SLOT_INDEX.match(utterance) or SLOT_TIME.match(utterance)
        if match:
            return IntentResult(
                type=IntentType.SLOT_SELECTION,
                params={"choice": match.group(1)},
                local=True,
            )
        return None

    def _build_prompt(self, today, tz_name: str, context: dict) -> str:
        parts = []
        if context.get("stage"):
            parts.append(f"Conversation stage: {context['stage']}")
        if context.get("expected_field"):
            parts.append(f"The assistant just asked the user for: {context['expected_field']}")
            parts.append(
                "If the message answers that question, classify it as create_meeting "
                "and put the answer in params; a question of its own is general_query."
            )
        if context.get("offered_slots"):
            parts.append(f"The user was offered {context['offered_slots']} time slots")

        return CLASSIFICATION_PROMPT.format(
            today=today.isoformat(),
            weekday=today.strftime("%A"),
            timezone=tz_name,
            context="\n".join(parts) if parts else "New conversation, no prior context.",
        )

    def _parse_response(self, data: dict[str, Any], utterance: str, today) -> IntentResult:
        """Validate the model's JSON and normalize its parameters."""
        type_str = str(data.get("type", "")).strip().lower()
        try:
            intent_type = IntentType(type_str)
        except ValueError:
            logger.warning(f"Unknown intent type from model: {type_str!r}")
            return self._degraded(raw=str(data))

        raw_params = data.get("params")
        if not isinstance(raw_params, dict):
            raw_params = {}

        params = normalize_params(raw_params, today)

        if intent_type == IntentType.CREATE_MEETING:
            # Fill what the model missed from the text itself
            if "date" not in params:
                heuristic_date = parse_date(utterance, today)
                if heuristic_date:
                    params["date"] = heuristic_date
            if "time" not in params:
                heuristic_time = find_time(utterance)
                if heuristic_time:
                    params["time"] = heuristic_time

        if intent_type == IntentType.SLOT_SELECTION and raw_params.get("choice") is not None:
            params["choice"] = str(raw_params["choice"]).strip()

        return IntentResult(type=intent_type, params=params, raw_response=str(data))

    def _degraded(self, raw: Optional[str] = None) -> IntentResult:
        return IntentResult(
            type=IntentType.GENERAL_QUERY,
            degraded=True,
            raw_response=raw,
        )


# Singleton
_classifier: Optional[IntentClassifier] = None


async def get_intent_classifier() -> IntentClassifier:
    """Get singleton IntentClassifier."""
    global _classifier
    if _classifier is None:
        _classifier = IntentClassifier()
    return _classifier


async def classify_intent(
    utterance: str,
    context: Optional[dict] = None,
    model: Optional[str] = None,
) -> IntentResult:
    """Convenience function to classify intent."""
    classifier = await get_intent_classifier()
    return await classifier.classify(utterance, context, model=model)
