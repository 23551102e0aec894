"""
Intelligence Layer Module

Intent classification and conversation state for the calendar assistant.

Usage:
    from calendar_assistant.core.intelligence import (
        classify_intent,
        get_state_tracker,
    )

    tracker = await get_state_tracker()
    state = await tracker.get("user-123")

    result = await classify_intent("Book a sync tomorrow at 2pm", state.context())
    print(result.type)  # IntentType.CREATE_MEETING
"""

# Intent Classification
from calendar_assistant.core.intelligence.intent.types import IntentType, IntentResult
from calendar_assistant.core.intelligence.intent.classifier import (
    IntentClassifier,
    get_intent_classifier,
    classify_intent,
)

# Conversation State
from calendar_assistant.core.intelligence.session.state import (
    ConversationStage,
    can_transition,
    is_active_stage,
)
from calendar_assistant.core.intelligence.session.models import ConversationState, MeetingParams
from calendar_assistant.core.intelligence.session.manager import (
    ConversationStateTracker,
    get_state_tracker,
)

__all__ = [
    # Intent
    "IntentType",
    "IntentResult",
    "IntentClassifier",
    "get_intent_classifier",
    "classify_intent",
    # Conversation State
    "ConversationStage",
    "can_transition",
    "is_active_stage",
    "ConversationState",
    "MeetingParams",
    "ConversationStateTracker",
    "get_state_tracker",
]
