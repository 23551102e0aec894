"""Conversation state module."""

from .state import ConversationStage, can_transition, is_active_stage
from .models import ConversationState, MeetingParams, REQUIRED_FIELDS
from .manager import ConversationStateTracker, get_state_tracker

__all__ = [
    # Stages
    "ConversationStage",
    "can_transition",
    "is_active_stage",
    # Models
    "ConversationState",
    "MeetingParams",
    "REQUIRED_FIELDS",
    # Tracker
    "ConversationStateTracker",
    "get_state_tracker",
]
