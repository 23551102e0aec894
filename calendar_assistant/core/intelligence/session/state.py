"""Conversation stage machine."""

from enum import Enum
from typing import Set


class ConversationStage(str, Enum):
    """Stages of one scheduling negotiation."""

    IDLE = "idle"
    COLLECTING_PARAMS = "collecting_params"
    AWAITING_SLOT_CHOICE = "awaiting_slot_choice"
    DONE = "done"


# Valid stage transitions
VALID_TRANSITIONS: dict[ConversationStage, Set[ConversationStage]] = {
    ConversationStage.IDLE: {
        ConversationStage.COLLECTING_PARAMS,
        ConversationStage.AWAITING_SLOT_CHOICE,
        ConversationStage.DONE,  # Everything supplied and the slot was free
    },
    ConversationStage.COLLECTING_PARAMS: {
        ConversationStage.COLLECTING_PARAMS,
        ConversationStage.AWAITING_SLOT_CHOICE,
        ConversationStage.DONE,
        ConversationStage.IDLE,  # Cancelled
    },
    ConversationStage.AWAITING_SLOT_CHOICE: {
        ConversationStage.AWAITING_SLOT_CHOICE,  # Re-prompt
        ConversationStage.DONE,
        ConversationStage.IDLE,  # Cancelled
        ConversationStage.COLLECTING_PARAMS,  # New request replaced this one
    },
    ConversationStage.DONE: {
        ConversationStage.IDLE,
    },
}


def can_transition(from_stage: ConversationStage, to_stage: ConversationStage) -> bool:
    """Check if a stage transition is valid."""
    return to_stage in VALID_TRANSITIONS.get(from_stage, set())


def is_active_stage(stage: ConversationStage) -> bool:
    """Check if a negotiation is in progress."""
    return stage in {
        ConversationStage.COLLECTING_PARAMS,
        ConversationStage.AWAITING_SLOT_CHOICE,
    }
