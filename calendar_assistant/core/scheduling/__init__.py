"""
Scheduling Module

Provides the scheduling engine, availability resolution, reply composition
and conversation flow for the calendar assistant.

Usage:
    from calendar_assistant.core.scheduling import process_turn

    response = await process_turn(
        user_id="user-123",
        utterance="Set up a project sync tomorrow at 2pm",
        timezone_name="Europe/Berlin",
    )
    print(response.message)   # Reply text
    print(response.code)      # booked, follow_up, choose_slot, ...
"""

# Availability
from calendar_assistant.core.scheduling.availability import (
    AvailabilityResolver,
    AvailabilityResult,
    get_availability_resolver,
    merge_busy,
    is_free,
)

# Response Composer
from calendar_assistant.core.scheduling.response import (
    ResponseComposer,
    ResponsePayload,
    get_response_composer,
)

# Conversation Flow
from calendar_assistant.core.scheduling.flow import (
    ConversationFlow,
    FlowAction,
    get_conversation_flow,
    select_provider,
)

# Scheduling Engine (main orchestrator)
from calendar_assistant.core.scheduling.engine import (
    SchedulingEngine,
    get_scheduling_engine,
    process_turn,
)

__all__ = [
    # Availability
    "AvailabilityResolver",
    "AvailabilityResult",
    "get_availability_resolver",
    "merge_busy",
    "is_free",
    # Response Composer
    "ResponseComposer",
    "ResponsePayload",
    "get_response_composer",
    # Conversation Flow
    "ConversationFlow",
    "FlowAction",
    "get_conversation_flow",
    "select_provider",
    # Scheduling Engine
    "SchedulingEngine",
    "get_scheduling_engine",
    "process_turn",
]
