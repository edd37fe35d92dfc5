"""
Chat state enum and compound session state for the tapping dialogue.

Invariants:
- Exactly one named state is active per turn
- The tapping point index lives inside the state, only for TAPPING_POINT
- The expected-transition table is diagnostic only; the authoritative
  path applies whatever state the dialogue service asks for

Design:
- ChatState is a string-based enum for JSON serialization
- SessionState is a frozen (name, point_index) pair
- SessionOrchestrator owns all transitions
- The dialogue service can propose but not apply a state
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

logger = logging.getLogger(__name__)

TAPPING_POINT_COUNT = 8
LAST_TAPPING_POINT = TAPPING_POINT_COUNT - 1


class ChatState(str, Enum):
    """
    Named conversation states.

    QUESTIONNAIRE:
        Optional pre-session questionnaire (scored elsewhere).
    CONVERSATION / CONVERSATION_DEEPENING:
        Free conversation, or probing for what sits underneath after
        a round that did not help.
    INITIAL / GATHERING_*:
        Intake of problem, feeling, body location and intensity.
    SETUP:
        Karate-chop setup statements before the point sequence.
    TAPPING_POINT:
        One of the 8 points; index carried by SessionState.point_index.
    TAPPING_BREATHING / POST_TAPPING:
        Breathing check and re-rating after the last point.
    ADVICE / COMPLETE:
        Personalised guidance, then end of session.
    """
    QUESTIONNAIRE = "questionnaire"
    CONVERSATION = "conversation"
    CONVERSATION_DEEPENING = "conversation-deepening"
    INITIAL = "initial"
    GATHERING_FEELING = "gathering-feeling"
    GATHERING_LOCATION = "gathering-location"
    GATHERING_INTENSITY = "gathering-intensity"
    SETUP = "setup"
    TAPPING_POINT = "tapping-point"
    TAPPING_BREATHING = "tapping-breathing"
    POST_TAPPING = "post-tapping"
    ADVICE = "advice"
    COMPLETE = "complete"


# Single source of truth for valid state strings
VALID_STATES = {state.value for state in ChatState}

# States where a submitted intensity is resolved locally
INTERCEPTED_STATES = frozenset({ChatState.POST_TAPPING, ChatState.TAPPING_BREATHING})


def _edges(*states: ChatState) -> FrozenSet[ChatState]:
    return frozenset(states)


EXPECTED_TRANSITIONS: Dict[ChatState, FrozenSet[ChatState]] = {
    ChatState.QUESTIONNAIRE: _edges(ChatState.CONVERSATION),
    ChatState.CONVERSATION: _edges(
        ChatState.INITIAL,
        ChatState.GATHERING_FEELING,
        ChatState.GATHERING_INTENSITY,
        ChatState.CONVERSATION_DEEPENING,
    ),
    ChatState.CONVERSATION_DEEPENING: _edges(
        ChatState.SETUP,
        ChatState.TAPPING_POINT,
        ChatState.CONVERSATION_DEEPENING,
    ),
    ChatState.INITIAL: _edges(ChatState.GATHERING_FEELING),
    ChatState.GATHERING_FEELING: _edges(ChatState.GATHERING_LOCATION),
    ChatState.GATHERING_LOCATION: _edges(ChatState.GATHERING_INTENSITY),
    ChatState.GATHERING_INTENSITY: _edges(ChatState.TAPPING_POINT, ChatState.SETUP),
    ChatState.SETUP: _edges(ChatState.TAPPING_POINT),
    ChatState.TAPPING_POINT: _edges(ChatState.TAPPING_POINT, ChatState.TAPPING_BREATHING),
    ChatState.TAPPING_BREATHING: _edges(ChatState.POST_TAPPING),
    ChatState.POST_TAPPING: _edges(
        ChatState.TAPPING_POINT,
        ChatState.SETUP,
        ChatState.CONVERSATION,
        ChatState.CONVERSATION_DEEPENING,
        ChatState.ADVICE,
    ),
    ChatState.ADVICE: _edges(ChatState.COMPLETE, ChatState.CONVERSATION),
    ChatState.COMPLETE: _edges(),
}


def parse_chat_state(value) -> Optional[ChatState]:
    """Convert a wire string to ChatState, None if unknown"""
    if isinstance(value, ChatState):
        return value
    if isinstance(value, str) and value in VALID_STATES:
        return ChatState(value)
    return None


def is_expected_transition(current: ChatState, requested: ChatState) -> bool:
    """Whether current -> requested appears in the diagnostic table"""
    return requested in EXPECTED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class SessionState:
    """
    Compound conversation state.

    point_index is 0..7 when name is TAPPING_POINT and None otherwise.
    Construct with SessionState.of() or SessionState.tapping().
    """
    name: ChatState
    point_index: Optional[int] = None

    def __post_init__(self):
        if self.name == ChatState.TAPPING_POINT:
            if not isinstance(self.point_index, int) or not 0 <= self.point_index <= LAST_TAPPING_POINT:
                raise ValueError(
                    f"tapping-point requires point_index 0..{LAST_TAPPING_POINT}, "
                    f"got {self.point_index!r}"
                )
        elif self.point_index is not None:
            raise ValueError(f"point_index only valid for tapping-point, got state {self.name.value}")

    @staticmethod
    def of(name: ChatState) -> "SessionState":
        if name == ChatState.TAPPING_POINT:
            return SessionState(name, 0)
        return SessionState(name)

    @staticmethod
    def tapping(point_index: int) -> "SessionState":
        return SessionState(ChatState.TAPPING_POINT, point_index)

    @property
    def is_tapping(self) -> bool:
        return self.name == ChatState.TAPPING_POINT

    @property
    def is_last_point(self) -> bool:
        return self.is_tapping and self.point_index == LAST_TAPPING_POINT

    def to_json(self) -> dict:
        return {'name': self.name.value, 'point_index': self.point_index}

    @staticmethod
    def from_json(data: dict) -> "SessionState":
        name = parse_chat_state(data.get('name'))
        if name is None:
            raise ValueError(f"Unknown chat state in snapshot: {data.get('name')!r}")
        return SessionState(name, data.get('point_index'))


def log_unexpected_transition(current: ChatState, requested: ChatState) -> bool:
    """
    Log (never block) a transition missing from the expected table.

    Returns:
        bool: True if the transition was expected
    """
    if current == requested or is_expected_transition(current, requested):
        return True

    expected = sorted(state.value for state in EXPECTED_TRANSITIONS.get(current, frozenset()))
    logger.warning(
        f"Unexpected transition {current.value} -> {requested.value} "
        f"(expected one of {expected}); applying anyway"
    )
    return False
