"""
Session Context - Live state of one tapping conversation

Responsibilities:
- Hold problem, feeling, body location and intensity tracking
- Hold the current round's setup statements, statement order and phrases
- Enforce set-once fields (problem, initial intensity)
- Append-only message log
- Lossless snapshot / restore, camelCase wire view for the dialogue service

Design principles:
- Dumb container: no branching decisions (those live in the Orchestrator)
- Only the Orchestrator mutates a SessionContext
- Invariant violations on setters raise ValueError; set-once
  violations are ignored with a warning
"""

import copy
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from tapaway.utils.helpers import generate_message_id

logger = logging.getLogger(__name__)

MIN_INTENSITY = 0
MAX_INTENSITY = 10
SETUP_STATEMENT_COUNT = 3
STATEMENT_ORDER_LENGTH = 8

# snake_case attribute -> camelCase wire key
WIRE_KEYS = {
    'problem': 'problem',
    'feeling': 'feeling',
    'body_location': 'bodyLocation',
    'initial_intensity': 'initialIntensity',
    'current_intensity': 'currentIntensity',
    'round': 'round',
    'setup_statements': 'setupStatements',
    'statement_order': 'statementOrder',
    'reminder_phrases': 'reminderPhrases',
    'tapping_session_id': 'tappingSessionId',
    'rounds_without_reduction': 'roundsWithoutReduction',
    'intensity_history': 'intensityHistory',
    'phrase_type': 'reminderPhraseType',
    'deepening_level': 'deepeningLevel',
    'returning_from_tapping': 'returningFromTapping',
}
ATTRIBUTE_FOR_WIRE_KEY = {wire: attr for attr, wire in WIRE_KEYS.items()}


def is_valid_intensity(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and MIN_INTENSITY <= value <= MAX_INTENSITY


def is_valid_statement_order(order: Any) -> bool:
    return (
        isinstance(order, list)
        and len(order) == STATEMENT_ORDER_LENGTH
        and all(isinstance(i, int) and not isinstance(i, bool) and 0 <= i < SETUP_STATEMENT_COUNT for i in order)
    )


def is_valid_setup_statements(statements: Any) -> bool:
    return (
        isinstance(statements, list)
        and len(statements) == SETUP_STATEMENT_COUNT
        and all(isinstance(s, str) and s.strip() for s in statements)
    )


class MessageType(str, Enum):
    BOT = "bot"
    USER = "user"
    SYSTEM = "system"


@dataclass(frozen=True)
class Message:
    """
    One conversational turn. Never mutated once appended.

    For SYSTEM messages, content is a JSON payload string.
    """
    id: str
    type: MessageType
    content: str
    timestamp: str
    session_id: Optional[str] = None

    @staticmethod
    def create(message_type: MessageType, content: str, session_id: Optional[str],
               prefix: Optional[str] = None) -> "Message":
        return Message(
            id=generate_message_id(prefix or message_type.value),
            type=message_type,
            content=content,
            timestamp=datetime.now(timezone.utc).isoformat(),
            session_id=session_id,
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'content': self.content,
            'timestamp': self.timestamp,
            'sessionId': self.session_id,
        }

    def to_history_entry(self) -> Dict[str, str]:
        """{type, content} pair sent to the dialogue service"""
        return {'type': self.type.value, 'content': self.content}

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "Message":
        return Message(
            id=data['id'],
            type=MessageType(data['type']),
            content=data['content'],
            timestamp=data['timestamp'],
            session_id=data.get('sessionId'),
        )


@dataclass
class SessionContext:
    """Mutable per-session context owned by the Session Orchestrator"""
    problem: Optional[str] = None
    feeling: Optional[str] = None
    body_location: Optional[str] = None
    initial_intensity: Optional[int] = None
    current_intensity: Optional[int] = None
    round: int = 0
    setup_statements: List[str] = field(default_factory=list)
    statement_order: List[int] = field(default_factory=list)
    reminder_phrases: List[str] = field(default_factory=list)
    tapping_session_id: Optional[str] = None
    rounds_without_reduction: int = 0
    intensity_history: List[int] = field(default_factory=list)
    phrase_type: Optional[str] = None
    deepening_level: int = 0
    returning_from_tapping: bool = False

    # ========================
    # Set-once fields
    # ========================

    def set_problem(self, problem: str) -> bool:
        """
        Set the problem description once.

        Returns:
            bool: True if stored, False if a problem was already set
        """
        if not problem:
            return False
        if self.problem is not None:
            if problem != self.problem:
                logger.warning("Ignoring attempt to replace problem description")
            return False
        self.problem = problem
        return True

    def set_initial_intensity(self, value: int) -> bool:
        """
        Set the episode baseline once.

        Raises:
            ValueError: If value is outside 0..10
        """
        if not is_valid_intensity(value):
            raise ValueError(f"Intensity must be an integer 0-10, got {value!r}")
        if self.initial_intensity is not None:
            if value != self.initial_intensity:
                logger.warning(
                    f"Ignoring attempt to change initial intensity "
                    f"{self.initial_intensity} -> {value}"
                )
            return False
        self.initial_intensity = value
        return True

    # ========================
    # Intensity tracking
    # ========================

    def record_intensity(self, value: int) -> None:
        """
        Record a submitted intensity (current value + append to history).

        Raises:
            ValueError: If value is outside 0..10
        """
        if not is_valid_intensity(value):
            raise ValueError(f"Intensity must be an integer 0-10, got {value!r}")
        self.current_intensity = value
        self.intensity_history.append(value)

    def previous_intensity(self) -> int:
        """Intensity before the latest round, falling back to the baseline (or 10)"""
        if self.current_intensity is not None:
            return self.current_intensity
        if self.initial_intensity is not None:
            return self.initial_intensity
        return MAX_INTENSITY

    # ========================
    # Round data
    # ========================

    def set_round_statements(self, setup_statements: List[str], statement_order: List[int],
                             reminder_phrases: Optional[List[str]] = None) -> None:
        """
        Replace the current round's statements.

        Raises:
            ValueError: If statements are not 3 strings or order is not 8 values in {0,1,2}
        """
        if not is_valid_setup_statements(setup_statements):
            raise ValueError(f"Expected {SETUP_STATEMENT_COUNT} setup statements, got {setup_statements!r}")
        if not is_valid_statement_order(statement_order):
            raise ValueError(f"Invalid statement order: {statement_order!r}")

        self.setup_statements = list(setup_statements)
        self.statement_order = list(statement_order)
        if reminder_phrases is not None:
            self.reminder_phrases = list(reminder_phrases)

    # ========================
    # Merging caller / service supplied values
    # ========================

    def merge(self, values: Optional[Dict[str, Any]]) -> List[str]:
        """
        Merge a partial context (snake_case or camelCase keys).

        problem and initial_intensity respect set-once semantics;
        current_intensity goes through record_intensity only when the
        caller says so (the Orchestrator does that explicitly).

        All values are checked before any is written, so a rejected merge
        leaves the context unchanged.

        Returns:
            list: Keys that were not recognised

        Raises:
            ValueError: If a value would break a context invariant
        """
        unknown = []
        if not values:
            return unknown

        staged = {}
        for key, value in values.items():
            attr = key if key in WIRE_KEYS else ATTRIBUTE_FOR_WIRE_KEY.get(key)
            if attr is None:
                unknown.append(key)
                continue
            if value is None:
                continue
            if attr == 'intensity_history':
                logger.debug("Ignoring external intensity_history (append-only)")
                continue
            if attr == 'current_intensity' and not is_valid_intensity(value):
                logger.warning(f"Ignoring invalid current intensity {value!r}")
                continue

            self._check_merge_value(attr, value)
            staged[attr] = copy.deepcopy(value)

        if 'setup_statements' in staged and 'statement_order' in staged:
            self.set_round_statements(staged.pop('setup_statements'), staged.pop('statement_order'))

        for attr, value in staged.items():
            if attr == 'problem':
                self.set_problem(value)
            elif attr == 'initial_intensity':
                self.set_initial_intensity(value)
            else:
                setattr(self, attr, value)

        if unknown:
            logger.warning(f"Unmapped session context keys: {unknown}")
        return unknown

    def _check_merge_value(self, attr: str, value: Any) -> None:
        if attr in ('problem', 'feeling', 'body_location', 'tapping_session_id', 'phrase_type'):
            if not isinstance(value, str):
                raise ValueError(f"{attr} must be a string, got {value!r}")
        elif attr == 'initial_intensity':
            if not is_valid_intensity(value):
                raise ValueError(f"Intensity must be an integer 0-10, got {value!r}")
        elif attr in ('round', 'rounds_without_reduction', 'deepening_level'):
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"{attr} must be a non-negative integer, got {value!r}")
            if attr == 'round' and value < self.round:
                raise ValueError(f"round cannot go back from {self.round} to {value}")
        elif attr == 'setup_statements':
            if not is_valid_setup_statements(value):
                raise ValueError(f"Expected {SETUP_STATEMENT_COUNT} setup statements, got {value!r}")
        elif attr == 'statement_order':
            if not is_valid_statement_order(value):
                raise ValueError(f"Invalid statement order: {value!r}")
        elif attr == 'reminder_phrases':
            if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
                raise ValueError(f"reminder_phrases must be a list of strings, got {value!r}")
        elif attr == 'returning_from_tapping':
            if not isinstance(value, bool):
                raise ValueError(f"returning_from_tapping must be a bool, got {value!r}")

    # ========================
    # Export
    # ========================

    def to_dict(self) -> Dict[str, Any]:
        """Lossless snapshot (deep copy)"""
        return copy.deepcopy(asdict(self))

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SessionContext":
        known = {k: copy.deepcopy(v) for k, v in data.items() if k in WIRE_KEYS}
        return SessionContext(**known)

    def to_wire(self) -> Dict[str, Any]:
        """camelCase view for the dialogue service, unset fields omitted"""
        wire = {}
        for attr, key in WIRE_KEYS.items():
            value = getattr(self, attr)
            if value is None or value == []:
                continue
            wire[key] = copy.deepcopy(value)
        return wire
