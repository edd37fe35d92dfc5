"""
Result types returned by SessionOrchestrator operations

These are the ONLY return types from orchestrator operations.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from tapaway.core.session_context import Message
from tapaway.core.session_state import SessionState


@dataclass(frozen=True)
class TurnResult:
    """
    Successful turn processing result.

    Returned by: start_session, send_message, submit_intensity, handle_choice,
    advance_tapping_point

    Attributes:
        messages: Messages appended during this turn (user, bot and system)
        state: Session state after the turn
        context: Snapshot of the session context (snake_case keys)
        crisis_detected: Whether the crisis gate fired on this turn
        debug: Debug information (directive, fallback, errors, etc.)
    """
    messages: List[Message]
    state: SessionState
    context: Dict[str, Any]
    crisis_detected: bool = False
    debug: Dict[str, Any] = field(default_factory=dict)

    def bot_text(self) -> str:
        """Concatenated bot message text for display"""
        return '\n\n'.join(m.content for m in self.messages if m.type.value == 'bot')

    def to_json(self) -> Dict[str, Any]:
        return {
            'messages': [m.to_json() for m in self.messages],
            'state': self.state.to_json(),
            'context': self.context,
            'crisis_detected': self.crisis_detected,
            'debug': self.debug,
        }


@dataclass(frozen=True)
class TurnRejected:
    """
    Operation refused by the orchestrator.

    Examples:
    - send_message while another turn is in flight
    - send_message before start_session
    - handle_choice with an unknown choice

    Attributes:
        reason: Human-readable explanation
        operation: Name of the rejected operation
    """
    reason: str
    operation: str

    def to_json(self) -> Dict[str, Any]:
        return {'reason': self.reason, 'operation': self.operation}


OperationResult = Union[TurnResult, TurnRejected]
