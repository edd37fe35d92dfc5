"""
Session Orchestrator - Tapping session state machine

Responsibilities:
- Own the session state, context and message log
- Normalize input and run the crisis gate before anything else
- Resolve post-tapping re-ratings locally (advice / choice / new round)
- Forward everything else to the dialogue service and apply its directive
- Fall back to keyword inference when no directive comes back
- Best-effort persistence of episodes, transcripts and turn snapshots

Design principles:
- One in-flight turn per session (re-entrant calls get TurnRejected)
- The directive's requested state is applied; the expected-transition
  table only produces warnings
- Collaborator failures never escape an operation: they are logged and
  recorded in TurnResult.debug['errors']
- Crisis detection always wins over normal flow
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from tapaway.core.dialogue_service import DialogueRequest, DialogueServiceError
from tapaway.core.directive_codec import (
    Directive,
    DirectiveCodec,
    DirectiveFound,
    strip_leaked_statements,
)
from tapaway.core.round_generator import (
    DEFAULT_STATEMENT_ORDER,
    TappingRoundGenerator,
    determine_phrase_type,
)
from tapaway.core.session_context import (
    Message,
    MessageType,
    SessionContext,
    MAX_INTENSITY,
    MIN_INTENSITY,
    is_valid_intensity,
    is_valid_setup_statements,
)
from tapaway.core.session_state import (
    ChatState,
    INTERCEPTED_STATES,
    LAST_TAPPING_POINT,
    SessionState,
    log_unexpected_transition,
)
from tapaway.core.state_inferencer import extract_setup_statements, infer_next_state
from tapaway.results import OperationResult, TurnRejected, TurnResult
from tapaway.utils import crisis_detector
from tapaway.utils.helpers import generate_session_id, generate_session_name
from tapaway.utils.rate_limiter import RATE_LIMIT_MESSAGE
from tapaway.utils.text_normalizer import correct, sanitize_input, MAX_INPUT_LENGTH

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 20
ALTERNATIVE_SUGGESTION_THRESHOLD = 3
LOW_INTENSITY_MAX = 2

# Choices offered after a low re-rating
CHOICE_CONTINUE_TAPPING = 'continue-tapping'
CHOICE_TALK_TO_ASSISTANT = 'talk-to-assistant'
CHOICE_END_SESSION = 'end-session'
CHOICE_BREATHING = 'breathing'
CHOICE_HYDRATION = 'hydration'
CHOICE_TALK_TO_HUMAN = 'talk-to-human'

ALTERNATIVE_OPTIONS = [CHOICE_BREATHING, CHOICE_HYDRATION, CHOICE_TALK_TO_HUMAN]
VALID_CHOICES = {
    CHOICE_CONTINUE_TAPPING,
    CHOICE_TALK_TO_ASSISTANT,
    CHOICE_END_SESSION,
    *ALTERNATIVE_OPTIONS,
}

PAYLOAD_POST_TAPPING_CHOICE = 'post-tapping-choice'
PAYLOAD_ALTERNATIVE_SUGGESTIONS = 'alternative-suggestions'

GREETING_TEMPLATE = (
    "Hello {name}! 💙 I'm here to help you work through what you're feeling "
    "using EFT tapping. What's been weighing on you lately?"
)
APOLOGY_MESSAGE = (
    "I apologize, but I'm having trouble connecting right now. Please try again in a moment."
)
NEW_ROUND_TEMPLATE = (
    "Let's do another round of tapping to bring that {feeling} down even more. "
    "Take a deep breath..."
)
TALK_TO_ASSISTANT_TEMPLATE = (
    "Let's explore this a bit more. What else is on your mind about this {feeling}? "
    "Sometimes there's more underneath the surface."
)
ALTERNATIVE_MESSAGES = {
    CHOICE_BREATHING: (
        "Let's try some deep breathing together. Breathe in slowly for 4 counts, hold for 4, "
        "and breathe out for 6. Repeat that a few times and notice how your body feels."
    ),
    CHOICE_HYDRATION: (
        "Let's take a short pause. Get a glass of water and drink it slowly, "
        "noticing each sip. Sometimes a small reset helps our emotions settle."
    ),
    CHOICE_TALK_TO_HUMAN: (
        "Talking to someone you trust can really help. Consider reaching out to a friend, "
        "family member or a professional for support. You don't have to carry this alone."
    ),
}
ADVICE_REQUEST_TEMPLATE = "My intensity is now 0/10. Initial was {initial}/10."
END_SESSION_TEMPLATE = "I'm ready to finish. My final intensity is {final}/10. Initial was {initial}/10."


@dataclass
class _Turn:
    """Accumulates what one operation appended"""
    messages: List[Message] = field(default_factory=list)
    crisis: bool = False
    intensity_recorded: bool = False
    debug: Dict[str, Any] = field(default_factory=lambda: {'errors': [], 'transitions': []})


def _pick(values: Optional[Dict[str, Any]], snake: str, camel: str) -> Any:
    if not values:
        return None
    if values.get(snake) is not None:
        return values[snake]
    return values.get(camel)


def _label(state: SessionState) -> str:
    if state.point_index is None:
        return state.name.value
    return f"{state.name.value}[{state.point_index}]"


class SessionOrchestrator:
    """
    Drives one user's tapping session.

    Collaborators:
        dialogue_service: send(DialogueRequest) -> DialogueReply
        persistence: create_episode / update_episode /
            append_and_persist_transcript / save_snapshot (optional)
        round_generator: TappingRoundGenerator
    """

    def __init__(
        self,
        dialogue_service,
        persistence=None,
        round_generator: Optional[TappingRoundGenerator] = None,
        user_name: Optional[str] = None
    ) -> None:
        """
        Args:
            dialogue_service: Remote or in-process dialogue service
            persistence: Best-effort persistence collaborator
            round_generator: Local statement generator
            user_name: Name used in greetings and sent to the service

        Raises:
            TypeError: If a collaborator is missing a required method
        """
        self._validate_modules(dialogue_service, persistence)

        self.dialogue_service = dialogue_service
        self.persistence = persistence
        self.round_generator = round_generator or TappingRoundGenerator()
        self.codec = DirectiveCodec()
        self.user_name = user_name

        self.session_id: Optional[str] = None
        self.session_name: Optional[str] = None
        self.state = SessionState.of(ChatState.INITIAL)
        self.context = SessionContext()
        self.messages: List[Message] = []
        self.crisis_detected = False
        self.turn_count = 0
        self._busy = False

        logger.info("Session orchestrator initialized")

    def _validate_modules(self, dialogue_service, persistence):
        """Validate collaborator interfaces"""
        if not callable(getattr(dialogue_service, 'send', None)):
            raise TypeError("dialogue_service must have callable send() method")

        if persistence is not None:
            for method in ('create_episode', 'update_episode',
                           'append_and_persist_transcript', 'save_snapshot'):
                if not callable(getattr(persistence, method, None)):
                    raise TypeError(f"persistence must have callable {method}() method")

    @property
    def is_busy(self) -> bool:
        return self._busy

    # ========================
    # Public operations
    # ========================

    def start_session(self, user_name: Optional[str] = None) -> OperationResult:
        """
        Begin a new session: fresh id, empty context, greeting.

        Returns:
            TurnResult with the greeting message, state 'initial'
        """
        if self._busy:
            return TurnRejected("A turn is already in progress", 'start_session')

        self._busy = True
        try:
            if user_name:
                self.user_name = user_name
            self.session_id = generate_session_id()
            self.session_name = None
            self.state = SessionState.of(ChatState.INITIAL)
            self.context = SessionContext()
            self.messages = []
            self.crisis_detected = False
            self.turn_count = 0

            turn = _Turn()
            greeting = GREETING_TEMPLATE.format(name=self.user_name or 'there')
            self._append(turn, MessageType.BOT, greeting, prefix='greeting')
            logger.info(f"Started session {self.session_id}")
            return self._finish(turn)
        finally:
            self._busy = False

    def send_message(self, text: str, additional_context: Optional[Dict[str, Any]] = None) -> OperationResult:
        """
        Process one user message.

        Args:
            text: Raw user text
            additional_context: Partial context from the UI (snake_case or
                camelCase keys), e.g. {'current_intensity': 5}

        Returns:
            TurnResult, or TurnRejected if no session or a turn is in flight
        """
        rejection = self._check_ready('send_message')
        if rejection:
            return rejection

        self._busy = True
        try:
            turn = _Turn()
            self._process_message(turn, text, additional_context)
            return self._finish(turn)
        finally:
            self._busy = False

    def submit_intensity(self, value: Any) -> OperationResult:
        """
        Submit a 0-10 intensity rating as "N/10".

        Out-of-range values are clamped. In gathering-intensity the value is
        also the episode baseline.
        """
        rejection = self._check_ready('submit_intensity')
        if rejection:
            return rejection

        try:
            number = int(round(float(value)))
        except (TypeError, ValueError):
            return TurnRejected(f"Intensity must be a number, got {value!r}", 'submit_intensity')

        clamped = max(MIN_INTENSITY, min(MAX_INTENSITY, number))
        if clamped != number:
            logger.warning(f"Clamped intensity {number} to {clamped}")

        if self.state.name == ChatState.GATHERING_INTENSITY:
            extra = {'initial_intensity': clamped, 'current_intensity': clamped}
        else:
            extra = {'current_intensity': clamped}

        return self.send_message(f"{clamped}/10", extra)

    def handle_post_tapping_intensity(self, value: int) -> OperationResult:
        """Resolve a re-rating locally without a user message"""
        rejection = self._check_ready('handle_post_tapping_intensity')
        if rejection:
            return rejection

        self._busy = True
        try:
            turn = _Turn()
            self._handle_post_tapping_intensity(turn, value)
            return self._finish(turn)
        finally:
            self._busy = False

    def start_new_tapping_round(self, current_intensity: Optional[int] = None,
                                phrase_type: Optional[str] = None) -> OperationResult:
        """Start another round with locally generated statements"""
        rejection = self._check_ready('start_new_tapping_round')
        if rejection:
            return rejection

        self._busy = True
        try:
            turn = _Turn()
            intensity = current_intensity if current_intensity is not None else self.context.previous_intensity()
            self._start_new_tapping_round(turn, intensity, phrase_type)
            return self._finish(turn)
        finally:
            self._busy = False

    def handle_choice(self, choice: str) -> OperationResult:
        """
        Act on a post-tapping choice.

        Args:
            choice: continue-tapping | talk-to-assistant | end-session |
                breathing | hydration | talk-to-human

        Returns:
            TurnResult, or TurnRejected for unknown choices
        """
        rejection = self._check_ready('handle_choice')
        if rejection:
            return rejection
        if choice not in VALID_CHOICES:
            return TurnRejected(f"Unknown choice '{choice}'", 'handle_choice')

        self._busy = True
        try:
            turn = _Turn()
            turn.debug['choice'] = choice
            self._handle_choice(turn, choice)
            return self._finish(turn)
        finally:
            self._busy = False

    def complete_episode(self, final_intensity: int) -> OperationResult:
        rejection = self._check_ready('complete_episode')
        if rejection:
            return rejection

        self._busy = True
        try:
            turn = _Turn()
            self._complete_episode(turn, final_intensity)
            return self._finish(turn)
        finally:
            self._busy = False

    def advance_tapping_point(self) -> OperationResult:
        """
        Local point progression: next point, or tapping-breathing after the last.
        """
        rejection = self._check_ready('advance_tapping_point')
        if rejection:
            return rejection
        if not self.state.is_tapping:
            return TurnRejected(
                f"Not tapping (state is {self.state.name.value})", 'advance_tapping_point'
            )

        self._busy = True
        try:
            turn = _Turn()
            if self.state.is_last_point:
                self._transition(turn, SessionState.of(ChatState.TAPPING_BREATHING))
            else:
                self._transition(turn, SessionState.tapping(self.state.point_index + 1))
            turn.debug['phrase'] = self.current_phrase()
            return self._finish(turn)
        finally:
            self._busy = False

    def current_phrase(self) -> Optional[str]:
        """
        Phrase to say at the current point.

        setup_statements[statement_order[i]] when a round is stored,
        otherwise reminder_phrases[i]; None outside tapping-point.
        """
        if not self.state.is_tapping:
            return None

        index = self.state.point_index
        ctx = self.context
        if ctx.setup_statements and len(ctx.statement_order) > index:
            return ctx.setup_statements[ctx.statement_order[index]]
        if len(ctx.reminder_phrases) > index:
            return ctx.reminder_phrases[index]
        return None

    # ========================
    # Snapshot / restore
    # ========================

    def snapshot(self) -> Dict[str, Any]:
        """Lossless, JSON-serializable session snapshot"""
        return {
            'session_id': self.session_id,
            'session_name': self.session_name,
            'user_name': self.user_name,
            'state': self.state.to_json(),
            'context': self.context.to_dict(),
            'messages': [m.to_json() for m in self.messages],
            'crisis_detected': self.crisis_detected,
            'turn_count': self.turn_count,
        }

    @classmethod
    def restore(cls, snapshot: Dict[str, Any], dialogue_service, persistence=None,
                round_generator: Optional[TappingRoundGenerator] = None) -> "SessionOrchestrator":
        """
        Rebuild an orchestrator from snapshot().

        Raises:
            ValueError: If the snapshot state is invalid
        """
        orchestrator = cls(dialogue_service, persistence, round_generator,
                           user_name=snapshot.get('user_name'))
        orchestrator.session_id = snapshot.get('session_id')
        orchestrator.session_name = snapshot.get('session_name')
        orchestrator.state = SessionState.from_json(snapshot['state'])
        orchestrator.context = SessionContext.from_dict(snapshot.get('context', {}))
        orchestrator.messages = [Message.from_json(m) for m in snapshot.get('messages', [])]
        orchestrator.crisis_detected = bool(snapshot.get('crisis_detected', False))
        orchestrator.turn_count = int(snapshot.get('turn_count', 0))
        logger.info(
            f"Restored session {orchestrator.session_id} at turn {orchestrator.turn_count} "
            f"({orchestrator.state.name.value})"
        )
        return orchestrator

    # ========================
    # Turn processing
    # ========================

    def _check_ready(self, operation: str) -> Optional[TurnRejected]:
        if self._busy:
            return TurnRejected("A turn is already in progress", operation)
        if self.session_id is None:
            return TurnRejected("No active session, call start_session() first", operation)
        return None

    def _process_message(self, turn: _Turn, text: str,
                         additional_context: Optional[Dict[str, Any]] = None) -> None:
        raw = text if isinstance(text, str) else ''
        changes = correct(raw).changes
        if changes:
            turn.debug['corrections'] = changes
        sanitized = sanitize_input(raw)

        history = self._history_window()
        self._append(turn, MessageType.USER, raw.strip()[:MAX_INPUT_LENGTH])

        assessment = crisis_detector.assess(sanitized)
        if assessment.detected:
            logger.warning(
                f"Crisis detected locally: session={self.session_id}, "
                f"trigger={assessment.trigger.value}, message_length={len(sanitized)}"
            )
            self._enter_crisis(turn)
            return

        new_intensity = _pick(additional_context, 'current_intensity', 'currentIntensity')

        if self.state.name in INTERCEPTED_STATES and new_intensity is not None:
            logger.info(f"Intercepting intensity {new_intensity} in {self.state.name.value}")
            self._handle_post_tapping_intensity(turn, new_intensity)
            return

        if new_intensity is not None:
            try:
                self.context.record_intensity(new_intensity)
                turn.intensity_recorded = True
            except ValueError as e:
                logger.warning(f"Ignoring caller intensity: {e}")
                turn.debug['errors'].append(str(e))

        if additional_context:
            remaining = {
                key: value for key, value in additional_context.items()
                if key not in ('current_intensity', 'currentIntensity')
            }
            try:
                self.context.merge(remaining)
            except ValueError as e:
                logger.warning(f"Ignoring caller context: {e}")
                turn.debug['errors'].append(str(e))

        initial = _pick(additional_context, 'initial_intensity', 'initialIntensity')
        if self.state.name == ChatState.GATHERING_INTENSITY and initial is not None:
            self._create_episode(turn)

        self._forward(turn, sanitized, history)

    def _forward(self, turn: _Turn, message: str, history: List[Dict[str, str]]) -> None:
        """Call the dialogue service and apply its reply"""
        last_assistant = next(
            (entry['content'] for entry in reversed(history) if entry['type'] == MessageType.BOT.value),
            ''
        )
        request = DialogueRequest(
            message=message,
            chat_state=self.state.name.value,
            user_name=self.user_name or '',
            session_context=self.context.to_wire(),
            conversation_history=history,
            current_tapping_point=self.state.point_index if self.state.is_tapping else 0,
            intensity_history=list(self.context.intensity_history),
            last_assistant_message=last_assistant,
        )

        try:
            reply = self.dialogue_service.send(request)
        except DialogueServiceError as e:
            logger.error(f"Dialogue service failed in {self.state.name.value}: {e.message}")
            turn.debug['errors'].append(e.message)
            self._append(turn, MessageType.BOT, APOLOGY_MESSAGE, prefix='error')
            return
        except Exception as e:
            logger.error(f"Unexpected dialogue service error: {e}")
            turn.debug['errors'].append(str(e))
            self._append(turn, MessageType.BOT, APOLOGY_MESSAGE, prefix='error')
            return

        if reply.rate_limited:
            logger.warning("Dialogue service rate limited this session")
            turn.debug['rate_limited'] = True
            self._append(turn, MessageType.BOT, reply.response or RATE_LIMIT_MESSAGE)
            return

        outcome = self.codec.parse(reply.response)
        visible = self.codec.strip(reply.response)
        directive = outcome.directive if isinstance(outcome, DirectiveFound) else None
        turn.debug['directive'] = directive.to_json() if directive else None
        if directive is None:
            turn.debug['directive_missing'] = outcome.reason

        if directive and directive.setup_statements and directive.chat_state in (
                ChatState.SETUP, ChatState.TAPPING_POINT):
            visible = strip_leaked_statements(visible)

        if reply.extracted_context:
            self._merge_extracted(turn, reply.extracted_context)

        if visible:
            self._append(turn, MessageType.BOT, visible, prefix='ai')

        if reply.crisis_detected:
            logger.warning(f"Crisis flagged by dialogue service: session={self.session_id}")
            self.crisis_detected = True
            turn.crisis = True
            self._transition(turn, SessionState.of(ChatState.COMPLETE), check=False)
            return

        if directive is not None:
            self._apply_directive(turn, directive)
        else:
            self._apply_fallback(turn, visible)

        if self.session_name is None and (self.context.feeling or self.context.problem):
            self.session_name = generate_session_name(self.context.feeling, self.context.problem)

    def _merge_extracted(self, turn: _Turn, extracted: Dict[str, Any]) -> None:
        """
        Apply context the dialogue service pulled out of the user's message.

        An extracted intensity is treated like a submitted one: it is
        recorded in the history, and while gathering intensity it also
        becomes the baseline and opens the episode.
        """
        intensity = _pick(extracted, 'current_intensity', 'currentIntensity')
        remaining = {
            key: value for key, value in extracted.items()
            if key not in ('current_intensity', 'currentIntensity')
        }
        try:
            self.context.merge(remaining)
        except ValueError as e:
            logger.warning(f"Ignoring extracted context: {e}")
            turn.debug['errors'].append(str(e))

        if intensity is None:
            return
        if not is_valid_intensity(intensity):
            logger.warning(f"Ignoring extracted intensity {intensity!r}")
            turn.debug['errors'].append(f"Invalid intensity {intensity!r}")
            return

        gathering = self.state.name == ChatState.GATHERING_INTENSITY
        if gathering:
            self.context.set_initial_intensity(intensity)
        if not turn.intensity_recorded:
            self.context.record_intensity(intensity)
            turn.intensity_recorded = True
        if gathering:
            self._create_episode(turn)

    def _apply_directive(self, turn: _Turn, directive: Directive) -> None:
        next_state = directive.chat_state
        if next_state is None:
            if directive.next_state:
                logger.warning(f"Ignoring directive with unknown state '{directive.next_state}'")
            elif directive.tapping_point is not None and self.state.is_tapping:
                self._transition(turn, SessionState.tapping(directive.tapping_point))
            return

        starts_round = next_state == ChatState.SETUP or (
            next_state == ChatState.TAPPING_POINT and directive.tapping_point == 0
        )
        if starts_round and is_valid_setup_statements(directive.setup_statements):
            order = directive.statement_order or self.context.statement_order or list(DEFAULT_STATEMENT_ORDER)
            self.context.set_round_statements(directive.setup_statements, order)
            logger.info(f"Stored setup statements (order={order})")

        if next_state == ChatState.TAPPING_POINT:
            if directive.tapping_point is not None:
                point = directive.tapping_point
            elif self.state.is_tapping:
                point = self.state.point_index
            else:
                point = 0
            self._transition(turn, SessionState.tapping(point))
        elif next_state != self.state.name:
            self._transition(turn, SessionState.of(next_state))

    def _apply_fallback(self, turn: _Turn, visible: str) -> None:
        logger.info(f"No directive in reply, using fallback inference in {self.state.name.value}")
        turn.debug['fallback'] = True

        if 'Even though' in visible:
            statements = extract_setup_statements(visible)
            if is_valid_setup_statements(statements):
                order = self.context.statement_order or list(DEFAULT_STATEMENT_ORDER)
                self.context.set_round_statements(statements, order)
                logger.info("Extracted setup statements from reply text")
            elif statements:
                logger.warning(f"Found {len(statements)} setup statements, expected 3; ignoring")

        next_state = infer_next_state(
            self.state.name,
            visible,
            current_intensity=self.context.current_intensity,
            point_index=self.state.point_index,
        )
        if next_state is None:
            return

        if next_state == ChatState.TAPPING_POINT:
            if self.state.is_tapping:
                point = min(self.state.point_index + 1, LAST_TAPPING_POINT)
            else:
                point = 0
            self._transition(turn, SessionState.tapping(point))
        elif next_state != self.state.name:
            self._transition(turn, SessionState.of(next_state))

    # ========================
    # Local branches
    # ========================

    def _handle_post_tapping_intensity(self, turn: _Turn, new_intensity: int) -> None:
        ctx = self.context
        if not is_valid_intensity(new_intensity):
            logger.warning(f"Rejected post-tapping intensity {new_intensity!r}")
            turn.debug['errors'].append(f"Invalid intensity {new_intensity!r}")
            return

        initial = ctx.initial_intensity if ctx.initial_intensity is not None else MAX_INTENSITY
        previous = ctx.previous_intensity()
        improvement = initial - new_intensity
        round_improvement = previous - new_intensity

        rounds_without_reduction = ctx.rounds_without_reduction + 1 if round_improvement <= 0 else 0
        phrase_type = determine_phrase_type(new_intensity, round_improvement)

        ctx.record_intensity(new_intensity)
        ctx.rounds_without_reduction = rounds_without_reduction
        ctx.phrase_type = phrase_type
        turn.debug['post_tapping'] = {
            'intensity': new_intensity,
            'previous': previous,
            'improvement': improvement,
            'rounds_without_reduction': rounds_without_reduction,
            'phrase_type': phrase_type,
        }
        logger.info(
            f"Post-tapping intensity {new_intensity}/10 (previous {previous}, initial {initial}, "
            f"rounds without reduction {rounds_without_reduction})"
        )

        if new_intensity == 0:
            self._complete_episode(turn, 0)
            self._transition(turn, SessionState.of(ChatState.ADVICE))
            self._process_message(turn, ADVICE_REQUEST_TEMPLATE.format(initial=initial))
        elif new_intensity <= LOW_INTENSITY_MAX:
            if rounds_without_reduction >= ALTERNATIVE_SUGGESTION_THRESHOLD:
                self._emit_alternative_suggestions(turn)
            else:
                self._emit_post_tapping_choice(turn, initial, improvement)
        else:
            self._start_new_tapping_round(turn, new_intensity, phrase_type)

    def _start_new_tapping_round(self, turn: _Turn, current_intensity: int,
                                 phrase_type: Optional[str] = None) -> None:
        ctx = self.context
        if phrase_type is None:
            phrase_type = determine_phrase_type(current_intensity, 0)

        generated = self.round_generator.generate(
            ctx.problem, ctx.feeling, ctx.body_location,
            is_subsequent_round=True, phrase_type=phrase_type,
        )
        ctx.set_round_statements(
            generated.setup_statements, generated.statement_order, generated.reminder_phrases
        )
        ctx.round = (ctx.round or 1) + 1
        ctx.phrase_type = phrase_type
        logger.info(f"Starting round {ctx.round} at intensity {current_intensity}")

        if ctx.tapping_session_id and self.persistence is not None:
            try:
                self.persistence.update_episode(
                    ctx.tapping_session_id,
                    rounds_completed=ctx.round,
                    final_intensity=current_intensity,
                )
            except Exception as e:
                logger.error(f"Failed to update episode round count: {e}")
                turn.debug['errors'].append(str(e))

        self._append(
            turn, MessageType.BOT,
            NEW_ROUND_TEMPLATE.format(feeling=ctx.feeling or 'feeling'),
            prefix='round',
        )
        self._transition(turn, SessionState.tapping(0))

    def _handle_choice(self, turn: _Turn, choice: str) -> None:
        ctx = self.context

        if (choice == CHOICE_CONTINUE_TAPPING
                and ctx.rounds_without_reduction >= ALTERNATIVE_SUGGESTION_THRESHOLD):
            logger.info("Continue requested after repeated non-reduction, offering alternatives")
            self._emit_alternative_suggestions(turn)
            return

        if choice == CHOICE_CONTINUE_TAPPING:
            self._start_new_tapping_round(turn, ctx.previous_intensity(), ctx.phrase_type)

        elif choice == CHOICE_TALK_TO_ASSISTANT:
            ctx.returning_from_tapping = True
            ctx.deepening_level += 1
            self._append(
                turn, MessageType.BOT,
                TALK_TO_ASSISTANT_TEMPLATE.format(feeling=ctx.feeling or 'feeling'),
                prefix='transition',
            )
            self._transition(turn, SessionState.of(ChatState.CONVERSATION))

        elif choice == CHOICE_END_SESSION:
            final = ctx.previous_intensity()
            initial = ctx.initial_intensity if ctx.initial_intensity is not None else MAX_INTENSITY
            self._complete_episode(turn, final)
            self._transition(turn, SessionState.of(ChatState.ADVICE))
            self._process_message(turn, END_SESSION_TEMPLATE.format(final=final, initial=initial))

        else:
            self._append(turn, MessageType.BOT, ALTERNATIVE_MESSAGES[choice], prefix='alternative')

    def _emit_post_tapping_choice(self, turn: _Turn, initial: int, improvement: int) -> None:
        ctx = self.context
        self._append_payload(turn, {
            'type': PAYLOAD_POST_TAPPING_CHOICE,
            'intensity': ctx.current_intensity,
            'initialIntensity': initial,
            'improvement': improvement,
            'round': ctx.round or 1,
            'roundsWithoutReduction': ctx.rounds_without_reduction,
            'phraseType': ctx.phrase_type,
        })

    def _emit_alternative_suggestions(self, turn: _Turn) -> None:
        ctx = self.context
        self._append_payload(turn, {
            'type': PAYLOAD_ALTERNATIVE_SUGGESTIONS,
            'intensity': ctx.current_intensity,
            'roundsWithoutReduction': ctx.rounds_without_reduction,
            'options': list(ALTERNATIVE_OPTIONS),
        })

    def _enter_crisis(self, turn: _Turn) -> None:
        self.crisis_detected = True
        turn.crisis = True
        self._append(turn, MessageType.BOT, crisis_detector.crisis_response(self.user_name), prefix='crisis')
        self._transition(turn, SessionState.of(ChatState.COMPLETE), check=False)

    # ========================
    # Episodes
    # ========================

    def _create_episode(self, turn: _Turn) -> None:
        ctx = self.context
        if ctx.tapping_session_id:
            return
        if not (ctx.problem and ctx.feeling and ctx.body_location and ctx.initial_intensity is not None):
            logger.info("Initial intensity collected before intake complete, episode not created")
            return

        if self.persistence is not None:
            try:
                ctx.tapping_session_id = self.persistence.create_episode(
                    ctx.problem, ctx.feeling, ctx.body_location, ctx.initial_intensity
                )
            except Exception as e:
                logger.error(f"Failed to create episode: {e}")
                turn.debug['errors'].append(str(e))
                return
        ctx.round = 1
        logger.info(f"Episode started (handle={ctx.tapping_session_id}, initial={ctx.initial_intensity})")

    def _complete_episode(self, turn: _Turn, final_intensity: int) -> None:
        ctx = self.context
        turn.debug['episode_completed'] = {'final_intensity': final_intensity, 'rounds': ctx.round or 1}
        if not ctx.tapping_session_id or self.persistence is None:
            return
        try:
            self.persistence.update_episode(
                ctx.tapping_session_id,
                final_intensity=final_intensity,
                rounds_completed=ctx.round or 1,
                completed_at=datetime.now(timezone.utc).isoformat(),
            )
        except Exception as e:
            logger.error(f"Failed to complete episode: {e}")
            turn.debug['errors'].append(str(e))

    # ========================
    # Helpers
    # ========================

    def _transition(self, turn: _Turn, new_state: SessionState, check: bool = True) -> None:
        current = self.state
        if check:
            log_unexpected_transition(current.name, new_state.name)
        if new_state != current:
            logger.info(f"Transition {_label(current)} -> {_label(new_state)}")
        self.state = new_state
        turn.debug['transitions'].append(new_state.to_json())

    def _append(self, turn: _Turn, message_type: MessageType, content: str,
                prefix: Optional[str] = None) -> Message:
        message = Message.create(message_type, content, self.session_id, prefix=prefix)
        self.messages.append(message)
        turn.messages.append(message)
        return message

    def _append_payload(self, turn: _Turn, payload: Dict[str, Any]) -> Message:
        logger.debug(f"System payload: {payload}")
        return self._append(turn, MessageType.SYSTEM, json.dumps(payload), prefix='choice')

    def _history_window(self) -> List[Dict[str, str]]:
        return [m.to_history_entry() for m in self.messages[-HISTORY_WINDOW:]]

    def _finish(self, turn: _Turn) -> TurnResult:
        self.turn_count += 1
        self._persist(turn)
        return TurnResult(
            messages=list(turn.messages),
            state=self.state,
            context=self.context.to_dict(),
            crisis_detected=turn.crisis,
            debug=turn.debug,
        )

    def _persist(self, turn: _Turn) -> None:
        if self.persistence is None:
            return
        try:
            self.persistence.append_and_persist_transcript(
                self.session_id, self.messages,
                session_name=self.session_name, crisis_detected=self.crisis_detected,
            )
            self.persistence.save_snapshot(self.session_id, self.turn_count, self.snapshot())
        except Exception as e:
            logger.error(f"Failed to persist session {self.session_id}: {e}")
            turn.debug['errors'].append(str(e))
