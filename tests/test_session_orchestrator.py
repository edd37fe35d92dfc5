"""
Unit tests for SessionOrchestrator

Tests the session state machine with a mocked dialogue service
"""

import sys
import os
import json
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from tapaway.core.dialogue_service import DialogueReply, DialogueServiceError
from tapaway.core.session_context import MessageType, SessionContext
from tapaway.core.session_orchestrator import (
    SessionOrchestrator,
    APOLOGY_MESSAGE,
    PAYLOAD_ALTERNATIVE_SUGGESTIONS,
    PAYLOAD_POST_TAPPING_CHOICE,
)
from tapaway.core.session_state import ChatState, SessionState
from tapaway.persistence import SessionPersistence
from tapaway.results import TurnRejected, TurnResult
from tapaway.utils.rate_limiter import RATE_LIMIT_MESSAGE

STATEMENTS = [
    "Even though I have this anxious feeling in my chest, I deeply and completely accept myself",
    "I notice this anxious feeling in my chest, and I choose to relax",
    "This anxious feeling in my chest, and I'm ready to let it go",
]
ORDER = [0, 1, 2, 0, 1, 2, 1, 0]


# ========================
# Mock Modules
# ========================

class MockDialogueService:
    """
    Scripted dialogue service.

    Replies are keyed by the request's chat state; a value may be a
    DialogueReply, an exception instance to raise, or a callable.
    """

    def __init__(self, script=None, default=None):
        self.script = script or {}
        self.default = default or DialogueReply(response="I'm listening.")
        self.requests = []

    def send(self, request):
        self.requests.append(request)
        reply = self.script.get(request.chat_state, self.default)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return reply


class MockPersistence:
    """In-memory persistence collaborator"""

    def __init__(self, fail=False):
        self.fail = fail
        self.episodes = {}
        self.transcripts = {}
        self.snapshots = []

    def create_episode(self, problem, feeling, body_location, initial_intensity):
        if self.fail:
            raise IOError("disk full")
        handle = f"episode-{len(self.episodes) + 1}"
        self.episodes[handle] = {
            'problem': problem,
            'feeling': feeling,
            'body_location': body_location,
            'initial_intensity': initial_intensity,
            'final_intensity': None,
            'rounds_completed': 0,
            'completed_at': None,
        }
        return handle

    def update_episode(self, handle, final_intensity=None, rounds_completed=None, completed_at=None):
        if self.fail:
            raise IOError("disk full")
        record = self.episodes[handle]
        if final_intensity is not None:
            record['final_intensity'] = final_intensity
        if rounds_completed is not None:
            record['rounds_completed'] = rounds_completed
        if completed_at is not None:
            record['completed_at'] = completed_at
        return record

    def append_and_persist_transcript(self, session_id, messages, session_name=None, crisis_detected=False):
        if self.fail:
            raise IOError("disk full")
        self.transcripts[session_id] = list(messages)

    def save_snapshot(self, session_id, turn, snapshot):
        if self.fail:
            raise IOError("disk full")
        self.snapshots.append((turn, snapshot))


def directive_reply(text, extracted=None, **directive):
    wire = json.dumps(directive)
    return DialogueReply(response=f"{text}\n\n<<DIRECTIVE {wire}>>", extracted_context=extracted or {})


def intake_script():
    """Scripted replies for a complete intake"""
    return {
        'initial': directive_reply(
            "I hear that work is stressful, Sam. What emotion are you feeling?",
            {'problem': 'work deadline'},
            next_state='gathering-feeling', collect='feeling',
        ),
        'gathering-feeling': directive_reply(
            "Where in your body do you feel this anxious feeling?",
            {'feeling': 'anxious'},
            next_state='gathering-location', collect='body_location',
        ),
        'gathering-location': directive_reply(
            "On a scale of 0 to 10, how intense is it?",
            {'bodyLocation': 'chest'},
            next_state='gathering-intensity', collect='intensity',
        ),
        'gathering-intensity': directive_reply(
            "Take a deep breath in... and breathe out. Let's begin the tapping now.",
            next_state='tapping-point', tapping_point=0,
            setup_statements=STATEMENTS, statement_order=ORDER, say_index=0,
        ),
        'advice': directive_reply(
            "Amazing work today, Sam! Practice this whenever the feeling returns.",
            next_state='complete',
        ),
    }


def started(service=None, persistence=None):
    orchestrator = SessionOrchestrator(service or MockDialogueService(), persistence=persistence, user_name="Sam")
    orchestrator.start_session()
    return orchestrator


def in_post_tapping(service=None, persistence=None, current=5, rounds_without_reduction=0):
    """Orchestrator positioned after a round, ready for a re-rating"""
    orchestrator = started(service, persistence)
    orchestrator.context = SessionContext(
        problem='work deadline', feeling='anxious', body_location='chest',
        initial_intensity=8, current_intensity=current, round=1,
        intensity_history=[8, current], rounds_without_reduction=rounds_without_reduction,
    )
    orchestrator.state = SessionState.of(ChatState.POST_TAPPING)
    return orchestrator


def system_payloads(result):
    return [json.loads(m.content) for m in result.messages if m.type == MessageType.SYSTEM]


# ========================
# Session lifecycle
# ========================

def test_start_session_greets():
    """New session: id, greeting, initial state"""
    orchestrator = SessionOrchestrator(MockDialogueService(), user_name="Sam")
    result = orchestrator.start_session()

    assert isinstance(result, TurnResult)
    assert orchestrator.session_id is not None
    assert result.state == SessionState.of(ChatState.INITIAL)
    assert len(result.messages) == 1
    assert result.messages[0].content.startswith("Hello Sam! 💙")

    anonymous = SessionOrchestrator(MockDialogueService())
    assert anonymous.start_session().messages[0].content.startswith("Hello there!")

    print("✓ Start session test passed")


def test_operations_rejected_before_start():
    orchestrator = SessionOrchestrator(MockDialogueService())

    result = orchestrator.send_message("hello")
    assert isinstance(result, TurnRejected)
    assert result.operation == 'send_message'
    assert isinstance(orchestrator.submit_intensity(5), TurnRejected)


def test_constructor_validates_collaborators():
    with pytest.raises(TypeError):
        SessionOrchestrator(object())
    with pytest.raises(TypeError):
        SessionOrchestrator(MockDialogueService(), persistence=object())


def test_remote_request_contents():
    """History excludes the current message; last bot message travels along"""
    service = MockDialogueService(intake_script())
    orchestrator = started(service)

    orchestrator.send_message("I'm stressed about a work deadline")

    request = service.requests[0]
    assert request.chat_state == 'initial'
    assert request.user_name == 'Sam'
    assert request.message == "I'm stressed about a work deadline"
    assert len(request.conversation_history) == 1
    assert request.conversation_history[0]['type'] == 'bot'
    assert request.last_assistant_message.startswith("Hello Sam!")
    assert request.current_tapping_point == 0

    print("✓ Remote request test passed")


def test_typos_corrected_before_forwarding():
    """The service gets corrected text, the log keeps what the user typed"""
    service = MockDialogueService()
    orchestrator = started(service)

    result = orchestrator.send_message("I feel anxios")

    assert service.requests[0].message == "I feel anxious"
    assert result.messages[0].content == "I feel anxios"
    assert result.debug['corrections'] == [('anxios', 'anxious')]


def test_directive_applied_and_stripped():
    service = MockDialogueService(intake_script())
    orchestrator = started(service)

    result = orchestrator.send_message("I'm stressed about a work deadline")

    assert orchestrator.state.name == ChatState.GATHERING_FEELING
    assert orchestrator.context.problem == 'work deadline'
    bot = [m for m in result.messages if m.type == MessageType.BOT]
    assert bot[0].content == "I hear that work is stressful, Sam. What emotion are you feeling?"
    assert result.debug['directive']['next_state'] == 'gathering-feeling'


def test_unexpected_transition_still_applied():
    """The transition table only warns"""
    service = MockDialogueService({'initial': directive_reply("Jumping ahead", next_state='advice')})
    orchestrator = started(service)

    orchestrator.send_message("hello")

    assert orchestrator.state.name == ChatState.ADVICE


# ========================
# Fallback inference
# ========================

def test_fallback_inference_without_directive():
    service = MockDialogueService({
        'initial': DialogueReply(response="I hear you. How does that make you feel?"),
    })
    orchestrator = started(service)

    result = orchestrator.send_message("My boss yelled at me")

    assert result.debug['fallback'] is True
    assert orchestrator.state.name == ChatState.GATHERING_FEELING

    print("✓ Fallback inference test passed")


def test_fallback_extracts_setup_statements():
    service = MockDialogueService({
        'gathering-intensity': DialogueReply(response=(
            "Let's begin. Repeat after me:\n"
            '"Even though I feel anxious, I accept myself"\n'
            '"Even though my chest is tight, I am okay"\n'
            '"Even though this deadline scares me, I choose calm"'
        )),
    })
    orchestrator = started(service)
    orchestrator.state = SessionState.of(ChatState.GATHERING_INTENSITY)

    orchestrator.send_message("7")

    assert orchestrator.state == SessionState.tapping(0)
    assert orchestrator.context.setup_statements[2] == "Even though this deadline scares me, I choose calm"
    assert orchestrator.current_phrase() == "Even though I feel anxious, I accept myself"


def test_fallback_advances_tapping_point():
    service = MockDialogueService({'tapping-point': DialogueReply(response="Now tap the next point.")})
    orchestrator = started(service)
    orchestrator.state = SessionState.tapping(3)

    orchestrator.send_message("done")
    assert orchestrator.state == SessionState.tapping(4)

    orchestrator.state = SessionState.tapping(7)
    orchestrator.send_message("done")
    assert orchestrator.state.name == ChatState.TAPPING_BREATHING


# ========================
# Post-tapping re-rating
# ========================

def test_intensity_zero_goes_to_advice():
    """0 completes the episode and makes exactly one remote call in advice"""
    service = MockDialogueService(intake_script())
    persistence = MockPersistence()
    orchestrator = in_post_tapping(service, persistence)
    orchestrator.context.tapping_session_id = persistence.create_episode('work deadline', 'anxious', 'chest', 8)

    orchestrator.submit_intensity(0)

    assert len(service.requests) == 1
    assert service.requests[0].chat_state == 'advice'
    assert service.requests[0].message == "My intensity is now 0/10. Initial was 8/10."
    assert orchestrator.state.name == ChatState.COMPLETE
    episode = persistence.episodes[orchestrator.context.tapping_session_id]
    assert episode['final_intensity'] == 0
    assert episode['completed_at'] is not None

    print("✓ Intensity 0 test passed")


def test_intensity_two_offers_choice():
    """1-2 emits the post-tapping choice payload locally"""
    service = MockDialogueService()
    orchestrator = in_post_tapping(service, current=5)

    result = orchestrator.submit_intensity(2)

    assert service.requests == []
    assert orchestrator.state.name == ChatState.POST_TAPPING
    payloads = system_payloads(result)
    assert payloads == [{
        'type': PAYLOAD_POST_TAPPING_CHOICE,
        'intensity': 2,
        'initialIntensity': 8,
        'improvement': 6,
        'round': 1,
        'roundsWithoutReduction': 0,
        'phraseType': 'partial-release',
    }]
    assert orchestrator.context.intensity_history == [8, 5, 2]

    print("✓ Intensity 2 test passed")


def test_intensity_five_starts_new_round():
    """>2 regenerates statements and restarts at point 0"""
    service = MockDialogueService()
    orchestrator = in_post_tapping(service, current=7)

    result = orchestrator.submit_intensity(5)

    assert service.requests == []
    assert orchestrator.state == SessionState.tapping(0)
    assert orchestrator.context.round == 2
    assert orchestrator.context.phrase_type == 'acknowledging'
    assert len(orchestrator.context.setup_statements) == 3
    assert orchestrator.context.setup_statements[0].startswith("Even though I STILL feel some of this anxious")
    assert len(orchestrator.context.reminder_phrases) == 8
    assert "bring that anxious down even more" in result.bot_text()

    print("✓ Intensity 5 test passed")


def test_rounds_without_reduction_counter():
    orchestrator = in_post_tapping(current=5)
    orchestrator.submit_intensity(5)
    assert orchestrator.context.rounds_without_reduction == 1

    orchestrator.state = SessionState.of(ChatState.POST_TAPPING)
    orchestrator.submit_intensity(6)
    assert orchestrator.context.rounds_without_reduction == 2

    orchestrator.state = SessionState.of(ChatState.POST_TAPPING)
    orchestrator.submit_intensity(4)
    assert orchestrator.context.rounds_without_reduction == 0


def test_alternative_suggestions_after_three_stalled_rounds():
    orchestrator = in_post_tapping(current=2, rounds_without_reduction=2)

    result = orchestrator.submit_intensity(2)

    assert orchestrator.context.rounds_without_reduction == 3
    assert system_payloads(result) == [{
        'type': PAYLOAD_ALTERNATIVE_SUGGESTIONS,
        'intensity': 2,
        'roundsWithoutReduction': 3,
        'options': ['breathing', 'hydration', 'talk-to-human'],
    }]

    print("✓ Alternative suggestions test passed")


def test_intensity_intercepted_in_breathing_state():
    service = MockDialogueService()
    orchestrator = in_post_tapping(service, current=7)
    orchestrator.state = SessionState.of(ChatState.TAPPING_BREATHING)

    orchestrator.send_message("4/10", {'currentIntensity': 4})

    assert service.requests == []
    assert orchestrator.state == SessionState.tapping(0)


def test_submit_intensity_clamps_and_validates():
    service = MockDialogueService()
    orchestrator = started(service)

    orchestrator.submit_intensity(14)
    assert service.requests[-1].message == "10/10"

    result = orchestrator.submit_intensity("lots")
    assert isinstance(result, TurnRejected)


def test_gathering_intensity_sets_baseline():
    service = MockDialogueService(intake_script())
    persistence = MockPersistence()
    orchestrator = started(service, persistence)
    orchestrator.context.merge({'problem': 'work deadline', 'feeling': 'anxious', 'bodyLocation': 'chest'})
    orchestrator.state = SessionState.of(ChatState.GATHERING_INTENSITY)

    orchestrator.submit_intensity(8)

    ctx = orchestrator.context
    assert ctx.initial_intensity == 8
    assert ctx.current_intensity == 8
    assert ctx.round == 1
    assert ctx.tapping_session_id in persistence.episodes
    assert service.requests[0].session_context['initialIntensity'] == 8
    assert orchestrator.state == SessionState.tapping(0)
    assert ctx.setup_statements == STATEMENTS
    assert ctx.statement_order == ORDER


def test_typed_intensity_during_intake_sets_baseline():
    """An intensity the service extracts from free text counts as a rating"""
    script = intake_script()
    script['gathering-intensity'] = directive_reply(
        "Take a deep breath in... and breathe out. Let's begin the tapping now.",
        {'currentIntensity': 8},
        next_state='tapping-point', tapping_point=0,
        setup_statements=STATEMENTS, statement_order=ORDER, say_index=0,
    )
    service = MockDialogueService(script)
    persistence = MockPersistence()
    orchestrator = started(service, persistence)

    orchestrator.send_message("I'm stressed about a work deadline")
    orchestrator.send_message("anxious")
    orchestrator.send_message("my chest")
    orchestrator.send_message("about an eight")

    ctx = orchestrator.context
    assert ctx.initial_intensity == 8
    assert ctx.current_intensity == 8
    assert ctx.intensity_history == [8]
    assert ctx.round == 1
    assert persistence.episodes[ctx.tapping_session_id]['initial_intensity'] == 8
    assert orchestrator.state == SessionState.tapping(0)

    print("✓ Typed intensity test passed")


def test_invalid_context_values_are_not_stored():
    """Bad caller values leave the round data intact and later rounds still work"""
    service = MockDialogueService()
    orchestrator = in_post_tapping(service, current=7)
    orchestrator.context.set_round_statements(STATEMENTS, ORDER)

    result = orchestrator.send_message("ok", {'statementOrder': [0, 1, 2, 0, 1, 2, 1, 9]})
    assert orchestrator.context.statement_order == ORDER
    assert result.debug['errors']

    result = orchestrator.send_message("ok", {'round': 'two'})
    assert orchestrator.context.round == 1
    assert result.debug['errors']

    orchestrator.state = SessionState.of(ChatState.POST_TAPPING)
    orchestrator.submit_intensity(5)
    assert orchestrator.context.round == 2
    assert orchestrator.state == SessionState.tapping(0)


def test_tapping_point_without_next_state():
    service = MockDialogueService({'tapping-point': directive_reply("Let's skip ahead.", tapping_point=5)})
    orchestrator = started(service)
    orchestrator.context.set_round_statements(STATEMENTS, ORDER)
    orchestrator.state = SessionState.tapping(2)

    orchestrator.send_message("can we move on?")

    assert orchestrator.state == SessionState.tapping(5)


# ========================
# Choices
# ========================

def test_choice_continue_tapping():
    orchestrator = in_post_tapping(current=2)

    orchestrator.handle_choice('continue-tapping')

    assert orchestrator.state == SessionState.tapping(0)
    assert orchestrator.context.round == 2


def test_choice_continue_after_stalled_rounds_offers_alternatives():
    orchestrator = in_post_tapping(current=2, rounds_without_reduction=3)

    result = orchestrator.handle_choice('continue-tapping')

    assert system_payloads(result)[0]['type'] == PAYLOAD_ALTERNATIVE_SUGGESTIONS
    assert orchestrator.state.name == ChatState.POST_TAPPING


def test_choice_talk_to_assistant():
    orchestrator = in_post_tapping(current=2)

    result = orchestrator.handle_choice('talk-to-assistant')

    assert orchestrator.state.name == ChatState.CONVERSATION
    assert orchestrator.context.returning_from_tapping is True
    assert orchestrator.context.deepening_level == 1
    assert "What else is on your mind about this anxious?" in result.bot_text()


def test_choice_end_session():
    service = MockDialogueService(intake_script())
    orchestrator = in_post_tapping(service, current=2)

    orchestrator.handle_choice('end-session')

    assert service.requests[0].chat_state == 'advice'
    assert service.requests[0].message == "I'm ready to finish. My final intensity is 2/10. Initial was 8/10."
    assert orchestrator.state.name == ChatState.COMPLETE


def test_alternative_choices_are_local():
    service = MockDialogueService()
    orchestrator = in_post_tapping(service, current=2)

    for choice in ('breathing', 'hydration', 'talk-to-human'):
        result = orchestrator.handle_choice(choice)
        assert len(result.messages) == 1
        assert result.messages[0].type == MessageType.BOT

    assert service.requests == []
    assert orchestrator.state.name == ChatState.POST_TAPPING

    rejected = orchestrator.handle_choice('dance')
    assert isinstance(rejected, TurnRejected)


# ========================
# Safety and failures
# ========================

def test_local_crisis_short_circuits():
    """Crisis text never reaches the dialogue service"""
    service = MockDialogueService()
    orchestrator = started(service)

    result = orchestrator.send_message("I want to kill myself")

    assert result.crisis_detected
    assert orchestrator.crisis_detected
    assert service.requests == []
    assert orchestrator.state.name == ChatState.COMPLETE
    assert result.messages[0].type == MessageType.USER
    assert result.messages[1].content.startswith("Sam, I can see you're going through")

    print("✓ Local crisis test passed")


def test_crisis_wins_over_intensity_interception():
    orchestrator = in_post_tapping(current=5)

    result = orchestrator.send_message("I can't go on", {'current_intensity': 1})

    assert result.crisis_detected
    assert orchestrator.context.current_intensity == 5


def test_service_crisis_flag():
    service = MockDialogueService(default=DialogueReply(response="Please reach out for support.", crisis_detected=True))
    orchestrator = started(service)

    result = orchestrator.send_message("everything is too much")

    assert result.crisis_detected
    assert orchestrator.state.name == ChatState.COMPLETE


def test_transport_error_gives_apology():
    service = MockDialogueService(default=DialogueServiceError("connection refused"))
    orchestrator = started(service)

    result = orchestrator.send_message("hello")

    assert result.bot_text() == APOLOGY_MESSAGE
    assert orchestrator.state.name == ChatState.INITIAL
    assert result.debug['errors'] == ["connection refused"]

    print("✓ Transport error test passed")


def test_rate_limited_reply_keeps_state():
    service = MockDialogueService(default=DialogueReply(response=RATE_LIMIT_MESSAGE, rate_limited=True))
    orchestrator = started(service)

    result = orchestrator.send_message("hello")

    assert result.bot_text() == RATE_LIMIT_MESSAGE
    assert result.debug['rate_limited'] is True
    assert orchestrator.state.name == ChatState.INITIAL


def test_reentrant_turn_rejected():
    """A second submission while a turn is in flight is refused"""
    captured = {}

    def reenter(request):
        captured['result'] = orchestrator.send_message("second message")
        return DialogueReply(response="First reply")

    orchestrator = started(MockDialogueService(default=reenter))

    result = orchestrator.send_message("first message")

    assert isinstance(captured['result'], TurnRejected)
    assert isinstance(result, TurnResult)
    assert not orchestrator.is_busy
    assert [m.content for m in orchestrator.messages[1:]] == ["first message", "First reply"]

    print("✓ Re-entrancy test passed")


def test_persistence_failures_do_not_break_turns():
    persistence = MockPersistence(fail=True)
    orchestrator = started(MockDialogueService(), persistence)

    result = orchestrator.send_message("hello")

    assert isinstance(result, TurnResult)
    assert any("disk full" in error for error in result.debug['errors'])


# ========================
# Tapping progression and snapshots
# ========================

def test_advance_tapping_point():
    orchestrator = started()
    assert isinstance(orchestrator.advance_tapping_point(), TurnRejected)

    orchestrator.context.set_round_statements(STATEMENTS, ORDER)
    orchestrator.state = SessionState.tapping(0)
    assert orchestrator.current_phrase() == STATEMENTS[0]

    for expected in range(1, 8):
        result = orchestrator.advance_tapping_point()
        assert result.state == SessionState.tapping(expected)
        assert result.debug['phrase'] == STATEMENTS[ORDER[expected]]

    result = orchestrator.advance_tapping_point()
    assert result.state.name == ChatState.TAPPING_BREATHING
    assert orchestrator.current_phrase() is None

    print("✓ Advance tapping point test passed")


def test_snapshot_restore():
    service = MockDialogueService(intake_script())
    orchestrator = started(service)
    orchestrator.send_message("I'm stressed about a work deadline")
    orchestrator.send_message("anxious")

    snapshot = json.loads(json.dumps(orchestrator.snapshot()))
    restored = SessionOrchestrator.restore(snapshot, service)

    assert restored.session_id == orchestrator.session_id
    assert restored.state == orchestrator.state
    assert restored.context == orchestrator.context
    assert restored.messages == orchestrator.messages
    assert restored.turn_count == orchestrator.turn_count

    restored.send_message("in my chest")
    assert restored.state.name == ChatState.GATHERING_INTENSITY
    assert restored.context.body_location == 'chest'

    print("✓ Snapshot restore test passed")


def test_snapshots_persisted_each_turn():
    persistence = MockPersistence()
    orchestrator = started(MockDialogueService(), persistence)
    orchestrator.send_message("hello")

    assert [turn for turn, _ in persistence.snapshots] == [1, 2]
    assert len(persistence.transcripts[orchestrator.session_id]) == 3


# ========================
# End-to-end session
# ========================

def test_full_session_two_rounds(tmp_path):
    """Intake, two rounds (8 -> 6 -> 0), advice, with file persistence"""
    service = MockDialogueService(intake_script())
    persistence = SessionPersistence(str(tmp_path))
    orchestrator = SessionOrchestrator(service, persistence=persistence, user_name="Sam")

    orchestrator.start_session()
    orchestrator.send_message("I'm stressed about a work deadline")
    orchestrator.send_message("anxious")
    orchestrator.send_message("in my chest")
    assert orchestrator.state.name == ChatState.GATHERING_INTENSITY

    orchestrator.submit_intensity(8)
    assert orchestrator.state == SessionState.tapping(0)
    handle = orchestrator.context.tapping_session_id
    assert handle is not None

    for _ in range(8):
        orchestrator.advance_tapping_point()
    assert orchestrator.state.name == ChatState.TAPPING_BREATHING

    orchestrator.submit_intensity(6)
    assert orchestrator.state == SessionState.tapping(0)
    assert orchestrator.context.round == 2

    for _ in range(8):
        orchestrator.advance_tapping_point()
    result = orchestrator.submit_intensity(0)

    assert orchestrator.state.name == ChatState.COMPLETE
    assert "Amazing work today" in result.bot_text()
    assert [r.chat_state for r in service.requests] == [
        'initial', 'gathering-feeling', 'gathering-location', 'gathering-intensity', 'advice'
    ]

    episode = persistence.load_episode(handle)
    assert episode['problem'] == 'work deadline'
    assert episode['initial_intensity'] == 8
    assert episode['final_intensity'] == 0
    assert episode['rounds_completed'] == 2
    assert episode['completed_at'] is not None

    assert orchestrator.context.intensity_history == [8, 6, 0]
    assert orchestrator.session_name is not None
    latest = persistence.load_latest_snapshot(orchestrator.session_id)
    assert latest['state']['name'] == 'complete'
    assert latest['turn_count'] == orchestrator.turn_count
    assert persistence.load_transcript(orchestrator.session_id) == orchestrator.messages

    print("✓ Full session test passed")
