"""
Test session state and session context containers

Run with: python3 tests/test_session_context.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from tapaway.core.session_state import (
    ChatState,
    SessionState,
    VALID_STATES,
    is_expected_transition,
    log_unexpected_transition,
    parse_chat_state,
)
from tapaway.core.session_context import (
    Message,
    MessageType,
    SessionContext,
)


# ========================
# Session state
# ========================

def test_all_states_valid():
    assert len(VALID_STATES) == 13
    assert parse_chat_state("tapping-breathing") == ChatState.TAPPING_BREATHING
    assert parse_chat_state("nonsense") is None
    assert parse_chat_state(None) is None


def test_tapping_state_carries_index():
    """Point index exists only for tapping-point and is bounded"""
    state = SessionState.tapping(3)
    assert state.is_tapping
    assert state.point_index == 3
    assert not state.is_last_point
    assert SessionState.tapping(7).is_last_point

    assert SessionState.of(ChatState.TAPPING_POINT).point_index == 0
    assert SessionState.of(ChatState.SETUP).point_index is None

    with pytest.raises(ValueError):
        SessionState.tapping(8)
    with pytest.raises(ValueError):
        SessionState(ChatState.ADVICE, 2)

    print("✓ Compound state test passed")


def test_state_json_round_trip():
    state = SessionState.tapping(5)
    assert SessionState.from_json(state.to_json()) == state

    with pytest.raises(ValueError):
        SessionState.from_json({'name': 'bogus'})


def test_expected_transitions_are_diagnostic():
    """Unexpected transitions are reported, never blocked"""
    assert is_expected_transition(ChatState.INITIAL, ChatState.GATHERING_FEELING)
    assert is_expected_transition(ChatState.TAPPING_POINT, ChatState.TAPPING_POINT)
    assert not is_expected_transition(ChatState.INITIAL, ChatState.ADVICE)
    assert not is_expected_transition(ChatState.COMPLETE, ChatState.INITIAL)

    assert log_unexpected_transition(ChatState.SETUP, ChatState.TAPPING_POINT)
    assert log_unexpected_transition(ChatState.ADVICE, ChatState.ADVICE)
    assert not log_unexpected_transition(ChatState.INITIAL, ChatState.POST_TAPPING)

    print("✓ Transition table test passed")


# ========================
# Session context
# ========================

def test_problem_is_set_once():
    ctx = SessionContext()

    assert ctx.set_problem("work deadline")
    assert not ctx.set_problem("something else")
    assert ctx.problem == "work deadline"

    print("✓ Set-once problem test passed")


def test_initial_intensity_set_once_and_validated():
    ctx = SessionContext()

    assert ctx.set_initial_intensity(8)
    assert not ctx.set_initial_intensity(4)
    assert ctx.initial_intensity == 8

    with pytest.raises(ValueError):
        SessionContext().set_initial_intensity(11)
    with pytest.raises(ValueError):
        SessionContext().set_initial_intensity(True)


def test_record_intensity_appends_history():
    ctx = SessionContext(initial_intensity=8)
    assert ctx.previous_intensity() == 8

    ctx.record_intensity(6)
    ctx.record_intensity(3)

    assert ctx.current_intensity == 3
    assert ctx.intensity_history == [6, 3]
    assert ctx.previous_intensity() == 3
    assert SessionContext().previous_intensity() == 10

    with pytest.raises(ValueError):
        ctx.record_intensity(-1)
    assert ctx.intensity_history == [6, 3]


def test_round_statements_validated():
    ctx = SessionContext()
    ctx.set_round_statements(["a", "b", "c"], [0, 1, 2, 0, 1, 2, 1, 0], ["p"] * 8)

    assert ctx.setup_statements == ["a", "b", "c"]
    assert ctx.reminder_phrases == ["p"] * 8

    with pytest.raises(ValueError):
        ctx.set_round_statements(["a", "b"], [0] * 8)
    with pytest.raises(ValueError):
        ctx.set_round_statements(["a", "b", "c"], [0, 1, 3, 0, 1, 2, 1, 0])

    print("✓ Round statement validation test passed")


def test_merge_accepts_both_key_styles():
    """camelCase and snake_case keys merge; unknown keys are reported"""
    ctx = SessionContext()

    unknown = ctx.merge({
        'problem': 'exam',
        'bodyLocation': 'chest',
        'feeling': 'anxious',
        'initialIntensity': 7,
        'current_intensity': 7,
        'intensityHistory': [1, 2, 3],
        'favouriteColour': 'blue',
    })

    assert unknown == ['favouriteColour']
    assert ctx.body_location == 'chest'
    assert ctx.initial_intensity == 7
    assert ctx.current_intensity == 7
    assert ctx.intensity_history == []

    ctx.merge({'problem': 'changed', 'initialIntensity': 2, 'currentIntensity': 42})
    assert ctx.problem == 'exam'
    assert ctx.initial_intensity == 7
    assert ctx.current_intensity == 7

    print("✓ Merge test passed")


def test_merge_rejects_invalid_values_without_partial_writes():
    ctx = SessionContext(feeling='anxious', round=2)
    ctx.set_round_statements(['a', 'b', 'c'], [0, 1, 2, 0, 1, 2, 1, 0])
    before = SessionContext.from_dict(ctx.to_dict())

    bad_values = [
        {'statementOrder': [0, 1, 2, 0, 1, 2, 1, 9]},
        {'setupStatements': ['only one']},
        {'round': 'two'},
        {'round': 1},
        {'round': True},
        {'roundsWithoutReduction': -1},
        {'deepeningLevel': 1.5},
        {'reminderPhrases': 'not a list'},
        {'returningFromTapping': 'yes'},
        {'initialIntensity': 11},
        {'feeling': 'sad', 'statementOrder': [3, 3, 3, 3, 3, 3, 3, 3]},
    ]
    for values in bad_values:
        with pytest.raises(ValueError):
            ctx.merge(values)
        assert ctx == before

    ctx.merge({'setupStatements': ['x', 'y', 'z'], 'statementOrder': [2, 2, 2, 1, 1, 1, 0, 0], 'round': 3})
    assert ctx.setup_statements == ['x', 'y', 'z']
    assert ctx.statement_order == [2, 2, 2, 1, 1, 1, 0, 0]
    assert ctx.round == 3

    print("✓ Merge validation test passed")


def test_wire_view_and_snapshot():
    ctx = SessionContext(problem='exam', feeling='anxious', initial_intensity=7, phrase_type='acknowledging')
    wire = ctx.to_wire()

    assert wire == {
        'problem': 'exam',
        'feeling': 'anxious',
        'initialIntensity': 7,
        'round': 0,
        'roundsWithoutReduction': 0,
        'reminderPhraseType': 'acknowledging',
        'deepeningLevel': 0,
        'returningFromTapping': False,
    }

    restored = SessionContext.from_dict(ctx.to_dict())
    assert restored == ctx

    print("✓ Wire view test passed")


def test_message_json_round_trip():
    message = Message.create(MessageType.BOT, "Hello!", "abc123", prefix='greeting')

    assert message.id.startswith('greeting-')
    assert message.to_json()['sessionId'] == "abc123"
    assert message.to_history_entry() == {'type': 'bot', 'content': 'Hello!'}
    assert Message.from_json(message.to_json()) == message


if __name__ == '__main__':
    print("\n" + "="*60)
    print("TESTING SESSION STATE / CONTEXT")
    print("="*60 + "\n")

    test_all_states_valid()
    test_tapping_state_carries_index()
    test_state_json_round_trip()
    test_expected_transitions_are_diagnostic()
    test_problem_is_set_once()
    test_initial_intensity_set_once_and_validated()
    test_record_intensity_appends_history()
    test_round_statements_validated()
    test_merge_accepts_both_key_styles()
    test_merge_rejects_invalid_values_without_partial_writes()
    test_wire_view_and_snapshot()
    test_message_json_round_trip()

    print("\n" + "="*60)
    print("ALL SESSION STATE / CONTEXT TESTS PASSED ✓")
    print("="*60 + "\n")
