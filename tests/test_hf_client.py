"""
Test the model-free helpers of the HuggingFace client
"""

import sys
import os
import json
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tapaway.utils.hf_client import repair_json, render_inst_prompt


def test_repair_json_strips_fences_and_chatter():
    raw = '```json\n{"relevance": "yes", "reason": "ok"}\n```'
    assert json.loads(repair_json(raw)) == {'relevance': 'yes', 'reason': 'ok'}

    chatty = 'Sure! Here you go: {"relevance": "no"} Hope that helps.'
    assert json.loads(repair_json(chatty)) == {'relevance': 'no'}

    print("✓ JSON fence test passed")


def test_repair_json_balances_braces():
    """Missing or surplus closing braces are evened out"""
    missing = '{"extracted": {"feeling": "sad"}'
    assert json.loads(repair_json(missing)) == {'extracted': {'feeling': 'sad'}}
    assert repair_json('{"a": {"b": 1}') == '{"a": {"b": 1}}'

    surplus = '{"a": 1}}'
    assert json.loads(repair_json(surplus)) == {'a': 1}


def test_repair_json_without_braces():
    assert repair_json('no json here') == 'no json here'


def test_render_inst_prompt_folds_system():
    prompt = render_inst_prompt([
        {'role': 'system', 'content': 'Be kind.'},
        {'role': 'assistant', 'content': 'Hello!'},
        {'role': 'user', 'content': 'I feel anxious'},
        {'role': 'assistant', 'content': 'Where?'},
        {'role': 'user', 'content': 'chest'},
    ])

    assert prompt.split('\n') == [
        'Hello!',
        '[INST] Be kind.',
        '',
        'I feel anxious [/INST]',
        'Where?',
        '[INST] chest [/INST]',
    ]
