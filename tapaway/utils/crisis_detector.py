"""
Crisis Detector - Deterministic safety gate over user text.

Purpose:
    Single shared routine used by both the Session Orchestrator (client-side
    pre-check on the raw user message) and the Dialogue Engine (server-side
    check before returning model text). There is exactly one set of keyword,
    phrase and word-pair lists so the two checks can never diverge.

Scope:
    This module does NOT:
    - Block or drop the user's message
    - Decide what the UI shows
    - Change session state

    This module ONLY:
    - Scans lower-cased text
    - Produces a finite CrisisAssessment
    - Supplies the fixed supportive redirect message

Design Constraints:
    - Pure, total, deterministic functions
    - Substring containment (false positives fail safe)
    - Never raises exceptions
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


CRISIS_KEYWORDS = (
    # Immediate danger
    'suicide', 'kill myself', 'end it all', 'hurt myself', 'die', 'death',
    'want to die', 'self harm', 'cutting', 'overdose', 'jump off',
    'hang myself', 'pills',
    # Severe emotional distress
    'better off dead', 'no point living', "can't go on", 'no way out',
    'give up', 'hopeless', 'worthless', 'pointless', 'no hope',
    'escape this pain',
)

CRISIS_PHRASES = (
    'want to hurt myself',
    'thoughts of dying',
    'end the pain',
    'make it stop',
    "can't take it anymore",
    "life isn't worth",
    'world without me',
    'planning to hurt',
    'thinking about suicide',
    'no point in living',
    'better off dead',
    "can't go on",
    'no way out',
)

# Both words anywhere in the text, not necessarily adjacent
CONCERNING_COMBINATIONS = (
    ('hurt', 'myself'),
    ('end', 'life'),
    ('kill', 'me'),
    ('want', 'die'),
    ("can't", 'anymore'),
    ('no', 'hope'),
    ('give', 'up'),
    ('escape', 'pain'),
)

CRISIS_RESPONSE_TEMPLATE = (
    "{name}, I can see you're going through a really difficult time right now. "
    "Your safety and wellbeing are the most important thing. I want to connect you "
    "with people who are specially trained to help in these situations. Please know "
    "that you're not alone, and there are people who care about you and want to help. "
    "Let me show you some immediate support resources."
)


class CrisisTrigger(str, Enum):
    """
    Which rule fired first.

    Precedence matches evaluation order: keyword, phrase, combination.
    String-based for JSON/log serialization.
    """
    NONE = "none"
    KEYWORD = "keyword"
    PHRASE = "phrase"
    COMBINATION = "combination"


@dataclass(frozen=True)
class CrisisAssessment:
    detected: bool
    trigger: CrisisTrigger
    matched: Optional[str] = None


def assess(text: str) -> CrisisAssessment:
    """
    Scan text for crisis indicators.

    Precedence rules (applied in order):
        1. Any keyword contained in the text -> KEYWORD
        2. Any phrase contained in the text -> PHRASE
        3. Both words of any concerning pair present -> COMBINATION
        4. Otherwise -> NONE

    Args:
        text: Normalized user text (non-strings are treated as empty)

    Returns:
        CrisisAssessment
    """
    if not isinstance(text, str) or not text:
        return CrisisAssessment(detected=False, trigger=CrisisTrigger.NONE)

    lowered = text.lower()

    for keyword in CRISIS_KEYWORDS:
        if keyword in lowered:
            return CrisisAssessment(True, CrisisTrigger.KEYWORD, keyword)

    for phrase in CRISIS_PHRASES:
        if phrase in lowered:
            return CrisisAssessment(True, CrisisTrigger.PHRASE, phrase)

    for first, second in CONCERNING_COMBINATIONS:
        if first in lowered and second in lowered:
            return CrisisAssessment(True, CrisisTrigger.COMBINATION, f"{first}+{second}")

    return CrisisAssessment(detected=False, trigger=CrisisTrigger.NONE)


def detect(text: str) -> bool:
    """
    Binary crisis gate.

    Examples:
        >>> detect("I want to kill myself")
        True
        >>> detect("I feel anxious about my exam")
        False
    """
    return assess(text).detected


def crisis_response(user_name: Optional[str] = None) -> str:
    """Fixed supportive redirect message that replaces the bot reply"""
    return CRISIS_RESPONSE_TEMPLATE.format(name=user_name or 'Friend')
