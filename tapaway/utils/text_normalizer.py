"""
Text Normalizer - Best-effort typo correction for domain vocabulary

Responsibilities:
- Correct common misspellings of emotion words, body locations and contractions
- Report every correction for auditability
- Sanitize raw user input before it reaches detection or the model
- Normalize colloquial body-location names

Design principles:
- Pure functions, no side effects
- Never changes token boundaries or non-word characters
- Exact dictionary hit first, fuzzy (Levenshtein) match second
- Idempotent: correct(correct(x).corrected) == correct(x).corrected

Fuzzy matching rules:
- Accept the closest key when distance <= floor(0.4 * len(word))
- Ties go to the first key in dictionary order (strict '<' comparison)
- Words shorter than MIN_FUZZY_LENGTH are never fuzzy-matched
- Contraction entries are exact-only (otherwise "can" -> "can't")
"""

import re
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

MAX_INPUT_LENGTH = 1000
MIN_FUZZY_LENGTH = 4
FUZZY_RATIO = 0.4

# typo -> canonical, domain vocabulary. Canonical forms map to themselves
# so a corrected word is always an exact hit on the next pass.
EMOTION_TERMS = {
    'anxious': 'anxious',
    'anxios': 'anxious',
    'anxiuos': 'anxious',
    'anixous': 'anxious',
    'stressed': 'stressed',
    'stresed': 'stressed',
    'stresd': 'stressed',
    'depressed': 'depressed',
    'depresed': 'depressed',
    'depress': 'depressed',
    'worried': 'worried',
    'worryed': 'worried',
    'woried': 'worried',
    'scared': 'scared',
    'scaed': 'scared',
    'afraid': 'afraid',
    'afraaid': 'afraid',
    'overwhelmed': 'overwhelmed',
    'overwelmed': 'overwhelmed',
    'overwhelmd': 'overwhelmed',
    'panicked': 'panicked',
    'panicced': 'panicked',
    'terrified': 'terrified',
    'terified': 'terrified',
    'hopeless': 'hopeless',
    'hopeles': 'hopeless',
    'helpless': 'helpless',
    'helpeles': 'helpless',
    'frustrated': 'frustrated',
    'fustrated': 'frustrated',
    'frustraited': 'frustrated',
}

BODY_TERMS = {
    'chest': 'chest',
    'stomach': 'stomach',
    'stomache': 'stomach',
    'stomch': 'stomach',
    'shoulder': 'shoulder',
    'shouldor': 'shoulder',
    'shoulders': 'shoulders',
    'throat': 'throat',
    'throut': 'throat',
    'throaht': 'throat',
    'forehead': 'forehead',
    'forhead': 'forehead',
    'fourhead': 'forehead',
}

CONTRACTION_TERMS = {
    'cant': "can't",
    'wont': "won't",
    'dont': "don't",
    'isnt': "isn't",
    'wasnt': "wasn't",
    'couldnt': "couldn't",
    'shouldnt': "shouldn't",
    'wouldnt': "wouldn't",
}

TYPO_DICTIONARY = {**EMOTION_TERMS, **BODY_TERMS, **CONTRACTION_TERMS}

# Keys eligible for fuzzy matching (insertion order preserved for tie-breaks)
FUZZY_KEYS = [key for key in TYPO_DICTIONARY if key not in CONTRACTION_TERMS]

BODY_LOCATION_SYNONYMS = {
    'thorax': 'chest',
    'sternum': 'chest',
    'tummy': 'stomach',
    'belly': 'stomach',
    'abdomen': 'stomach',
    'noggin': 'head',
    'cranium': 'head',
    'dome': 'head',
    'temples': 'head',
    'gullet': 'throat',
    'windpipe': 'throat',
    'trapezius': 'shoulders',
    'traps': 'shoulders',
    'lumbar': 'lower back',
    'cervical': 'neck',
    'brow': 'forehead',
}

_WHITESPACE_SPLIT = re.compile(r'(\s+)')
_WORD_TOKEN = re.compile(r'^([^\w]*)(\w+)([^\w]*)$')


@dataclass(frozen=True)
class CorrectionResult:
    """
    Output of correct()

    Attributes:
        corrected: Text with corrections applied
        changes: Ordered (original, replacement) pairs, empty when nothing matched
    """
    corrected: str
    changes: List[Tuple[str, str]] = field(default_factory=list)


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance (insert/delete/substitute, unit cost)"""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                current[j - 1] + 1,       # insertion
                previous[j] + 1,          # deletion
                previous[j - 1] + cost    # substitution
            ))
        previous = current
    return previous[-1]


def find_best_match(word: str) -> Optional[str]:
    """
    Find the canonical form closest to word among fuzzy-eligible keys.

    Args:
        word: Single word (no punctuation)

    Returns:
        Canonical form, or None if nothing is close enough
    """
    if len(word) < MIN_FUZZY_LENGTH:
        return None

    lower_word = word.lower()
    max_distance = int(len(word) * FUZZY_RATIO)
    best_match = None
    best_distance = max_distance + 1

    for key in FUZZY_KEYS:
        distance = levenshtein_distance(lower_word, key)
        if distance < best_distance:
            best_distance = distance
            best_match = TYPO_DICTIONARY[key]

    return best_match


def _match_case(original: str, replacement: str) -> str:
    if original[:1].isupper() and replacement:
        return replacement[0].upper() + replacement[1:]
    return replacement


def correct(text: str) -> CorrectionResult:
    """
    Correct domain-term typos in free text.

    Args:
        text: Raw user text

    Returns:
        CorrectionResult with corrected text and ordered change pairs

    Examples:
        >>> correct("I feel anxios in my chest").corrected
        'I feel anxious in my chest'
        >>> correct("I dont know").changes
        [('dont', "don't")]
    """
    if not isinstance(text, str) or not text:
        return CorrectionResult(corrected=text if isinstance(text, str) else '', changes=[])

    tokens = _WHITESPACE_SPLIT.split(text)
    changes = []

    for index, token in enumerate(tokens):
        if not token or token.isspace():
            continue

        match = _WORD_TOKEN.match(token)
        if not match:
            # Inner punctuation (contractions, hyphenation) - leave alone
            continue

        prefix, word, suffix = match.groups()
        lower_word = word.lower()

        if lower_word in TYPO_DICTIONARY:
            replacement = TYPO_DICTIONARY[lower_word]
        else:
            replacement = find_best_match(word)

        if replacement is None or replacement == lower_word:
            continue

        replacement = _match_case(word, replacement)
        tokens[index] = prefix + replacement + suffix
        changes.append((word, replacement))

    if changes:
        logger.debug(f"Typo corrections applied: {changes}")

    return CorrectionResult(corrected=''.join(tokens), changes=changes)


def sanitize_input(text, max_length: int = MAX_INPUT_LENGTH) -> str:
    """
    Correct, trim and truncate user input. Never rejects.

    Args:
        text: Raw input (non-strings become empty string)
        max_length: Maximum characters kept

    Returns:
        str: Sanitized text
    """
    if not isinstance(text, str):
        return ''

    sanitized = correct(text).corrected.strip()
    if len(sanitized) > max_length:
        logger.warning(f"Input truncated from {len(sanitized)} to {max_length} chars")
        sanitized = sanitized[:max_length]
    return sanitized


def normalize_body_location(location: str) -> str:
    """Map colloquial body-location names to the canonical ones"""
    lower = location.lower().strip()
    return BODY_LOCATION_SYNONYMS.get(lower, lower)
