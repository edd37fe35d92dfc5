"""
Fallback state inference from model text.

Degraded-mode safety net: runs only when the directive codec found no
directive in a response. Pure keyword containment over lower-cased text.
"""

import logging
from typing import List, Optional

from tapaway.core.session_state import ChatState, LAST_TAPPING_POINT

logger = logging.getLogger(__name__)

INTENSITY_QUESTION_KEYWORDS = ('scale of 0', 'how intense', '0-10', 'rate the intensity')
EMOTION_QUESTION_KEYWORDS = ('how does that make you feel', 'what emotion', 'what are you feeling',
                             'how do you feel', 'what feeling')
BODY_QUESTION_KEYWORDS = ('where in your body', 'in your body', 'where do you feel', 'physically')
CHECK_IN_KEYWORDS = ('how are you feeling', 'ready to rate', 'deep breath')
COMPLETION_KEYWORDS = ('amazing work', 'meditation library', 'well done')

# Above this, a re-rating in post-tapping means another round
HIGH_INTENSITY_THRESHOLD = 3


def _contains_any(text: str, keywords) -> bool:
    return any(keyword in text for keyword in keywords)


def infer_next_state(
    state: ChatState,
    response_text: str,
    current_intensity: Optional[int] = None,
    point_index: Optional[int] = None
) -> Optional[ChatState]:
    """
    Infer the next state when no directive was parsed.

    Args:
        state: Current named state
        response_text: Visible model text (directives already stripped)
        current_intensity: Most recent intensity, used in post-tapping
        point_index: Current tapping point, used in tapping-point

    Returns:
        ChatState to move to, or None to stay
    """
    text = (response_text or '').lower()
    next_state = None

    if state == ChatState.CONVERSATION:
        if _contains_any(text, INTENSITY_QUESTION_KEYWORDS):
            next_state = ChatState.GATHERING_INTENSITY

    elif state == ChatState.INITIAL:
        if _contains_any(text, EMOTION_QUESTION_KEYWORDS):
            next_state = ChatState.GATHERING_FEELING

    elif state == ChatState.GATHERING_FEELING:
        if _contains_any(text, BODY_QUESTION_KEYWORDS):
            next_state = ChatState.GATHERING_LOCATION

    elif state == ChatState.GATHERING_LOCATION:
        next_state = ChatState.GATHERING_INTENSITY

    elif state == ChatState.GATHERING_INTENSITY:
        next_state = ChatState.TAPPING_POINT

    elif state == ChatState.TAPPING_POINT:
        if (point_index or 0) < LAST_TAPPING_POINT:
            next_state = ChatState.TAPPING_POINT
        else:
            next_state = ChatState.TAPPING_BREATHING

    elif state == ChatState.TAPPING_BREATHING:
        if _contains_any(text, CHECK_IN_KEYWORDS):
            next_state = ChatState.POST_TAPPING

    elif state == ChatState.POST_TAPPING:
        if current_intensity is not None and current_intensity > HIGH_INTENSITY_THRESHOLD:
            next_state = ChatState.TAPPING_POINT
        elif _contains_any(text, COMPLETION_KEYWORDS):
            next_state = ChatState.ADVICE

    elif state == ChatState.ADVICE:
        next_state = ChatState.COMPLETE

    if next_state is None:
        logger.debug(f"Fallback inference: staying in {state.value}")
    else:
        logger.info(f"Fallback inference: {state.value} -> {next_state.value}")
    return next_state


def extract_setup_statements(text: str) -> List[str]:
    """
    Pull "Even though ..." lines out of free text (quoted or not).

    Examples:
        >>> extract_setup_statements('"Even though I feel anxious, I accept myself"')
        ['Even though I feel anxious, I accept myself']
    """
    statements = []
    for line in (text or '').split('\n'):
        trimmed = line.strip()
        if trimmed.startswith('"Even though') and trimmed.endswith('"') and len(trimmed) > 1:
            statements.append(trimmed[1:-1])
        elif trimmed.startswith('Even though'):
            statements.append(trimmed)
    return statements
