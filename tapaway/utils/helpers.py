"""
Utility helpers for the tapping session engine

Simple utility functions for ID, message ID and session-name generation.
"""

import random
import uuid
from datetime import datetime
from typing import Optional

SESSION_NAMES = {
    'anxiety': ['Anxiety Relief', 'Calm Seeking', 'Worry Release', 'Peace Finding'],
    'anxious': ['Anxiety Relief', 'Calm Seeking', 'Worry Release', 'Peace Finding'],
    'stress': ['Stress Release', 'Tension Relief', 'Pressure Drop', 'Unwinding Session'],
    'stressed': ['Stress Release', 'Tension Relief', 'Pressure Drop', 'Unwinding Session'],
    'sad': ['Sadness Healing', 'Heart Lifting', 'Gentle Comfort', 'Mood Brightening'],
    'angry': ['Anger Release', 'Frustration Relief', 'Cooling Down', 'Heat Release'],
    'frustrated': ['Anger Release', 'Frustration Relief', 'Cooling Down', 'Heat Release'],
    'overwhelmed': ['Overwhelm Relief', 'Finding Ground', 'Slowing Down', 'One Step Session'],
    'guilt': ['Guilty Feelings', 'Remorseful Mind', 'Self-Blame Moment', 'Regret Session'],
    'health': ['Health Worries', 'Body Concerns', 'Medical Anxiety', 'Health Fear'],
    'work': ['Work Stress', 'Job Anxiety', 'Career Worries', 'Professional Pressure'],
    'parenting': ['Parenting Concerns', 'Mom Guilt', 'Dad Worries', 'Child Anxiety'],
    'relationship': ['Relationship Stress', 'Love Worries', 'Partner Concerns', 'Connection Issues'],
}

PROBLEM_THEMES = (
    ('health', ('health', 'body', 'sick')),
    ('work', ('work', 'job', 'boss')),
    ('parenting', ('child', 'parent', 'mum', 'mom')),
    ('relationship', ('relationship', 'partner', 'love')),
)


def generate_session_id(short=True):
    """
    Generate unique session identifier

    Args:
        short (bool): If True, return 8-char hex. If False, return full UUID.

    Returns:
        str: Session ID

    Examples:
        >>> generate_session_id()
        'a3f7e2b9'
    """
    full_id = uuid.uuid4().hex
    return full_id[:8] if short else full_id


def generate_message_id(prefix: str) -> str:
    """Message id of the form '<prefix>-<12 hex chars>'"""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def generate_session_name(
    feeling: Optional[str],
    problem: Optional[str] = None,
    rng: Optional[random.Random] = None,
    today: Optional[datetime] = None
) -> str:
    """
    Human-friendly session title such as 'Work Stress - Oct 19'

    Problem themes take priority over the feeling; unknown feelings fall
    back to the anxiety names.

    Args:
        feeling: Emotion word gathered during intake
        problem: Free-text problem description
        rng: Random source (injectable for tests)
        today: Date used in the title (defaults to now)

    Returns:
        str: Session name
    """
    rng = rng or random.Random()
    names = SESSION_NAMES.get((feeling or 'anxiety').lower().strip())

    if problem:
        problem_lower = problem.lower()
        for theme, keywords in PROBLEM_THEMES:
            if any(keyword in problem_lower for keyword in keywords):
                names = SESSION_NAMES[theme]
                break

    if not names:
        names = SESSION_NAMES['anxiety']

    date = (today or datetime.now()).strftime('%b %d').replace(' 0', ' ')
    return f"{rng.choice(names)} - {date}"
