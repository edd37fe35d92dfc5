"""
Tapping Round Generator - Local setup statements and reminder phrases

Used when a new round starts without the dialogue service (post-tapping
re-rating above 2) and for the fully offline path.

Design principles:
- Deterministic by default; variation only through an injected random.Random
- Always 3 setup statements, 8 reminder phrases, 8-length statement order
- Missing intake values fall back to neutral wording
"""

import logging
import random
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

# Index order matches SessionState.point_index
TAPPING_POINTS = [
    {'name': 'Start of Eyebrow', 'key': 'eyebrow', 'description': 'Inner edge of the eyebrow'},
    {'name': 'Outer Eye', 'key': 'outer-eye', 'description': 'Outer corner of the eye'},
    {'name': 'Under Eye', 'key': 'under-eye', 'description': 'Under the center of the eye'},
    {'name': 'Under Nose', 'key': 'under-nose', 'description': 'Between nose and upper lip'},
    {'name': 'Chin', 'key': 'chin', 'description': 'Center of the chin'},
    {'name': 'Collarbone', 'key': 'collarbone', 'description': 'Below the collarbone'},
    {'name': 'Under Arm', 'key': 'under-arm', 'description': '4 inches below armpit'},
    {'name': 'Top of Head', 'key': 'top-head', 'description': 'Crown of the head'},
]

DEFAULT_STATEMENT_ORDER = [0, 1, 2, 0, 1, 2, 1, 0]

DEFAULT_FEELING = 'this feeling'
DEFAULT_BODY_LOCATION = 'my body'
DEFAULT_PROBLEM = 'this issue'

PHRASE_ACKNOWLEDGING = 'acknowledging'
PHRASE_PARTIAL_RELEASE = 'partial-release'
PHRASE_FULL_RELEASE = 'full-release'
VALID_PHRASE_TYPES = {PHRASE_ACKNOWLEDGING, PHRASE_PARTIAL_RELEASE, PHRASE_FULL_RELEASE}


@dataclass(frozen=True)
class TappingRound:
    setup_statements: List[str]
    reminder_phrases: List[str]
    statement_order: List[int]


def tapping_point_name(index: int) -> str:
    return TAPPING_POINTS[index]['name']


def determine_phrase_type(new_intensity: int, round_improvement: int) -> str:
    """
    Reminder phrase register for the next round.

    Args:
        new_intensity: Intensity reported after the round (0-10)
        round_improvement: Previous intensity minus new intensity

    Returns:
        str: 'acknowledging' above 3, 'partial-release' for a 3-5 point
        drop, otherwise 'full-release'
    """
    if new_intensity > 3:
        return PHRASE_ACKNOWLEDGING
    if 3 <= round_improvement <= 5:
        return PHRASE_PARTIAL_RELEASE
    return PHRASE_FULL_RELEASE


class TappingRoundGenerator:
    """Builds the statements and phrases for one tapping round"""

    def __init__(self, rng: Optional[random.Random] = None, vary_order: bool = False) -> None:
        """
        Args:
            rng: Random source used when vary_order is True
            vary_order: Relabel the default order so statements rotate between rounds
        """
        self.rng = rng or random.Random()
        self.vary_order = vary_order

    def generate(
        self,
        problem: Optional[str],
        feeling: Optional[str],
        body_location: Optional[str],
        is_subsequent_round: bool = False,
        phrase_type: Optional[str] = None
    ) -> TappingRound:
        """
        Generate one round.

        Args:
            problem: User's problem description
            feeling: Emotion word
            body_location: Where the feeling sits
            is_subsequent_round: Use "STILL" / "remaining" language
            phrase_type: Reminder phrase register (acknowledging by default)

        Returns:
            TappingRound
        """
        problem = (problem or '').strip() or DEFAULT_PROBLEM
        feeling = (feeling or '').strip() or DEFAULT_FEELING
        body_location = (body_location or '').strip() or DEFAULT_BODY_LOCATION
        location = body_location if body_location.lower().startswith('my ') else f"my {body_location}"

        if phrase_type is not None and phrase_type not in VALID_PHRASE_TYPES:
            logger.warning(f"Unknown phrase type '{phrase_type}', using acknowledging")
            phrase_type = None

        setup_statements = self._setup_statements(problem, feeling, location, is_subsequent_round)
        reminder_phrases = self._reminder_phrases(
            problem, feeling, location, phrase_type or PHRASE_ACKNOWLEDGING
        )
        statement_order = self._statement_order()

        logger.debug(
            f"Generated round (subsequent={is_subsequent_round}, "
            f"phrase_type={phrase_type}, order={statement_order})"
        )
        return TappingRound(
            setup_statements=setup_statements,
            reminder_phrases=reminder_phrases,
            statement_order=statement_order,
        )

    def _setup_statements(self, problem: str, feeling: str, location: str,
                          is_subsequent_round: bool) -> List[str]:
        if is_subsequent_round:
            return [
                f"Even though I STILL feel some of this {feeling} in {location} "
                f"because {problem}, I'd like to be at peace.",
                f"I STILL feel {feeling} in {location}, I'd like to relax now.",
                f"This remaining {feeling} in {location}, {problem}, but I want to let it go.",
            ]
        return [
            f"Even though I feel this {feeling} in {location} because {problem}, "
            f"I'd like to be at peace.",
            f"I feel {feeling} in {location}, I'd like to relax now.",
            f"This {feeling} in {location}, {problem}, but I want to let it go.",
        ]

    def _reminder_phrases(self, problem: str, feeling: str, location: str,
                          phrase_type: str) -> List[str]:
        if phrase_type == PHRASE_PARTIAL_RELEASE:
            return [
                f"This remaining {feeling}",
                f"What's left in {location}",
                "It's already easing",
                f"This last bit of {feeling}",
                "Letting more of it go",
                f"{problem}, it has less hold on me",
                f"Softening in {location}",
                "I choose to keep releasing",
            ]
        if phrase_type == PHRASE_FULL_RELEASE:
            return [
                f"Releasing this {feeling} now",
                f"{location[:1].upper()}{location[1:]} can relax",
                "Letting it all go",
                f"I don't need this {feeling} anymore",
                "I am safe and supported",
                f"I can handle {problem}",
                f"Peace in {location}",
                "I choose peace and calm",
            ]
        return [
            f"This {feeling} in {location}",
            f"I feel {feeling}",
            problem,
            f"This {feeling} in {location}",
            f"I feel so {feeling}",
            f"This {feeling}",
            "I want to let this go",
            "I choose to relax",
        ]

    def _statement_order(self) -> List[int]:
        if not self.vary_order:
            return list(DEFAULT_STATEMENT_ORDER)
        relabel = self.rng.sample([0, 1, 2], 3)
        return [relabel[i] for i in DEFAULT_STATEMENT_ORDER]
