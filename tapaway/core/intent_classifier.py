"""
Intent Classifier - Relevance filter for user messages

Responsibilities:
- Ask the model whether a message genuinely answers the current question
- Extract clean problem / feeling / body location / intensity values
- Normalize extracted values
- Fail open on any generation or parsing problem

Design principles:
- Explicit return structure (relevance, extracted, clarification_question, reason)
- Validation warnings (not failures)
- Never raises on model output
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from tapaway.utils.prompt_builder import PromptBuilder
from tapaway.utils.text_normalizer import normalize_body_location

logger = logging.getLogger(__name__)

RELEVANCE_YES = "yes"
RELEVANCE_MAYBE = "maybe"
RELEVANCE_NO = "no"
VALID_RELEVANCE = {RELEVANCE_YES, RELEVANCE_MAYBE, RELEVANCE_NO}

EXTRACTED_KEYS = ('problem', 'feeling', 'bodyLocation', 'intensity')


@dataclass(frozen=True)
class Classification:
    """
    Attributes:
        relevance: 'yes' | 'maybe' | 'no'
        extracted: Clean values keyed problem / feeling / bodyLocation / intensity
        clarification_question: Model-suggested follow-up for 'maybe'
        reason: Short explanation (or the fail-open reason)
    """
    relevance: str
    extracted: Dict[str, Any] = field(default_factory=dict)
    clarification_question: Optional[str] = None
    reason: str = ''

    @staticmethod
    def fail_open(reason: str) -> "Classification":
        return Classification(
            relevance=RELEVANCE_YES,
            extracted={key: None for key in EXTRACTED_KEYS},
            reason=reason,
        )


class IntentClassifier:
    """Classifies user messages with the model, failing open"""

    def __init__(self, hf_client, prompt_builder: Optional[PromptBuilder] = None,
                 max_tokens: int = 150, temperature: float = 0.0) -> None:
        """
        Args:
            hf_client: Client with a callable generate_json(prompt, ...) method
            prompt_builder: Builds the classification prompt
            max_tokens: Max tokens for the JSON reply
            temperature: Sampling temperature

        Raises:
            TypeError: If hf_client lacks generate_json()
        """
        if not callable(getattr(hf_client, 'generate_json', None)):
            raise TypeError("hf_client must have callable generate_json() method")

        self.hf_client = hf_client
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.max_tokens = max_tokens
        self.temperature = temperature

    def classify(self, chat_state: str, last_assistant_message: str, message: str) -> Classification:
        """
        Classify one user message.

        Args:
            chat_state: Current state string
            last_assistant_message: Previous bot message (question being answered)
            message: Sanitized user message

        Returns:
            Classification (relevance 'yes' when anything goes wrong)
        """
        prompt = self.prompt_builder.build_classification_prompt(
            chat_state, last_assistant_message or '', message
        )

        try:
            raw = self.hf_client.generate_json(
                prompt, max_tokens=self.max_tokens, temperature=self.temperature
            )
        except Exception as e:
            logger.error(f"Classification generation failed, failing open: {e}")
            return Classification.fail_open('Classification error - failing open')

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Classification JSON invalid, failing open: {e}")
            return Classification.fail_open('Classification JSON invalid - failing open')

        if not isinstance(data, dict):
            logger.warning("Classification output is not an object, failing open")
            return Classification.fail_open('Classification output not an object - failing open')

        relevance = str(data.get('relevance', '')).strip().lower()
        if relevance not in VALID_RELEVANCE:
            logger.warning(f"Unknown relevance '{relevance}', failing open")
            return Classification.fail_open(f"Unknown relevance '{relevance}' - failing open")

        extracted = self._normalize_extracted(data.get('extracted'))
        clarification = data.get('clarification_question')
        if not isinstance(clarification, str) or not clarification.strip():
            clarification = None

        classification = Classification(
            relevance=relevance,
            extracted=extracted,
            clarification_question=clarification,
            reason=str(data.get('reason', '')),
        )
        logger.info(f"Classified message in '{chat_state}' as {relevance}")
        return classification

    def _normalize_extracted(self, extracted: Any) -> Dict[str, Any]:
        normalized = {key: None for key in EXTRACTED_KEYS}
        if not isinstance(extracted, dict):
            return normalized

        for key in ('problem', 'feeling'):
            value = extracted.get(key)
            if isinstance(value, str) and value.strip():
                normalized[key] = value.strip()

        location = extracted.get('bodyLocation')
        if isinstance(location, str) and location.strip():
            normalized['bodyLocation'] = normalize_body_location(location)

        intensity = extracted.get('intensity')
        if isinstance(intensity, (int, float)) and not isinstance(intensity, bool):
            if 0 <= intensity <= 10:
                normalized['intensity'] = int(round(intensity))
            else:
                logger.warning(f"Discarding out-of-range extracted intensity {intensity}")

        return normalized
