"""
Dialogue Engine - Server side of the tapping dialogue

Responsibilities:
- Rate limit callers by client key
- Validate and sanitize the request payload
- Run the shared crisis gate on the sanitized message
- Filter off-topic messages through the intent classifier
- Build the state-specific prompt and generate the directive-bearing reply
- Log directive format drift for monitoring

Design principles:
- One handle() entry point returning (status, body), transport-agnostic
- Model and classifier failures become a fixed apology with status 500
- Crisis detection always wins over model output
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from tapaway.core.directive_codec import DirectiveCodec, DirectiveFound, format_directive, REASON_INVALID_JSON
from tapaway.core.intent_classifier import IntentClassifier, RELEVANCE_MAYBE, RELEVANCE_NO, RELEVANCE_YES
from tapaway.core.session_state import ChatState, VALID_STATES
from tapaway.utils import crisis_detector
from tapaway.utils.prompt_builder import PromptBuilder, PromptContext, collect_field_for_state
from tapaway.utils.rate_limiter import RateLimiter, RATE_LIMIT_ERROR, RATE_LIMIT_MESSAGE
from tapaway.utils.text_normalizer import sanitize_input

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = (
    "I apologize, but I'm having trouble connecting right now. Please try again in a moment."
)

STATUS_OK = 200
STATUS_BAD_REQUEST = 400
STATUS_RATE_LIMITED = 429
STATUS_SERVER_ERROR = 500

DEFAULT_USER_NAME = 'User'
INTENSITY_KEYS = ('intensity', 'initialIntensity', 'currentIntensity')
SANITIZED_CONTEXT_KEYS = ('feeling', 'bodyLocation', 'problem')


@dataclass(frozen=True)
class EngineReply:
    status: int
    body: Dict[str, Any]


class InvalidRequest(ValueError):
    """Raised when the request payload cannot be processed"""
    pass


def _valid_intensity(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and 0 <= value <= 10


class DialogueEngine:
    """Produces one assistant reply per request"""

    def __init__(
        self,
        hf_client,
        rate_limiter: Optional[RateLimiter] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        intent_classifier: Optional[IntentClassifier] = None,
        classify_intent: bool = True,
        max_tokens: int = 500,
        temperature: float = 0.7
    ) -> None:
        """
        Args:
            hf_client: Client with callable generate_chat() (and generate_json()
                when classification is enabled)
            rate_limiter: Per-client limiter (default 10 per 60 s)
            prompt_builder: System prompt builder
            intent_classifier: Relevance filter (built from hf_client if omitted)
            classify_intent: Disable to skip the relevance filter
            max_tokens: Reply token budget
            temperature: Reply sampling temperature

        Raises:
            TypeError: If hf_client lacks required methods
        """
        if not callable(getattr(hf_client, 'generate_chat', None)):
            raise TypeError("hf_client must have callable generate_chat() method")

        self.hf_client = hf_client
        self.rate_limiter = rate_limiter or RateLimiter()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.codec = DirectiveCodec()
        self.max_tokens = max_tokens
        self.temperature = temperature

        self.intent_classifier = None
        if classify_intent:
            self.intent_classifier = intent_classifier or IntentClassifier(hf_client, self.prompt_builder)

        logger.info(f"Dialogue engine initialized (classify_intent={classify_intent})")

    def handle(self, payload: Any, client_key: str = 'unknown') -> EngineReply:
        """
        Process one dialogue request.

        Args:
            payload: Decoded JSON body
            client_key: Client identity for rate limiting

        Returns:
            EngineReply: 200 {response, crisisDetected, extractedContext},
            429 / 400 / 500 {error, response}
        """
        if not self.rate_limiter.allow(client_key):
            return EngineReply(STATUS_RATE_LIMITED, {
                'error': RATE_LIMIT_ERROR,
                'response': RATE_LIMIT_MESSAGE,
            })

        try:
            request = self._validate(payload)
        except InvalidRequest as e:
            logger.warning(f"Rejected dialogue request: {e}")
            return EngineReply(STATUS_BAD_REQUEST, {'error': str(e), 'response': APOLOGY_MESSAGE})

        message = request['message']
        user_name = request['user_name']
        chat_state = request['chat_state']
        context = request['session_context']

        assessment = crisis_detector.assess(message)
        if assessment.detected:
            logger.warning(
                f"Crisis detected: client={client_key[:8]}, trigger={assessment.trigger.value}, "
                f"message_length={len(message)}"
            )
            return EngineReply(STATUS_OK, {
                'response': crisis_detector.crisis_response(user_name),
                'crisisDetected': True,
                'extractedContext': {},
            })

        try:
            extracted = {}
            if self.intent_classifier is not None:
                classification = self.intent_classifier.classify(
                    chat_state, request['last_assistant_message'], message
                )
                if classification.relevance == RELEVANCE_NO:
                    logger.info("Off-topic message, recentering user")
                    return self._same_state_reply(
                        chat_state,
                        f"{user_name}, I don't quite understand. Or maybe you're testing me, "
                        f"that's okay! 😊 I'm here to help with anxiety, stress, or tough emotions "
                        f"using EFT tapping. What's bothering you today?"
                    )
                if classification.relevance == RELEVANCE_MAYBE:
                    logger.info("Unclear message, asking for clarification")
                    return self._same_state_reply(
                        chat_state,
                        classification.clarification_question
                        or f"I'm not quite sure I caught that, {user_name}. Can you tell me a bit more?"
                    )
                if classification.relevance == RELEVANCE_YES:
                    extracted = self._merge_extracted(context, classification.extracted)

            prompt_context = PromptContext(
                user_name=user_name,
                chat_state=chat_state,
                session_context=context,
                current_tapping_point=request['current_tapping_point'],
                intensity_history=request['intensity_history'],
                history_length=len(request['conversation_history']),
            )
            system_prompt = self.prompt_builder.build_system_prompt(prompt_context)
            messages = self.prompt_builder.build_messages(
                system_prompt, request['conversation_history'], message
            )
            reply = self.hf_client.generate_chat(
                messages, max_tokens=self.max_tokens, temperature=self.temperature
            )
        except Exception as e:
            logger.error(f"Dialogue generation failed in '{chat_state}': {e}")
            return EngineReply(STATUS_SERVER_ERROR, {'error': str(e), 'response': APOLOGY_MESSAGE})

        self._log_directive_diagnostics(reply, chat_state, request['current_tapping_point'])

        return EngineReply(STATUS_OK, {
            'response': reply,
            'crisisDetected': False,
            'extractedContext': extracted,
        })

    # ========================
    # Validation
    # ========================

    def _validate(self, payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise InvalidRequest('Invalid request body')

        message = payload.get('message')
        if not message or not isinstance(message, str):
            raise InvalidRequest('Invalid message format')

        sanitized_message = sanitize_input(message)
        if not sanitized_message:
            raise InvalidRequest('Invalid message format')

        user_name = payload.get('userName')
        user_name = sanitize_input(user_name) if isinstance(user_name, str) else ''

        chat_state = payload.get('chatState')
        if not isinstance(chat_state, str) or chat_state not in VALID_STATES:
            logger.warning(f"Unknown chat state {chat_state!r}, using initial")
            chat_state = ChatState.INITIAL.value

        context = payload.get('sessionContext') or {}
        if not isinstance(context, dict):
            raise InvalidRequest('Invalid session context')
        context = copy.deepcopy(context)

        for key in INTENSITY_KEYS:
            if context.get(key) is not None and not _valid_intensity(context[key]):
                raise InvalidRequest('Invalid intensity value')
        for key in SANITIZED_CONTEXT_KEYS:
            if isinstance(context.get(key), str):
                context[key] = sanitize_input(context[key])

        history = payload.get('conversationHistory') or []
        if not isinstance(history, list):
            history = []
        history = [
            {'type': str(entry.get('type', 'user')), 'content': str(entry.get('content', ''))}
            for entry in history if isinstance(entry, dict)
        ]

        tapping_point = payload.get('currentTappingPoint', 0)
        if not isinstance(tapping_point, int) or isinstance(tapping_point, bool):
            tapping_point = 0

        intensity_history = [
            value for value in (payload.get('intensityHistory') or [])
            if _valid_intensity(value)
        ]

        last_assistant = payload.get('lastAssistantMessage') or ''
        if not isinstance(last_assistant, str):
            last_assistant = ''

        return {
            'message': sanitized_message,
            'user_name': user_name or DEFAULT_USER_NAME,
            'chat_state': chat_state,
            'session_context': context,
            'conversation_history': history,
            'current_tapping_point': tapping_point,
            'intensity_history': intensity_history,
            'last_assistant_message': last_assistant,
        }

    # ========================
    # Helpers
    # ========================

    def _same_state_reply(self, chat_state: str, text: str) -> EngineReply:
        directive = format_directive({
            'next_state': chat_state,
            'collect': collect_field_for_state(chat_state),
        })
        return EngineReply(STATUS_OK, {
            'response': f"{text}\n\n{directive}",
            'crisisDetected': False,
        })

    def _merge_extracted(self, context: Dict[str, Any], extracted: Dict[str, Any]) -> Dict[str, Any]:
        """Apply clean classifier values to the prompt context; return them in wire form"""
        merged = {}

        if extracted.get('problem') and not context.get('problem'):
            context['problem'] = merged['problem'] = extracted['problem']
        if extracted.get('feeling'):
            context['feeling'] = merged['feeling'] = extracted['feeling']
        if extracted.get('bodyLocation'):
            context['bodyLocation'] = merged['bodyLocation'] = extracted['bodyLocation']
        if extracted.get('intensity') is not None:
            context['currentIntensity'] = merged['currentIntensity'] = extracted['intensity']

        if merged:
            logger.info(f"Extracted context values: {sorted(merged)}")
        return merged

    def _log_directive_diagnostics(self, reply: str, chat_state: str, tapping_point: int) -> None:
        if '<<DIRECTIVE' not in reply:
            logger.error(
                f"Model reply missing directive (state={chat_state}, point={tapping_point}); "
                f"client will use fallback inference"
            )
            return

        outcome = self.codec.parse(reply)
        if isinstance(outcome, DirectiveFound):
            directive = outcome.directive
            logger.debug(f"Directive next_state={directive.next_state}, collect={directive.collect}")
            if outcome.used_fallback:
                logger.error("Model closed directive with '}}' instead of '>>'")
        elif outcome.reason == REASON_INVALID_JSON:
            logger.error("Directive JSON is malformed")

        if '>>>' in reply:
            logger.error("Model used '>>>' instead of '>>' to close the directive")
