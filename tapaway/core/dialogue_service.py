"""
Dialogue service clients used by the Session Orchestrator.

HttpDialogueClient talks to a remote /api/eft-chat endpoint over HTTP;
LocalDialogueService calls a DialogueEngine in-process. Both take a
DialogueRequest and return a DialogueReply, raising DialogueServiceError
on transport or server failure.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

CHAT_ENDPOINT = '/api/eft-chat'
DEFAULT_TIMEOUT_SECONDS = 60


class DialogueServiceError(Exception):
    """Transport or server failure talking to the dialogue service"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


@dataclass(frozen=True)
class DialogueRequest:
    message: str
    chat_state: str
    user_name: str
    session_context: Dict[str, Any]
    conversation_history: List[Dict[str, str]]
    current_tapping_point: int
    intensity_history: List[int]
    last_assistant_message: str = ''

    def to_payload(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'chatState': self.chat_state,
            'userName': self.user_name,
            'sessionContext': self.session_context,
            'conversationHistory': self.conversation_history,
            'currentTappingPoint': self.current_tapping_point,
            'intensityHistory': self.intensity_history,
            'lastAssistantMessage': self.last_assistant_message,
        }


@dataclass(frozen=True)
class DialogueReply:
    """
    Attributes:
        response: Model text, directive still embedded
        crisis_detected: Server-side crisis flag
        extracted_context: Clean values (camelCase keys) extracted server side
        rate_limited: True when the reply is the synthetic slow-down message
    """
    response: str
    crisis_detected: bool = False
    extracted_context: Dict[str, Any] = field(default_factory=dict)
    rate_limited: bool = False


def reply_from_body(status: int, body: Any) -> DialogueReply:
    """
    Map a (status, JSON body) pair onto a DialogueReply.

    Raises:
        DialogueServiceError: For non-2xx statuses other than 429 or malformed bodies
    """
    if not isinstance(body, dict):
        raise DialogueServiceError('Malformed dialogue service response', status)

    if status == 429:
        return DialogueReply(response=str(body.get('response', '')), rate_limited=True)

    if status >= 400:
        raise DialogueServiceError(str(body.get('error') or f'Dialogue service error {status}'), status)

    response = body.get('response')
    if not isinstance(response, str):
        raise DialogueServiceError('Dialogue service response missing text', status)

    extracted = body.get('extractedContext')
    return DialogueReply(
        response=response,
        crisis_detected=bool(body.get('crisisDetected', False)),
        extracted_context=extracted if isinstance(extracted, dict) else {},
    )


class HttpDialogueClient:
    """Remote dialogue service over HTTP (requests)"""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None) -> None:
        if not base_url:
            raise ValueError("base_url must be non-empty")
        self.url = base_url.rstrip('/') + CHAT_ENDPOINT
        self.timeout = timeout
        self.session = session or requests.Session()
        logger.info(f"HTTP dialogue client targeting {self.url}")

    def send(self, request: DialogueRequest) -> DialogueReply:
        """
        POST the request and decode the reply.

        Raises:
            DialogueServiceError: On connection failure, timeout or server error
        """
        try:
            resp = self.session.post(self.url, json=request.to_payload(), timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Dialogue service request failed: {e}")
            raise DialogueServiceError(str(e)) from e

        try:
            body = resp.json()
        except ValueError as e:
            raise DialogueServiceError(f"Invalid JSON from dialogue service: {e}", resp.status_code) from e

        return reply_from_body(resp.status_code, body)


class LocalDialogueService:
    """In-process dialogue service backed by a DialogueEngine"""

    def __init__(self, engine, client_key: str = 'local') -> None:
        if not callable(getattr(engine, 'handle', None)):
            raise TypeError("engine must have callable handle() method")
        self.engine = engine
        self.client_key = client_key

    def send(self, request: DialogueRequest) -> DialogueReply:
        reply = self.engine.handle(request.to_payload(), self.client_key)
        return reply_from_body(reply.status, reply.body)
