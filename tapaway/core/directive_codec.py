"""
Directive Codec - Extract the control directive from model output

Responsibilities:
- Find the <<DIRECTIVE {...}>> block embedded in free-form model text
- Tolerate the known '}}' closing drift via a fallback grammar
- Decode and validate directive fields
- Strip every directive variant from user-visible text
- Format directives for the server side

Wire format:
    Some friendly text.
    <<DIRECTIVE {"next_state":"tapping-point","tapping_point":0}>>

Design principles:
- Lenient parser: primary grammar, one fallback grammar, explicit not-found
- Never raises on bad content (tagged result instead)
- Invalid individual fields are dropped with a warning, the rest is kept
"""

import json
import re
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from tapaway.core.session_state import ChatState, LAST_TAPPING_POINT, parse_chat_state

logger = logging.getLogger(__name__)

DIRECTIVE_PATTERN = re.compile(r'<<DIRECTIVE\s+(\{[\s\S]*?\})>>+')
DIRECTIVE_FALLBACK_PATTERN = re.compile(r'<<DIRECTIVE\s+(\{[\s\S]*?\})\}+')
DIRECTIVE_STRIP_PATTERN = re.compile(r'<<DIRECTIVE\s+\{[\s\S]*?\}[}>]+')

# Not-found reasons
REASON_NO_MATCH = "no_match"
REASON_INVALID_JSON = "invalid_json"
REASON_NOT_AN_OBJECT = "not_an_object"

# Numbered or inline "Even though ..." statements that leak into visible text
LEAKED_STATEMENT_PATTERNS = [
    (re.compile(r'\d+\.\s*"?Even though[^"]*"?\.?\s*', re.IGNORECASE), ''),
    (re.compile(r'\d+\.\s*Even though[^.]*\.\s*', re.IGNORECASE), ''),
    (re.compile(r'Even though[^.]*deeply and completely accept myself[^.]*\.?\s*', re.IGNORECASE), ''),
    (re.compile(r'Shall we start tapping on these\??', re.IGNORECASE), ''),
    (re.compile(r'Here are some new setup statements[^:]*:\s*', re.IGNORECASE), ''),
    (re.compile(r"Let's tap on this new layer[^.]*\.\s*", re.IGNORECASE), "Let's tap on this new layer."),
]


@dataclass(frozen=True)
class Directive:
    """
    Decoded control message.

    next_state is kept as the raw string when it is not a known ChatState,
    so the Orchestrator can log it; chat_state gives the typed view.
    """
    next_state: Optional[str] = None
    tapping_point: Optional[int] = None
    setup_statements: Optional[List[str]] = None
    statement_order: Optional[List[int]] = None
    say_index: Optional[int] = None
    collect: Optional[str] = None
    notes: Optional[str] = None

    @property
    def chat_state(self) -> Optional[ChatState]:
        return parse_chat_state(self.next_state)

    def to_json(self) -> Dict[str, Any]:
        return {
            'next_state': self.next_state,
            'tapping_point': self.tapping_point,
            'setup_statements': self.setup_statements,
            'statement_order': self.statement_order,
            'say_index': self.say_index,
            'collect': self.collect,
            'notes': self.notes,
        }


@dataclass(frozen=True)
class DirectiveFound:
    directive: Directive
    used_fallback: bool = False
    found = True


@dataclass(frozen=True)
class DirectiveNotFound:
    reason: str
    raw: Optional[str] = None
    found = False


ParseOutcome = Union[DirectiveFound, DirectiveNotFound]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _coerce_fields(data: Dict[str, Any]) -> Directive:
    """Validate each field, dropping invalid ones to None"""
    dropped = []

    next_state = data.get('next_state')
    if next_state is not None and not isinstance(next_state, str):
        dropped.append('next_state')
        next_state = None
    elif isinstance(next_state, str) and parse_chat_state(next_state) is None:
        logger.warning(f"Directive names unknown state '{next_state}'")

    tapping_point = data.get('tapping_point')
    if tapping_point is not None and not (_is_int(tapping_point) and 0 <= tapping_point <= LAST_TAPPING_POINT):
        dropped.append('tapping_point')
        tapping_point = None

    setup_statements = data.get('setup_statements')
    if setup_statements is not None:
        if (isinstance(setup_statements, list) and len(setup_statements) == 3
                and all(isinstance(s, str) for s in setup_statements)):
            setup_statements = list(setup_statements)
        else:
            dropped.append('setup_statements')
            setup_statements = None

    statement_order = data.get('statement_order')
    if statement_order is not None:
        if (isinstance(statement_order, list) and len(statement_order) == 8
                and all(_is_int(i) and 0 <= i <= 2 for i in statement_order)):
            statement_order = list(statement_order)
        else:
            dropped.append('statement_order')
            statement_order = None

    say_index = data.get('say_index')
    if say_index is not None and not (_is_int(say_index) and 0 <= say_index <= 2):
        dropped.append('say_index')
        say_index = None

    collect = data.get('collect')
    if collect is not None and not isinstance(collect, str):
        dropped.append('collect')
        collect = None

    notes = data.get('notes')
    if notes is not None and not isinstance(notes, str):
        notes = str(notes)

    if dropped:
        logger.warning(f"Dropped invalid directive fields: {dropped}")

    return Directive(
        next_state=next_state,
        tapping_point=tapping_point,
        setup_statements=setup_statements,
        statement_order=statement_order,
        say_index=say_index,
        collect=collect,
        notes=notes,
    )


class DirectiveCodec:
    """Parse, strip and format directives"""

    def parse(self, text: str) -> ParseOutcome:
        """
        Extract the first directive from text.

        Args:
            text: Raw model output

        Returns:
            DirectiveFound or DirectiveNotFound (never raises)
        """
        if not isinstance(text, str) or not text:
            return DirectiveNotFound(REASON_NO_MATCH)

        used_fallback = False
        match = DIRECTIVE_PATTERN.search(text)
        if not match:
            match = DIRECTIVE_FALLBACK_PATTERN.search(text)
            if match:
                used_fallback = True
                logger.warning("Directive closed with '}}' instead of '>>', using fallback grammar")

        if not match:
            logger.debug("No directive found in response")
            return DirectiveNotFound(REASON_NO_MATCH)

        raw = match.group(1)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Directive JSON invalid: {e}")
            return DirectiveNotFound(REASON_INVALID_JSON, raw=raw)

        if not isinstance(data, dict):
            logger.warning(f"Directive payload is not an object: {type(data).__name__}")
            return DirectiveNotFound(REASON_NOT_AN_OBJECT, raw=raw)

        directive = _coerce_fields(data)
        logger.debug(f"Parsed directive: {directive.to_json()}")
        return DirectiveFound(directive=directive, used_fallback=used_fallback)

    def strip(self, text: str) -> str:
        """
        Remove every directive variant and trim.

        Repeats until nothing matches, so the result is idempotent.
        """
        if not isinstance(text, str):
            return ''

        previous = None
        stripped = text
        while previous != stripped:
            previous = stripped
            stripped = DIRECTIVE_STRIP_PATTERN.sub('', stripped)
        return stripped.strip()

    def format(self, directive: Union[Directive, Dict[str, Any]]) -> str:
        """Wire form appended to model text"""
        payload = directive.to_json() if isinstance(directive, Directive) else dict(directive)
        payload = {key: value for key, value in payload.items() if value is not None}
        return f"<<DIRECTIVE {json.dumps(payload, ensure_ascii=False)}>>"


_codec = DirectiveCodec()


def parse_directive(text: str) -> Optional[Directive]:
    """Convenience wrapper: the directive, or None"""
    outcome = _codec.parse(text)
    if isinstance(outcome, DirectiveFound):
        return outcome.directive
    return None


def strip_directives(text: str) -> str:
    return _codec.strip(text)


def format_directive(directive: Union[Directive, Dict[str, Any]]) -> str:
    return _codec.format(directive)


def strip_leaked_statements(text: str) -> str:
    """
    Remove setup statements the model also wrote into the visible text.

    Only applied when a directive already carries setup_statements.
    """
    cleaned = text
    for pattern, replacement in LEAKED_STATEMENT_PATTERNS:
        cleaned = pattern.sub(replacement, cleaned)
    return cleaned.strip()
