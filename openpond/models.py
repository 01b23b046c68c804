"""
Wire types for OpenPond: messages, agents and send options.
Payloads from the backend are validated with JSON Schema before decoding.
"""

import json
import logging
from datetime import datetime, timezone
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Optional, Dict, Any, List, Mapping, Union

from jsonschema import Draft7Validator

from .errors import SerializationError

logger = logging.getLogger(__name__)

_OPTIONAL_STRING = {"type": ["string", "null"]}
_AGENT_ID = {"type": "string", "minLength": 1}
_OPTIONAL_OBJECT = {"type": ["object", "null"]}
_TIMESTAMP = {"type": ["number", "string"]}

MESSAGE_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "OpenPond Message",
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "content": {"type": "string"},
        "timestamp": _TIMESTAMP,
        "ts": _TIMESTAMP,
        "sender": _AGENT_ID,
        "from_agent_id": _AGENT_ID,
        "fromAgentId": _AGENT_ID,
        "recipient": _AGENT_ID,
        "to_agent_id": _AGENT_ID,
        "toAgentId": _AGENT_ID,
        "reply_to": _OPTIONAL_STRING,
        "replyTo": _OPTIONAL_STRING,
        "metadata": _OPTIONAL_OBJECT,
    },
    "required": ["id", "content"],
    "allOf": [
        {"anyOf": [{"required": ["timestamp"]}, {"required": ["ts"]}]},
        {"anyOf": [
            {"required": ["sender"]},
            {"required": ["from_agent_id"]},
            {"required": ["fromAgentId"]},
        ]},
        {"anyOf": [
            {"required": ["recipient"]},
            {"required": ["to_agent_id"]},
            {"required": ["toAgentId"]},
        ]},
    ],
}

AGENT_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "OpenPond Agent",
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": _OPTIONAL_STRING,
        "last_seen": {"type": ["number", "string", "null"]},
        "lastSeen": {"type": ["number", "string", "null"]},
        "metadata": _OPTIONAL_OBJECT,
    },
    "required": ["id"],
}

_MESSAGE_VALIDATOR = Draft7Validator(MESSAGE_SCHEMA)
_AGENT_VALIDATOR = Draft7Validator(AGENT_SCHEMA)


def _validate(validator: Draft7Validator, data: Any, kind: str) -> None:
    """Raise SerializationError listing every schema violation in data."""
    errors = []
    for error in validator.iter_errors(data):
        path = "/" + "/".join(str(p) for p in error.absolute_path) if error.absolute_path else "/"
        errors.append(f"{path}: {error.message}")
    if errors:
        raise SerializationError(
            f"Invalid {kind} payload: {'; '.join(errors)}",
            payload=json.dumps(data, default=str)[:500],
        )


def parse_timestamp(value: Union[int, float, str]) -> datetime:
    """
    Parse a wire timestamp into an aware UTC datetime.
    Numbers (and numeric strings) are epoch milliseconds; other strings are ISO-8601.
    """
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
            except ValueError as e:
                raise SerializationError(f"Invalid timestamp: {value!r}") from e
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise SerializationError(f"Timestamp out of range: {value!r}") from e


def format_timestamp(value: datetime) -> int:
    """Inverse of parse_timestamp for the numeric form."""
    return int(round(value.timestamp() * 1000))


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _freeze(metadata: Optional[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    if metadata is None:
        return None
    return MappingProxyType(dict(metadata))


@dataclass(frozen=True)
class Message:
    """A message received from the network. Immutable once decoded."""
    id: str
    sender: str
    recipient: str
    content: str
    timestamp: datetime
    reply_to: Optional[str] = None
    metadata: Optional[Mapping[str, Any]] = field(default=None, hash=False)

    @property
    def sort_key(self) -> tuple:
        """Delivery order: timestamp, then id for ties."""
        return (self.timestamp, self.id)

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        """Decode a wire message, raising SerializationError if malformed."""
        _validate(_MESSAGE_VALIDATOR, data, "message")
        return cls(
            id=data['id'],
            sender=_first(data, 'sender', 'from_agent_id', 'fromAgentId'),
            recipient=_first(data, 'recipient', 'to_agent_id', 'toAgentId'),
            content=data['content'],
            timestamp=parse_timestamp(_first(data, 'timestamp', 'ts')),
            reply_to=_first(data, 'reply_to', 'replyTo'),
            metadata=_freeze(data.get('metadata')),
        )

    @classmethod
    def from_json(cls, text: str) -> "Message":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Message is not valid JSON: {e}", payload=text[:500]) from e
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        result = {
            'id': self.id,
            'sender': self.sender,
            'recipient': self.recipient,
            'content': self.content,
            'timestamp': format_timestamp(self.timestamp),
        }
        if self.reply_to is not None:
            result['reply_to'] = self.reply_to
        if self.metadata is not None:
            result['metadata'] = dict(self.metadata)
        return result


@dataclass(frozen=True)
class Agent:
    """Read-only snapshot of an agent identity."""
    id: str
    name: Optional[str] = None
    last_seen: Optional[datetime] = None
    metadata: Optional[Mapping[str, Any]] = field(default=None, hash=False)

    @classmethod
    def from_dict(cls, data: Any) -> "Agent":
        _validate(_AGENT_VALIDATOR, data, "agent")
        last_seen = _first(data, 'last_seen', 'lastSeen')
        return cls(
            id=data['id'],
            name=data.get('name'),
            last_seen=parse_timestamp(last_seen) if last_seen is not None else None,
            metadata=_freeze(data.get('metadata')),
        )

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {'id': self.id, 'name': self.name}
        if self.last_seen is not None:
            result['last_seen'] = format_timestamp(self.last_seen)
        if self.metadata is not None:
            result['metadata'] = dict(self.metadata)
        return result


@dataclass
class SendOptions:
    """Per-call options for send_message."""
    reply_to: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = field(default=None)

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {}
        if self.reply_to is not None:
            result['reply_to'] = self.reply_to
        if self.metadata is not None:
            result['metadata'] = self.metadata
        return result


@dataclass
class PollResult:
    """Decoded poll response: the valid messages and the errors for entries dropped."""
    messages: List[Message] = field(default_factory=list)
    dropped: List[SerializationError] = field(default_factory=list)


def parse_messages(data: Any) -> PollResult:
    """
    Decode a poll response: a list of messages, or {"messages": [...]}.

    Malformed entries are skipped and their errors collected in
    PollResult.dropped; a body that is not a list at all raises
    SerializationError.
    """
    if isinstance(data, dict) and isinstance(data.get('messages'), list):
        data = data['messages']
    if not isinstance(data, list):
        raise SerializationError("Expected a list of messages", payload=str(data)[:500])

    result = PollResult()
    for entry in data:
        try:
            result.messages.append(Message.from_dict(entry))
        except SerializationError as e:
            logger.warning(f"Dropping malformed message: {e}")
            result.dropped.append(e)
    return result


def parse_agents(data: Any) -> List[Agent]:
    """Decode an agent list: a bare list or {"agents": [...]}."""
    if isinstance(data, dict) and 'agents' in data:
        data = data['agents']
    if not isinstance(data, list):
        raise SerializationError("Expected a list of agents", payload=str(data)[:500])
    return [Agent.from_dict(entry) for entry in data]
