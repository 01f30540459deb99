from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from logpipe.types import iso_now as utc_now_iso
from logpipe.types import to_json_safe

CHANNEL_STORAGE = "storage"
CHANNEL_LOGS = "logs"
CHANNEL_SESSIONS = "sessions"

MESSAGE_CONNECT = "connect"
MESSAGE_UPDATE = "update"
MESSAGE_PING = "ping"
MESSAGE_PONG = "pong"

SERVER_INFO = "info"
SERVER_STATE = "state"
SERVER_COMMAND = "command"
SERVER_PONG = "pong"
SERVER_PING = "ping"
SERVER_ERROR = "error"

_LEGACY_PREFIX = "storage_"


class MessageError(ValueError):
    """Inbound channel message that cannot be interpreted."""


class ConnectMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str = MESSAGE_CONNECT
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))
    timestamp: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class UpdateMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str = MESSAGE_UPDATE
    subtype: str = Field(validation_alias=AliasChoices("subType", "subtype", "sub_type"))
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))
    timestamp: Optional[str] = None
    data: Any = None


class PingMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = MESSAGE_PING
    timestamp: Optional[str] = None


class PongMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = MESSAGE_PONG
    timestamp: Optional[str] = None


ClientMessage = Union[ConnectMessage, UpdateMessage, PingMessage, PongMessage]

_CLIENT_MODELS = {
    MESSAGE_CONNECT: ConnectMessage,
    MESSAGE_UPDATE: UpdateMessage,
    MESSAGE_PING: PingMessage,
    MESSAGE_PONG: PongMessage,
}


def parse_client_message(raw: Union[str, bytes, Mapping[str, Any]]) -> ClientMessage:
    """Decode one channel frame into its typed message.

    Accepts the short type names as well as the ``storage_``-prefixed ones.
    """
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            decoded = json.loads(raw)
        except ValueError as exc:
            raise MessageError("message is not valid JSON") from exc
    else:
        decoded = raw

    if not isinstance(decoded, Mapping):
        raise MessageError("message must be a JSON object")

    message_type = str(decoded.get("type", "")).strip()
    if message_type.startswith(_LEGACY_PREFIX):
        message_type = message_type[len(_LEGACY_PREFIX):]
    model = _CLIENT_MODELS.get(message_type)
    if model is None:
        raise MessageError(f"unknown message type: {message_type or '<missing>'}")

    payload = dict(decoded)
    payload["type"] = message_type
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise MessageError(f"invalid {message_type} message: {exc.errors()[0].get('msg', 'invalid')}") from exc


class ServerMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    timestamp: str = Field(default_factory=utc_now_iso)
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def build(cls, type: str, data: Any = None) -> "ServerMessage":
        payload = data if isinstance(data, Mapping) else ({} if data is None else {"value": data})
        return cls(type=str(type), data=to_json_safe(payload))


class StreamEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    channel: str
    timestamp: str = Field(default_factory=utc_now_iso)
    source: str = "unknown"
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def build(
        cls,
        *,
        channel: str,
        data: Any,
        source: str,
        timestamp: Optional[Any] = None,
    ) -> "StreamEnvelope":
        payload = data if isinstance(data, Mapping) else {"value": data}
        return cls(
            channel=str(channel),
            timestamp=_coerce_timestamp(timestamp),
            source=str(source),
            data=to_json_safe(payload),
        )


class CollectorMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    producer_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("producerId", "producer_id"))
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))
    timestamp: Optional[Any] = None
    batch_size: Optional[int] = Field(default=None, validation_alias=AliasChoices("batchSize", "batch_size"))


class CollectorPayload(BaseModel):
    """Body of a collector POST; ``logs`` is the older name for ``items``."""

    model_config = ConfigDict(extra="ignore")

    items: List[Dict[str, Any]] = Field(default_factory=list, validation_alias=AliasChoices("items", "logs"))
    metadata: CollectorMetadata = Field(default_factory=CollectorMetadata)


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: str = Field(default_factory=utc_now_iso)
    uptime: float = 0.0
    connections: int = 0
    sessions: int = 0
    logs: int = 0
    stats: Dict[str, Any] = Field(default_factory=dict)


def model_to_dict(model: object) -> dict:
    dump = getattr(model, "model_dump", None)
    if callable(dump):
        return dict(dump())
    return dict(model)  # type: ignore[arg-type]


def _coerce_timestamp(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value
    return utc_now_iso()
