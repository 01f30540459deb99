__version__ = "0.1.0"

from .broadcast import Broadcaster
from .collector import LogCollector
from .config import ServerConfig
from .hub import ClientConnection, ConnectionPhase, SessionHub
from .models import MessageError, StreamEnvelope, parse_client_message
from .registry import Session, SessionRegistry
from .state import GlobalState

__all__ = [
    "Broadcaster",
    "ClientConnection",
    "ConnectionPhase",
    "GlobalState",
    "LogCollector",
    "MessageError",
    "ServerConfig",
    "Session",
    "SessionHub",
    "SessionRegistry",
    "StreamEnvelope",
    "parse_client_message",
]
