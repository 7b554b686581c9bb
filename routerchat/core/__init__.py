"""Core module for routerchat."""

from routerchat.core.config import ConfigManager, get_config_manager, resolve_base_url
from routerchat.core.credentials import CredentialStore, get_credential_store
from routerchat.core.directory import DEFAULT_MODEL_ID, MODEL_CACHE_TTL, ModelDirectory
from routerchat.core.engine import ChatEngine, StreamSession, StreamState
from routerchat.core.errors import (
    AuthError,
    CredentialError,
    InvalidCredential,
    NotFoundError,
    ProtocolError,
    RouterChatError,
    StreamCancelled,
    TransportError,
    UnavailableError,
)
from routerchat.core.sink import CallbackSink, CollectingSink, StreamSink
from routerchat.core.sse import SSEDecoder, aiter_tokens, iter_tokens

__all__ = [
    "AuthError",
    "CallbackSink",
    "ChatEngine",
    "CollectingSink",
    "ConfigManager",
    "CredentialError",
    "CredentialStore",
    "DEFAULT_MODEL_ID",
    "InvalidCredential",
    "MODEL_CACHE_TTL",
    "ModelDirectory",
    "NotFoundError",
    "ProtocolError",
    "RouterChatError",
    "SSEDecoder",
    "StreamCancelled",
    "StreamSession",
    "StreamSink",
    "StreamState",
    "TransportError",
    "UnavailableError",
    "aiter_tokens",
    "get_config_manager",
    "get_credential_store",
    "iter_tokens",
    "resolve_base_url",
]
