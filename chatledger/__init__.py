"""
chatledger: chats and agents kept as versioned records in an append-only store.
"""

from .api import ChatLedger
from .errors import (
    ChatLedgerError,
    DeserializationFailure,
    EntityNotFound,
    IndexingNotYetVisible,
    InvalidFile,
    StorageUnavailable,
    Unauthorized,
)
from .types import AGENT, CHAT, Agent, ChatSession, FileAttachment, LogicalEntity, Message

__all__ = [
    "AGENT",
    "CHAT",
    "Agent",
    "ChatLedger",
    "ChatLedgerError",
    "ChatSession",
    "DeserializationFailure",
    "EntityNotFound",
    "FileAttachment",
    "IndexingNotYetVisible",
    "InvalidFile",
    "LogicalEntity",
    "Message",
    "StorageUnavailable",
    "Unauthorized",
]
