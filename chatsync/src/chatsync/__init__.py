"""Message synchronization and moderation engine."""

from .auth import LocalAuth
from .cache import MessageCache
from .client import ChatClient
from .composer import Composer
from .config import SyncConfig, load_sync_config_from_env
from .errors import (
    ChatSyncError,
    Conflict,
    IdentityAlreadyNamed,
    InvalidName,
    NameTaken,
    NotReady,
    ReadFailed,
    StoreError,
    UniqueViolation,
    UnqualifiedDelete,
    WriteFailed,
)
from .hub import ChangeHub, Subscription
from .identity import IdentityResolver
from .models import ChangeEvent, ChangeKind, DeleteCriteria, Message, MessageKind, Scope
from .moderation import ModerationEngine
from .store import InMemoryMessageStore, InMemoryProfileStore
from .synchronizer import ScopeSynchronizer, SyncManager, SyncState

__all__ = [
    "ChangeEvent",
    "ChangeHub",
    "ChangeKind",
    "ChatClient",
    "ChatSyncError",
    "Composer",
    "Conflict",
    "DeleteCriteria",
    "IdentityAlreadyNamed",
    "IdentityResolver",
    "InMemoryMessageStore",
    "InMemoryProfileStore",
    "InvalidName",
    "LocalAuth",
    "Message",
    "MessageCache",
    "MessageKind",
    "ModerationEngine",
    "NameTaken",
    "NotReady",
    "ReadFailed",
    "Scope",
    "ScopeSynchronizer",
    "StoreError",
    "Subscription",
    "SyncConfig",
    "SyncManager",
    "SyncState",
    "UniqueViolation",
    "UnqualifiedDelete",
    "WriteFailed",
    "load_sync_config_from_env",
]
