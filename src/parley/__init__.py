"""
Parley - End-to-end encrypted messaging core

Real-time private and group messaging with per-recipient public-key
encryption, creator-scoped group send permissions and client-side
reconciliation of optimistic sends.

Author: parley contributors
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "parley contributors"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    AttachmentError,
    AuthenticationFailure,
    ConfigError,
    CryptoError,
    DecryptionFailure,
    ErrorCode,
    GroupError,
    IdentityError,
    InvalidDestination,
    InvalidPayload,
    ParleyError,
    PermissionDenied,
    RecipientKeyUnavailable,
    ServerError,
    StorageFailure,
    TransportFailure,
)
from .group import can_post, is_admin
from .reconcile import ChatEntry, MessageState, ReconciliationEngine
from .session import ChatSession

__all__ = [
    "APP_NAME",
    "VERSION",
    "AttachmentError",
    "AuthenticationFailure",
    "ChatEntry",
    "ChatSession",
    "Config",
    "ConfigError",
    "CryptoError",
    "DecryptionFailure",
    "ErrorCode",
    "GroupError",
    "IdentityError",
    "InvalidDestination",
    "InvalidPayload",
    "MessageState",
    "ParleyError",
    "PermissionDenied",
    "ReconciliationEngine",
    "RecipientKeyUnavailable",
    "ServerError",
    "StorageFailure",
    "TransportFailure",
    "can_post",
    "is_admin",
    "__author__",
    "__license__",
    "__version__",
]
