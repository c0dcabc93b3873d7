"""
Parley - Global Constants and Configuration Values

This module defines all constants used throughout the Parley messaging core.
All magic numbers and configuration defaults are centralized here.

Author: parley contributors
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Parley"

# Network Constants
DEFAULT_SERVER_PORT = 5300
DEFAULT_HOST = "127.0.0.1"

# Connection Timeouts (seconds)
CONNECTION_TIMEOUT = 10
READ_TIMEOUT = 60.0
REQUEST_TIMEOUT = 30
IDENTITY_WAIT_TIMEOUT = 10

# Transport Framing
READ_CHUNK_SIZE = 64 * 1024
MAX_FRAME_SIZE = 16 * 1024 * 1024  # 16 MB, base64 uploads travel inline

# Message Limits
MAX_TEXT_MESSAGE_LENGTH = 10_000
MAX_NAME_LENGTH = 64
MAX_GROUP_NAME_LENGTH = 100
MAX_STATUS_LENGTH = 140

# Attachment Limits
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB
DEFAULT_MIME_TYPE = "application/octet-stream"
ATTACHMENT_URL_PREFIX = "/uploads"

# Cryptography Constants
RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
AES_KEY_SIZE = 32  # 256 bits
NONCE_SIZE = 12  # 96 bits for AES-GCM
SALT_SIZE = 16  # 128 bits
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1
ENVELOPE_VERSION = 1
SESSION_TOKEN_BYTES = 32

# Presence
STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"

# Client Rendering
DECRYPTION_FAILED_PLACEHOLDER = "[Decryption Failed]"
INVALID_MESSAGE_PLACEHOLDER = "[Invalid Message]"
NOTICE_LIFETIME = 5.0  # seconds
PERMISSION_DENIED_NOTICE = "You don't have permission to send messages in this group"

# File Names
CONFIG_FILENAME = "config.toml"
USERS_FILENAME = "users.json"
GROUPS_FILENAME = "groups.json"
MESSAGES_FILENAME = "messages.json"
UPLOADS_DIRNAME = "uploads"
LOG_FILENAME = "parley.log"
DEFAULT_DATA_DIR = "~/.parley"
