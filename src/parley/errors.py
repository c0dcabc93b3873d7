"""
Parley - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the Parley messaging core. Each error has a unique code that travels to the
client inside ``error`` events and failed responses.

Author: parley contributors
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Parley error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E004_PERMISSION_DENIED = "E004"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E104_KEY_GENERATION_FAILED = "E104"

    # Transport Errors (E200-E299)
    E200_TRANSPORT_ERROR = "E200"
    E201_CONNECTION_FAILED = "E201"
    E202_CONNECTION_TIMEOUT = "E202"
    E203_CONNECTION_CLOSED = "E203"
    E204_SEND_FAILED = "E204"
    E206_INVALID_FRAME = "E206"
    E207_FRAME_TOO_LARGE = "E207"
    E208_UNKNOWN_COMMAND = "E208"

    # Identity / Authentication Errors (E300-E399)
    E300_IDENTITY_ERROR = "E300"
    E301_USER_NOT_FOUND = "E301"
    E302_USER_ALREADY_EXISTS = "E302"
    E303_AUTHENTICATION_FAILED = "E303"
    E304_INVALID_CREDENTIALS = "E304"
    E305_RECIPIENT_KEY_UNAVAILABLE = "E305"

    # Message Errors (E400-E499)
    E400_MESSAGE_ERROR = "E400"
    E401_INVALID_DESTINATION = "E401"
    E402_INVALID_PAYLOAD = "E402"
    E403_MESSAGE_TOO_LARGE = "E403"

    # Group Errors (E500-E599)
    E500_GROUP_ERROR = "E500"
    E501_GROUP_NOT_FOUND = "E501"
    E505_INVALID_GROUP = "E505"
    E508_CREATOR_RIGHTS_LOCKED = "E508"
    E509_NOT_GROUP_MEMBER = "E509"

    # Attachment Errors (E600-E699)
    E600_ATTACHMENT_ERROR = "E600"
    E601_FILE_TOO_LARGE = "E601"
    E602_INVALID_ATTACHMENT = "E602"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"

    # Server Errors (E800-E899)
    E800_SERVER_ERROR = "E800"
    E801_SERVER_START_FAILED = "E801"

    # Storage Errors (E900-E999)
    E900_STORAGE_ERROR = "E900"
    E901_STORAGE_WRITE_FAILED = "E901"


class ParleyError(Exception):
    """Base exception class for all Parley errors.

    All custom exceptions in Parley inherit from this class.
    Provides standardized error reporting over the wire.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a Parley error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(ParleyError):
    """Exception raised for cryptographic operation failures.

    This includes key generation, key parsing, encryption and key wrapping.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class DecryptionFailure(CryptoError):
    """Raised when a ciphertext cannot be opened with the supplied private key.

    Client-local only: never reported to the server.
    """

    def __init__(
        self,
        message: str = "Decryption failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E102_DECRYPTION_FAILED, message, details)


class TransportFailure(ParleyError):
    """Exception raised for transport failures.

    This includes connection errors, timeouts, write failures and
    malformed frames.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_TRANSPORT_ERROR,
        message: str = "Transport operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class IdentityError(ParleyError):
    """Exception raised for account and identity failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_IDENTITY_ERROR,
        message: str = "Identity operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class AuthenticationFailure(IdentityError):
    """Invalid or missing session token, or bad credentials.

    The connection is refused with no partial admission.
    """

    def __init__(
        self,
        message: str = "Authentication failed",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E303_AUTHENTICATION_FAILED,
    ):
        super().__init__(code, message, details)


class RecipientKeyUnavailable(IdentityError):
    """Private send to a recipient with no public key on file."""

    def __init__(
        self,
        message: str = "Recipient has no public key",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E305_RECIPIENT_KEY_UNAVAILABLE, message, details)


class InvalidDestination(ParleyError):
    """Send request naming both or neither of recipient and group."""

    def __init__(
        self,
        message: str = "Message must have exactly one destination",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E401_INVALID_DESTINATION, message, details)


class InvalidPayload(ParleyError):
    """Send request with empty, oversized or malformed content."""

    def __init__(
        self,
        message: str = "Invalid message payload",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E402_INVALID_PAYLOAD,
    ):
        super().__init__(code, message, details)


class GroupError(ParleyError):
    """Exception raised for group management failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_GROUP_ERROR,
        message: str = "Group operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class PermissionDenied(GroupError):
    """Raised when a user may not post into, or administer, a group."""

    def __init__(
        self,
        message: str = "Permission denied",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E004_PERMISSION_DENIED, message, details)


class AttachmentError(ParleyError):
    """Exception raised for attachment upload failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E600_ATTACHMENT_ERROR,
        message: str = "Attachment operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(ParleyError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ServerError(ParleyError):
    """Exception raised for server startup and shutdown failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E800_SERVER_ERROR,
        message: str = "Server operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class StorageFailure(ParleyError):
    """Persisting a record failed; nothing was broadcast."""

    def __init__(
        self,
        message: str = "Storage operation failed",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E900_STORAGE_ERROR,
    ):
        super().__init__(code, message, details)


# Codes whose exception class fixes the code itself
_FIXED_CODE_ERRORS = {
    ErrorCode.E004_PERMISSION_DENIED: PermissionDenied,
    ErrorCode.E102_DECRYPTION_FAILED: DecryptionFailure,
    ErrorCode.E305_RECIPIENT_KEY_UNAVAILABLE: RecipientKeyUnavailable,
    ErrorCode.E401_INVALID_DESTINATION: InvalidDestination,
}

# Classes taking (message, details, code=...)
_MESSAGE_FIRST_ERRORS = {
    ErrorCode.E303_AUTHENTICATION_FAILED: AuthenticationFailure,
    ErrorCode.E304_INVALID_CREDENTIALS: AuthenticationFailure,
    ErrorCode.E400_MESSAGE_ERROR: InvalidPayload,
    ErrorCode.E402_INVALID_PAYLOAD: InvalidPayload,
    ErrorCode.E403_MESSAGE_TOO_LARGE: InvalidPayload,
    ErrorCode.E900_STORAGE_ERROR: StorageFailure,
    ErrorCode.E901_STORAGE_WRITE_FAILED: StorageFailure,
}

# Remaining codes by their hundreds digit; classes taking (code, message, details)
_RANGE_ERRORS = {
    "E1": CryptoError,
    "E2": TransportFailure,
    "E3": IdentityError,
    "E5": GroupError,
    "E6": AttachmentError,
    "E7": ConfigError,
    "E8": ServerError,
}


def error_from_dict(data: Any) -> ParleyError:
    """Rebuild the typed exception for an error received over the wire.

    Unknown codes come back as E001 ParleyError.
    """
    if not isinstance(data, dict):
        return ParleyError(ErrorCode.E001_UNKNOWN_ERROR, str(data))
    try:
        code = ErrorCode(data.get("code"))
    except ValueError:
        code = ErrorCode.E001_UNKNOWN_ERROR
    message = str(data.get("message") or "")
    details = data.get("details")
    if not isinstance(details, dict):
        details = {}

    if code in _FIXED_CODE_ERRORS:
        return _FIXED_CODE_ERRORS[code](message, details)
    if code in _MESSAGE_FIRST_ERRORS:
        return _MESSAGE_FIRST_ERRORS[code](message, details, code=code)
    error_class = _RANGE_ERRORS.get(code.value[:2])
    if error_class is not None:
        return error_class(code, message, details)
    return ParleyError(code, message, details)
