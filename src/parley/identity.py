"""
Parley - Account and key store.

Created by parley contributors

Issues session tokens and per-user RSA key pairs. The public key is kept
in the clear so others can encrypt to the user; the private key is only
stored wrapped under the user's password and handed back to the client
at signup and login.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from . import crypto
from .constants import (
    MAX_NAME_LENGTH,
    MAX_STATUS_LENGTH,
    RSA_KEY_SIZE,
    STATUS_OFFLINE,
)
from .errors import AuthenticationFailure, ErrorCode, IdentityError
from .storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class User:
    """A registered user."""

    def __init__(
        self,
        user_id: str,
        name: str,
        email: str,
        public_key: Optional[str] = None,
        status: str = STATUS_OFFLINE,
        location: str = "",
        designation: str = "",
    ):
        self.user_id = user_id
        self.name = name
        self.email = email
        self.public_key = public_key
        self.status = status
        self.location = location
        self.designation = designation
        self.created_at = datetime.now(timezone.utc).isoformat()

    def public_info(self) -> Dict[str, Any]:
        """Shareable profile; never includes credentials or private key."""
        info = {
            "user_id": self.user_id,
            "name": self.name,
            "status": self.status,
            "location": self.location,
            "designation": self.designation,
            "public_key": self.public_key,
            "fingerprint": None,
        }
        if self.public_key:
            info["fingerprint"] = crypto.generate_fingerprint(self.public_key)
        return info

    def summary(self) -> Dict[str, Any]:
        """Compact entry used in user listings."""
        return {"user_id": self.user_id, "name": self.name, "status": self.status}


class AccountStore:
    """Users, credentials and live session tokens."""

    def __init__(
        self,
        users_file: Path,
        kdf_params: Optional[crypto.KdfParams] = None,
        rsa_key_size: int = RSA_KEY_SIZE,
    ):
        self.users_file = Path(users_file)
        self.kdf_params = kdf_params or crypto.KdfParams()
        self.rsa_key_size = rsa_key_size
        self.password_hasher = PasswordHasher(
            time_cost=self.kdf_params.time_cost,
            memory_cost=self.kdf_params.memory_cost,
            parallelism=self.kdf_params.parallelism,
        )

        self.users: Dict[str, User] = {}  # user_id -> User
        self._credentials: Dict[str, Dict[str, Any]] = {}  # user_id -> hash + wrapped key
        self._sessions: Dict[str, str] = {}  # token -> user_id
        self._user_tokens: Dict[str, str] = {}  # user_id -> latest token
        self._lock = asyncio.Lock()
        self._load_users()

    def _load_users(self) -> None:
        data = read_json(self.users_file, {})
        for user_id, record in data.items():
            user = User(
                user_id=user_id,
                name=record["name"],
                email=record["email"],
                public_key=record.get("public_key"),
                location=record.get("location", ""),
                designation=record.get("designation", ""),
            )
            user.created_at = record.get("created_at", user.created_at)
            self.users[user_id] = user
            self._credentials[user_id] = {
                "password_hash": record["password_hash"],
                "wrapped_private_key": record.get("wrapped_private_key"),
            }
        if self.users:
            logger.info(f"Loaded {len(self.users)} users from {self.users_file}")

    async def _save(self) -> None:
        data = {}
        for user_id, user in self.users.items():
            data[user_id] = {
                "name": user.name,
                "email": user.email,
                "public_key": user.public_key,
                "location": user.location,
                "designation": user.designation,
                "created_at": user.created_at,
                **self._credentials[user_id],
            }
        await write_json_atomic(self.users_file, data)

    def _find_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        for user in self.users.values():
            if user.email == email:
                return user
        return None

    async def signup(
        self,
        name: str,
        email: str,
        password: str,
        location: str = "",
        designation: str = "",
    ) -> Tuple[str, str, User]:
        """
        Register a user and issue their key pair.

        Returns:
            (session token, private key PEM, user)

        Raises:
            IdentityError: If fields are missing or the email is taken
        """
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if not name or len(name) > MAX_NAME_LENGTH or not email or not password:
            raise IdentityError(
                ErrorCode.E304_INVALID_CREDENTIALS, "Name, email and password are required"
            )

        # Key generation and hashing are CPU-bound
        keypair = await asyncio.to_thread(crypto.KeyPair, None, self.rsa_key_size)
        private_pem = keypair.private_pem()
        password_hash = await asyncio.to_thread(self.password_hasher.hash, password)
        wrapped = await asyncio.to_thread(
            crypto.wrap_private_key, private_pem, password, self.kdf_params
        )

        async with self._lock:
            if self._find_by_email(email) is not None:
                raise IdentityError(
                    ErrorCode.E302_USER_ALREADY_EXISTS, "An account with this email already exists"
                )
            user = User(
                user_id=crypto.generate_uid(),
                name=name,
                email=email,
                public_key=keypair.public_pem(),
                location=location,
                designation=designation,
            )
            self.users[user.user_id] = user
            self._credentials[user.user_id] = {
                "password_hash": password_hash,
                "wrapped_private_key": wrapped,
            }
            try:
                await self._save()
            except Exception:
                del self.users[user.user_id]
                del self._credentials[user.user_id]
                raise

        token = self._issue_token(user.user_id)
        logger.info(f"Registered user {user.user_id}")
        return token, private_pem, user

    async def login(self, email: str, password: str) -> Tuple[str, str, User]:
        """
        Verify credentials and hand back the private key.

        Raises:
            AuthenticationFailure: On unknown email or wrong password
        """
        user = self._find_by_email(email or "")
        if user is None or not password:
            raise AuthenticationFailure(
                "Invalid email or password", code=ErrorCode.E304_INVALID_CREDENTIALS
            )

        credentials = self._credentials[user.user_id]
        try:
            await asyncio.to_thread(
                self.password_hasher.verify, credentials["password_hash"], password
            )
        except (VerificationError, InvalidHashError) as e:
            raise AuthenticationFailure(
                "Invalid email or password", code=ErrorCode.E304_INVALID_CREDENTIALS
            ) from e

        wrapped = credentials.get("wrapped_private_key")
        if not wrapped:
            raise IdentityError(ErrorCode.E300_IDENTITY_ERROR, "No private key on file")
        private_pem = await asyncio.to_thread(crypto.unwrap_private_key, wrapped, password)

        token = self._issue_token(user.user_id)
        logger.info(f"User {user.user_id} logged in")
        return token, private_pem, user

    def _issue_token(self, user_id: str) -> str:
        """Issue a token for a user, revoking the one it supersedes.

        Connections already admitted with the old token stay up.
        """
        previous = self._user_tokens.get(user_id)
        if previous is not None:
            self._sessions.pop(previous, None)
        token = crypto.generate_secure_token()
        self._sessions[token] = user_id
        self._user_tokens[user_id] = token
        return token

    def authenticate(self, token: Optional[str]) -> User:
        """
        Resolve a session token to its user.

        Raises:
            AuthenticationFailure: If the token is missing, unknown or revoked
        """
        if not token or not isinstance(token, str):
            raise AuthenticationFailure("Missing session token")
        user_id = self._sessions.get(token)
        user = self.users.get(user_id) if user_id else None
        if user is None:
            raise AuthenticationFailure("Invalid session token")
        return user

    def logout(self, token: str) -> bool:
        """Revoke a session token. Returns True if it was live."""
        user_id = self._sessions.pop(token, None)
        if user_id is None:
            return False
        if self._user_tokens.get(user_id) == token:
            del self._user_tokens[user_id]
        return True

    def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def require_user(self, user_id: str) -> User:
        """
        Raises:
            IdentityError: If no such user exists
        """
        user = self.users.get(user_id)
        if user is None:
            raise IdentityError(
                ErrorCode.E301_USER_NOT_FOUND, "User not found", {"user_id": user_id}
            )
        return user

    def get_public_key(self, user_id: str) -> Optional[str]:
        user = self.users.get(user_id)
        return user.public_key if user else None

    def list_users(self) -> List[User]:
        return sorted(self.users.values(), key=lambda u: u.name.lower())

    def set_status(self, user_id: str, status: str) -> None:
        """Presence is runtime state and is not persisted."""
        user = self.users.get(user_id)
        if user is not None:
            user.status = status[:MAX_STATUS_LENGTH]
