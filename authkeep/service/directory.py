from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authkeep.logging import get_logger
from authkeep.service.errors import AuthenticationError, ConflictError, TokenError
from authkeep.service.signing import TokenSigner
from authkeep.storage.errors import ConstraintViolation
from authkeep.storage.models import User, utcnow

PASSWORD_ALGO = "argon2id"


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


class UserDirectory:
    """Users, argon2id credentials and the one-off tokens sent by email.

    Verification and password-reset tokens are signed, typed and short-lived;
    nothing is stored for them beyond the ``email_verified`` flag.
    """

    def __init__(
        self,
        store: UserStore,
        signer: TokenSigner,
        *,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(minutes=15),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.signer = signer
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self._now = clock or utcnow
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = get_logger(__name__)

    # lookups
    def find_user(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def find_user_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(normalize_email(email))

    # credentials
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_credentials(self, email: str, password: str) -> User:
        """Return the user for a matching email/password pair.

        Raises ``AuthenticationError`` with a generic message; the specific
        cause is in ``detail["reason"]`` for audit metadata.
        """

        user = self.find_user_by_email(email)
        if user is None:
            raise AuthenticationError(
                "invalid credentials", detail={"reason": "unknown_email"}
            )
        if not user.is_active:
            raise AuthenticationError(
                "invalid credentials", detail={"reason": "inactive_user"}
            )
        if not self.verify_password(user.id, password):
            raise AuthenticationError(
                "invalid credentials", detail={"reason": "bad_password"}
            )
        return user

    # registration and verification
    def create_user(
        self,
        email: str,
        password: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
    ) -> Tuple[User, str]:
        """Create a pending-verification user; returns it with its verification token."""

        try:
            user = self.store.create_user(
                normalize_email(email),
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                role=role,
                meta={"email_verified": False},
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.set_password(user.id, password)
        token = self.issue_verification_token(user)
        self.logger.info("user_registered", user_id=user.id)
        return user, token

    def _issue_purpose_token(self, user: User, purpose: str, ttl: timedelta) -> str:
        iat = int(self._now().timestamp())
        return self.signer.encode(
            {
                "userId": user.id,
                "type": purpose,
                "jti": str(uuid.uuid4()),
                "iat": iat,
                "exp": iat + int(ttl.total_seconds()),
            }
        )

    def issue_verification_token(self, user: User) -> str:
        return self._issue_purpose_token(user, "verify", self.verification_ttl)

    def confirm_verification(self, token: str) -> User:
        try:
            claims = self.signer.verify(token)
        except TokenError as exc:
            self.logger.warning("email_verification_invalid_token", reason=exc.reason.value)
            raise AuthenticationError("invalid verification token") from exc
        if claims.get("type") != "verify":
            raise AuthenticationError("invalid verification token")
        user = self.store.get_user(str(claims.get("userId", "")))
        if user is None:
            self.logger.warning("email_verification_missing_user")
            raise AuthenticationError("invalid verification token")
        if (user.meta or {}).get("email_verified"):
            # Links are single use
            raise AuthenticationError("invalid verification token")
        verified = self.store.mark_email_verified(user.id) or user
        self.logger.info("email_verified", user_id=verified.id)
        return verified

    def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token for a known email. Unknown emails return None silently."""

        user = self.find_user_by_email(email)
        self.logger.info(
            "password_reset_requested",
            account_hash=_email_hash(normalize_email(email)),
            known=user is not None,
        )
        if user is None or not user.is_active:
            return None
        return self._issue_purpose_token(user, "reset", self.reset_ttl)

    # policy
    @staticmethod
    def can_impersonate(actor: User, target: User) -> bool:
        return actor.role == "admin" and actor.id != target.id and target.role != "admin"
