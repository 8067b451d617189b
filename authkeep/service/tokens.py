from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol

from authkeep.config import Settings
from authkeep.logging import get_logger
from authkeep.service.errors import NotFoundError, TokenError, TokenErrorReason
from authkeep.service.signing import TokenSigner
from authkeep.storage.models import RefreshTokenRecord, User, utcnow

logger = get_logger(__name__)


class TokenStore(Protocol):
    def create_refresh_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]: ...

    def get_refresh_token_by_id(self, token_id: str) -> Optional[RefreshTokenRecord]: ...

    def claim_refresh_token(self, token: str) -> bool: ...

    def revoke_refresh_token(self, token: str) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def list_user_refresh_tokens(
        self, user_id: str, *, active_only: bool = True
    ) -> List[RefreshTokenRecord]: ...


class UserLookup(Protocol):
    def find_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    user: User
    refresh_record: RefreshTokenRecord

    @property
    def refresh_expires_at(self) -> datetime:
        return self.refresh_record.expires_at


class TokenService:
    """Issues, rotates and revokes access/refresh token pairs.

    Access tokens are self-contained and never stored. Each refresh token has a
    durable record whose ``revoked`` flag only ever goes from False to True;
    rotation consumes the record with a compare-and-set so a refresh token can
    be exchanged at most once.
    """

    def __init__(
        self,
        store: TokenStore,
        directory: UserLookup,
        settings: Settings,
        signer: Optional[TokenSigner] = None,
        clock: Optional[Callable[[], datetime]] = None,
        *,
        refresh_signer: Optional[TokenSigner] = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.settings = settings
        self._now = clock or utcnow
        epoch = lambda: self._now().timestamp()  # noqa: E731
        self.signer = signer or TokenSigner(
            settings.jwt_secret,
            leeway_seconds=settings.jwt_leeway_seconds,
            clock=epoch,
        )
        self.refresh_signer = refresh_signer or TokenSigner(
            settings.refresh_secret,
            leeway_seconds=settings.jwt_leeway_seconds,
            clock=epoch,
        )

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    # issuance
    def issue_access_token(self, user: User) -> str:
        now = self._now()
        iat = int(now.timestamp())
        return self.signer.encode(
            {
                "id": user.id,
                "email": user.email,
                "displayName": user.display_name,
                "role": user.role,
                "type": "access",
                "jti": str(uuid.uuid4()),
                "iat": iat,
                "exp": iat + int(self.access_ttl.total_seconds()),
            }
        )

    def issue_refresh_token(self, user_id: str) -> str:
        iat = int(self._now().timestamp())
        return self.refresh_signer.encode(
            {
                "userId": user_id,
                "type": "refresh",
                "jti": str(uuid.uuid4()),
                "iat": iat,
                "exp": iat + int(self.refresh_ttl.total_seconds()),
            }
        )

    def persist_refresh_token(self, token: str, user_id: str) -> RefreshTokenRecord:
        expires_at = self._now() + self.refresh_ttl
        return self.store.create_refresh_token(token, user_id, expires_at)

    def issue_token_pair(self, user: User) -> TokenPair:
        access_token = self.issue_access_token(user)
        refresh_token = self.issue_refresh_token(user.id)
        record = self.persist_refresh_token(refresh_token, user.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            user=user,
            refresh_record=record,
        )

    # rotation
    def rotate(self, presented: str) -> TokenPair:
        claims = self.refresh_signer.verify(presented)
        if claims.get("type") != "refresh":
            raise TokenError(TokenErrorReason.INVALID_SIGNATURE)

        record = self.store.get_refresh_token(presented)
        if record is None or not record.is_active(self._now()):
            raise TokenError(TokenErrorReason.NOT_FOUND_OR_REVOKED)

        user = self.directory.find_user(record.user_id)
        if user is None or not user.is_active:
            raise TokenError(TokenErrorReason.NOT_FOUND_OR_REVOKED)

        if not self.store.claim_refresh_token(presented):
            logger.warning(
                "refresh_rotation_race_lost",
                user_id=record.user_id,
                token_id=record.id,
            )
            raise TokenError(TokenErrorReason.CONCURRENT_ROTATION)

        pair = self.issue_token_pair(user)
        logger.info(
            "token_rotated",
            user_id=user.id,
            previous_token_id=record.id,
            token_id=pair.refresh_record.id,
        )
        return pair

    # revocation
    def revoke(self, token: str) -> None:
        if self.store.revoke_refresh_token(token):
            logger.info("refresh_token_revoked")

    def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked_all", user_id=user_id, count=count)
        return count

    def revoke_by_id(self, token_id: str, user_id: str) -> bool:
        record = self.store.get_refresh_token_by_id(token_id)
        if record is None or record.user_id != user_id:
            raise NotFoundError("token not found", detail={"token_id": token_id})
        return self.store.revoke_refresh_token(record.token)

    def list_active(self, user_id: str) -> List[RefreshTokenRecord]:
        now = self._now()
        records = self.store.list_user_refresh_tokens(user_id, active_only=False)
        return [record for record in records if record.is_active(now)]

    # verification
    def verify_access_token(self, token: str) -> dict[str, Any]:
        claims = self.signer.verify(token)
        if claims.get("type") != "access" or not claims.get("id"):
            raise TokenError(TokenErrorReason.INVALID_SIGNATURE)
        return claims

    def peek_claims(self, token: str) -> Optional[dict[str, Any]]:
        """Unverified claims, for audit metadata only. Never authorize on these."""

        return TokenSigner.peek(token)
