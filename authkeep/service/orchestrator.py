from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Tuple

from authkeep.logging import get_logger
from authkeep.service.audit import AuditLogger
from authkeep.service.delivery import LinkDelivery
from authkeep.service.directory import UserDirectory
from authkeep.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    TokenError,
)
from authkeep.service.tokens import TokenPair, TokenService
from authkeep.storage.models import AuditEvent, AuditEventType, User

logger = get_logger(__name__)

UNKNOWN = "unknown"
# Audit reason for failures outside the credential/token checks
INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class ClientInfo:
    ip_address: str = UNKNOWN
    user_agent: str = UNKNOWN


class AuthOrchestrator:
    """Runs each authentication endpoint as domain action, then audit write.

    Rate-limit admission happens before these methods are reached. Failures
    surface to clients with generic messages; the audit metadata keeps the
    specific reason.
    """

    def __init__(
        self,
        tokens: TokenService,
        directory: UserDirectory,
        audit: AuditLogger,
        delivery: Optional[LinkDelivery] = None,
    ) -> None:
        self.tokens = tokens
        self.directory = directory
        self.audit = audit
        self.delivery = delivery

    def _record(
        self,
        user_id: Optional[str],
        event: AuditEventType,
        client: ClientInfo,
        metadata: Optional[dict] = None,
    ) -> None:
        self.audit.record(
            user_id,
            event,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            metadata=metadata,
        )

    async def _deliver(self, method: str, to_email: str, token: str) -> None:
        """Hand a one-off link token to the delivery hook. Failures are logged only."""
        if self.delivery is None:
            return
        try:
            sent = await asyncio.to_thread(getattr(self.delivery, method), to_email, token)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "link_delivery_failed",
                method=method,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return
        if not sent:
            logger.warning("link_delivery_failed", method=method)

    async def authenticate(self, access_token: str) -> User:
        claims = self.tokens.verify_access_token(access_token)
        user = self.directory.find_user(str(claims["id"]))
        if user is None or not user.is_active:
            raise AuthenticationError("invalid token")
        return user

    async def login(self, email: str, password: str, client: ClientInfo) -> TokenPair:
        try:
            user = self.directory.verify_credentials(email, password)
        except AuthenticationError as exc:
            reason = exc.detail.get("reason", "invalid_credentials")
            self._record(
                None,
                AuditEventType.FAILED_LOGIN,
                client,
                {"email": email, "reason": reason},
            )
            logger.info("login_failed", reason=reason, ip_address=client.ip_address)
            raise AuthenticationError("invalid credentials") from exc
        except Exception as exc:
            self._record(
                None,
                AuditEventType.FAILED_LOGIN,
                client,
                {"email": email, "reason": INTERNAL_ERROR},
            )
            logger.error(
                "login_errored", error=str(exc), error_type=type(exc).__name__
            )
            raise

        try:
            pair = self.tokens.issue_token_pair(user)
        except Exception:
            self._record(
                None,
                AuditEventType.FAILED_LOGIN,
                client,
                {"email": email, "reason": "token_issue_failed"},
            )
            raise
        self._record(user.id, AuditEventType.LOGIN, client)
        logger.info("login_succeeded", user_id=user.id)
        return pair

    async def refresh(self, refresh_token: str, client: ClientInfo) -> TokenPair:
        peeked = self.tokens.peek_claims(refresh_token) or {}
        claimed_user_id = peeked.get("userId")
        try:
            pair = self.tokens.rotate(refresh_token)
        except TokenError as exc:
            self._record(
                None,
                AuditEventType.FAILED_REFRESH,
                client,
                {"reason": exc.reason.value, "claimed_user_id": claimed_user_id},
            )
            logger.info("refresh_failed", reason=exc.reason.value)
            raise TokenError(exc.reason, "invalid refresh token") from exc
        except Exception as exc:
            self._record(
                None,
                AuditEventType.FAILED_REFRESH,
                client,
                {"reason": INTERNAL_ERROR, "claimed_user_id": claimed_user_id},
            )
            logger.error(
                "refresh_errored", error=str(exc), error_type=type(exc).__name__
            )
            raise
        self._record(claimed_user_id or pair.user.id, AuditEventType.REFRESH_TOKEN, client)
        return pair

    async def logout(
        self, user: User, refresh_token: Optional[str], client: ClientInfo
    ) -> None:
        if refresh_token:
            try:
                self.tokens.revoke(refresh_token)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "logout_revoke_failed",
                    user_id=user.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        self._record(user.id, AuditEventType.LOGOUT, client)

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        client: ClientInfo,
    ) -> Tuple[User, str]:
        """Create a pending user and send its verification link; returns both."""

        user, verification_token = self.directory.create_user(
            email, password, first_name=first_name, last_name=last_name
        )
        self._record(user.id, AuditEventType.REGISTER, client, {"email": user.email})
        await self._deliver("send_verification", user.email, verification_token)
        return user, verification_token

    async def verify(self, verification_token: str, client: ClientInfo) -> TokenPair:
        user = self.directory.confirm_verification(verification_token)
        pair = self.tokens.issue_token_pair(user)
        self._record(user.id, AuditEventType.LOGIN, client, {"method": "email_verification"})
        return pair

    async def impersonate(
        self, actor: User, target_id: str, client: ClientInfo
    ) -> TokenPair:
        if actor.role != "admin":
            raise ForbiddenError("impersonation requires admin role")
        target = self.directory.find_user(target_id)
        if target is None or not target.is_active:
            raise NotFoundError("user not found", detail={"user_id": target_id})
        if not self.directory.can_impersonate(actor, target):
            raise ForbiddenError("impersonation not permitted for this user")
        pair = self.tokens.issue_token_pair(target)
        logger.warning("impersonation_started", actor_id=actor.id, target_id=target.id)
        self._record(
            target.id,
            AuditEventType.LOGIN,
            client,
            {"method": "impersonation", "impersonated_by": actor.id},
        )
        return pair

    async def lost_password(self, email: str) -> None:
        reset_token = self.directory.request_password_reset(email)
        if reset_token is not None:
            await self._deliver("send_password_reset", email, reset_token)

    async def remove_token(self, user: User, token_id: str) -> bool:
        return self.tokens.revoke_by_id(token_id, user.id)

    async def revoke_all(self, user: User) -> int:
        return self.tokens.revoke_all(user.id)

    async def audit_trail(self, user: User, limit: int = 100) -> List[AuditEvent]:
        return list(self.audit.list_for_user(user.id, limit=limit))

    async def audit_log(self, actor: User, limit: int = 100) -> List[AuditEvent]:
        if actor.role != "admin":
            raise ForbiddenError("admin role required")
        return list(self.audit.list_all(limit=limit))
