from __future__ import annotations

from typing import Protocol
from urllib.parse import quote, urlencode

from authkeep.logging import get_logger

logger = get_logger(__name__)


class LinkDelivery(Protocol):
    def send_verification(self, to_email: str, token: str) -> bool: ...

    def send_password_reset(self, to_email: str, token: str) -> bool: ...


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LoggingLinkDelivery:
    """Writes verification and reset links to the application log.

    Stands in for a mail transport in development; a real sender only has to
    implement the two ``send_*`` methods.
    """

    def __init__(self, *, base_url: str, client_redirect_url: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.client_redirect_url = client_redirect_url

    def verification_link(self, token: str) -> str:
        return f"{self.base_url}/verify/{quote(token, safe='')}"

    def reset_link(self, token: str) -> str:
        return f"{self.client_redirect_url}?{urlencode({'reset_token': token})}"

    def _emit(self, to_email: str, subject: str, link: str) -> bool:
        logger.info(
            "link_delivery_dev_mode",
            to=_redact_email(to_email),
            subject=subject,
            link=link,
        )
        return True

    def send_verification(self, to_email: str, token: str) -> bool:
        return self._emit(to_email, "Verify your email address", self.verification_link(token))

    def send_password_reset(self, to_email: str, token: str) -> bool:
        return self._emit(to_email, "Reset your password", self.reset_link(token))
