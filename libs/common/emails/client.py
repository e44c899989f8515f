"""
Email client for the Communications Service's templated email API.

Template rendering lives entirely in the Communications Service; callers send
a template type plus data. Sending is best-effort: every failure is logged and
reported as ``False``, never raised.

Usage:
    from libs.common.emails.client import get_email_client

    await get_email_client().send_template(
        template_type="payment_expired",
        to_email="client@example.com",
        template_data={"client_name": "Ada", "amount": 500.0},
    )
"""

from typing import Any, Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.service_client import outbound_request

logger = get_logger(__name__)


class EmailClient:
    """
    HTTP client for sending templated emails through the Communications Service.

    Authenticates with a short-lived service-role JWT. Does nothing when
    COMMUNICATIONS_SERVICE_URL is not configured.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: float = 10.0):
        settings = get_settings()
        self.base_url = base_url or settings.COMMUNICATIONS_SERVICE_URL
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _get_auth_headers(self) -> dict[str, str]:
        from libs.auth.dependencies import _service_role_jwt

        token = _service_role_jwt("payments_service")
        return {"Authorization": f"Bearer {token}"}

    async def send_template(
        self,
        template_type: str,
        to_email: str,
        template_data: dict[str, Any],
    ) -> bool:
        """
        Send a templated email.

        Template types used by this service:
        - payment_expired: pending payment auto-cancelled by the cleanup sweep
        - payment_confirmed: payment confirmed by a provider or an admin

        Returns:
            True if the Communications Service accepted the email, False otherwise
        """
        if not self.enabled:
            logger.debug("Email not sent (%s): no communications service", template_type)
            return False

        payload = {
            "template_type": template_type,
            "to_email": to_email,
            "template_data": template_data,
        }

        try:
            response = await outbound_request(
                method="POST",
                url=f"{self.base_url}/email/template",
                headers=self._get_auth_headers(),
                json=payload,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.error("Failed to connect to Communications Service: %s", e)
            return False

        if response.status_code != 200:
            logger.error(
                "Template email API returned %s: %s",
                response.status_code,
                response.text,
            )
            return False
        try:
            return bool(response.json().get("success", False))
        except ValueError:
            return False


_email_client: Optional[EmailClient] = None


def get_email_client() -> EmailClient:
    """Get or create the singleton EmailClient instance."""
    global _email_client
    if _email_client is None:
        _email_client = EmailClient()
    return _email_client
