"""
WhatsApp bot notifications.

Fire-and-forget outbound calls to the bot service:
- POST {BOT_URL}/send-message           family invites and removals
- POST {BOT_URL}/notificacao-pagamento  approved payments

Failures (transport errors, non-2xx answers) are logged once and dropped;
callers only ever see True/False.
"""
from typing import Protocol, Optional, Dict, Any

import httpx

from savepad.core.logging import log_event


class Notifier(Protocol):
    def notify_family(self, phone: Optional[str], name: Optional[str], owner_name: Optional[str], action: str) -> bool:
        ...

    def notify_payment(self, user_id: int, plano: str, status: str, valor: Optional[float]) -> bool:
        ...


class BotNotifier:
    """httpx client for the WhatsApp bot notification contract."""

    FAMILY_PATH = "/send-message"
    PAYMENT_PATH = "/notificacao-pagamento"

    def __init__(self, base_url: str, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client

    def notify_family(self, phone: Optional[str], name: Optional[str], owner_name: Optional[str], action: str) -> bool:
        if not phone:
            log_event("warning", "bot.notify_skipped", event_type=action, extra={"reason": "missing phone", "member_name": name})
            return False
        payload = {"phone": phone, "name": name, "ownerName": owner_name, "action": action}
        return self._post(self.FAMILY_PATH, payload, event_type=action)

    def notify_payment(self, user_id: int, plano: str, status: str, valor: Optional[float]) -> bool:
        payload = {"user_id": user_id, "plano": plano, "status": status, "valor": valor}
        return self._post(self.PAYMENT_PATH, payload, event_type="payment", user_id=user_id)

    def _post(self, path: str, payload: Dict[str, Any], *, event_type: str, user_id: Optional[int] = None) -> bool:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = self._client.post(url, json=payload)
            else:
                with httpx.Client() as client:
                    response = client.post(url, json=payload)
        except httpx.HTTPError as exc:
            log_event("error", "bot.notify_failed", user_id=user_id, event_type=event_type, extra={"url": url, "error": exc})
            return False
        except Exception as exc:
            log_event("error", "bot.notify_failed", user_id=user_id, event_type=event_type, error_code="unexpected", extra={"url": url, "error": repr(exc)})
            return False

        if response.status_code >= 300:
            log_event(
                "error",
                "bot.notify_rejected",
                user_id=user_id,
                event_type=event_type,
                extra={"url": url, "http_status": response.status_code, "body": response.text},
            )
            return False

        log_event("info", "bot.notified", user_id=user_id, event_type=event_type, extra={"url": url})
        return True
