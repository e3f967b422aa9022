"""Firebase Cloud Messaging push notifier.

Sends one price-drop push per changed item to every collected device token.
A batch is posted exactly once: a failed send is logged by the caller and
never retried, so a flaky provider cannot turn into duplicate pushes.
"""
from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import requests

from .config import FCM_ENDPOINT, FCM_SERVER_KEY, HTTP_TIMEOUT_SECONDS, NOTIFICATION_TITLE_NAME_LIMIT
from .errors import NotifierFailed
from .models import Item, SendResult
from .utils import format_rupiah, get_http_session, string_limit

logger = logging.getLogger(__name__)


def build_message(item: Item, name_limit: int = NOTIFICATION_TITLE_NAME_LIMIT) -> Tuple[str, str]:
    """Return (title, body) for a price drop of `item`."""
    name = string_limit((item.name or "").strip() or "An item you track", name_limit)
    title = f"Price drop: {name}"
    body = f"{name} is now {format_rupiah(item.price)}"
    return title, body


def _build_payload(tokens: Sequence[str], title: str, body: str, item_id: str) -> dict:
    return {
        "notification": {
            "title": title,
            "body": body,
            "click_action": "FLUTTER_NOTIFICATION_CLICK",
            "sound": "default",
        },
        "data": {"item_id": item_id},
        "registration_ids": list(tokens),
    }


class FCMNotifier:
    def __init__(
        self,
        server_key: Optional[str] = FCM_SERVER_KEY,
        *,
        endpoint: str = FCM_ENDPOINT,
        session: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.server_key = server_key
        self.endpoint = endpoint
        self.session = session or get_http_session()
        self.timeout = timeout

    def send(self, tokens: Sequence[str], title: str, body: str, item_id: str) -> SendResult:
        """Post one multicast message; return per-batch success/failure counts.

        Raises NotifierFailed when the request fails, the provider answers
        with a non-2xx status or the response is not the expected JSON.
        """
        if not self.server_key:
            raise NotifierFailed("FCM server key is not configured")
        if not tokens:
            return SendResult(success=0, failure=0)

        payload = _build_payload(tokens, title, body, item_id)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"key={self.server_key}",
        }
        logger.debug("FCM request for item_id=%s: %d token(s), title=%r", item_id, len(tokens), title)
        try:
            resp = self.session.post(self.endpoint, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotifierFailed(f"error sending FCM request for item_id={item_id}: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise NotifierFailed(
                f"FCM returned status {resp.status_code} for item_id={item_id}: {resp.text[:300]}"
            )
        try:
            data = resp.json()
            result = SendResult(success=int(data.get("success", 0)), failure=int(data.get("failure", 0)))
        except (ValueError, TypeError, AttributeError) as e:
            raise NotifierFailed(
                f"error decoding FCM response for item_id={item_id}: {resp.text[:300]}"
            ) from e
        logger.debug("FCM response for item_id=%s: %s", item_id, data)
        return result

    def close(self) -> None:
        self.session.close()


__all__ = ["FCMNotifier", "build_message"]
