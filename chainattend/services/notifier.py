import logging
from typing import Iterable, Optional

import httpx

from chainattend.config import settings

logger = logging.getLogger(__name__)


class Notifier:
    """Best-effort publisher. Delivery failures are logged, never raised."""

    async def publish(self, topic: str, payload: dict) -> None:
        try:
            await self.deliver(topic, payload)
        except Exception:
            logger.warning("Notification to %s dropped: %s", topic, payload.get("type"), exc_info=True)

    async def deliver(self, topic: str, payload: dict) -> None:
        logger.info("notify %s %s", topic, payload)


class WebhookNotifier(Notifier):
    """POSTs ``{"topic", "payload"}`` to a fan-out endpoint."""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    async def deliver(self, topic: str, payload: dict) -> None:
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
            response = await client.post(self.url, json={"topic": topic, "payload": payload})
            response.raise_for_status()


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        if settings.NOTIFY_URL:
            _notifier = WebhookNotifier(settings.NOTIFY_URL, settings.NOTIFY_TIMEOUT_SECONDS)
        else:
            _notifier = Notifier()
    return _notifier


def session_topic(session_id: str) -> str:
    return f"session:{session_id}"


def chain_payload(chain) -> dict:
    return {
        "type": "chain",
        "chainId": chain.chain_id,
        "phase": chain.phase.value,
        "lastHolder": chain.last_holder,
        "lastSeq": chain.last_seq,
        "state": chain.state.value,
    }


def attendance_payload(student_id: str, **fields) -> dict:
    payload = {"type": "attendance", "studentId": student_id}
    payload.update(fields)
    return payload


def stall_payload(chain_ids: Iterable[str]) -> dict:
    return {"type": "stall", "chainIds": list(chain_ids)}


def token_payload(chain_id: str, holder_id: str, seq: int, expires_at) -> dict:
    """Tells a holder their QR was reissued; the token itself is fetched by the holder."""
    return {
        "type": "token",
        "chainId": chain_id,
        "holderId": holder_id,
        "seq": seq,
        "expiresAt": expires_at.isoformat(),
    }
