"""
Webhook Publisher — posts notifications as JSON.

The body carries the full NotificationPayload plus a pre-rendered "text"
field so Slack-compatible incoming webhooks display something useful.
If the receiver answers with JSON containing "thread_ref" (or Slack's "ts"),
it is returned so later sessions for the same item and actor can reply in
the same thread.

Publishing is fire-and-forget: failures raise PublishError and the caller
decides what to log; nothing is retried here.
"""

from typing import Optional

import httpx
import structlog

from auditpulse.exceptions import PublishError
from auditpulse.schemas import NotificationPayload, RiskLevel

logger = structlog.get_logger(__name__)

_RISK_LABELS = {
    RiskLevel.HIGH: "🔴 High risk",
    RiskLevel.MEDIUM: "🟠 Medium risk",
    RiskLevel.LOW: "🟢 Low risk",
}


def render_text(payload: NotificationPayload) -> str:
    """Plain-text rendering for chat webhooks."""
    who = payload.actor_name or payload.actor_id
    lines = [
        f"*{payload.category}* `{payload.subject_name}` changed by {who} "
        f"({payload.change_count} change{'s' if payload.change_count != 1 else ''})",
        f"{_RISK_LABELS.get(payload.risk_level, payload.risk_level)}: {payload.summary}",
    ]
    lines += [f"• {line}" for line in payload.change_summaries]
    if payload.details:
        lines.append("Details:")
        lines += [f"  - {d}" for d in payload.details]
    if payload.referencing_parents:
        lines.append("Referenced by: " + ", ".join(payload.referencing_parents))
    if payload.target_url:
        lines.append(payload.target_url)
    return "\n".join(lines)


class WebhookPublisher:
    """Publisher that POSTs each notification to a single webhook URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self._transport = transport

    async def publish(self, payload: NotificationPayload) -> Optional[str]:
        if not self.url:
            raise PublishError("No webhook URL configured")

        body = payload.model_dump(mode="json")
        body["text"] = render_text(payload)
        if payload.thread_ref:
            body["thread_ts"] = payload.thread_ref

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=body, headers=self.headers)
        except httpx.HTTPError as e:
            raise PublishError(f"Webhook request failed: {e}", cause=e) from e

        if response.status_code >= 400:
            logger.warning(
                "webhook_publish_failed",
                url=self.url,
                status=response.status_code,
                subject=payload.subject_name,
            )
            raise PublishError(f"Webhook returned HTTP {response.status_code}")

        logger.info(
            "webhook_published",
            url=self.url,
            status=response.status_code,
            subject=payload.subject_name,
        )
        return self._thread_ref(response)

    @staticmethod
    def _thread_ref(response: httpx.Response) -> Optional[str]:
        try:
            data = response.json()
        except ValueError:
            return None  # Slack answers a plain "ok"
        if not isinstance(data, dict):
            return None
        ref = data.get("thread_ref") or data.get("ts")
        return str(ref) if ref else None
