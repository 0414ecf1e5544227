"""HortiFlow Webhook Client — outbound HTTP calls for webhook actions."""

import logging

import httpx

logger = logging.getLogger("hortiflow.webhook")


class WebhookClient:
    """Calls rule webhooks with httpx.

    Non-2xx responses raise ``httpx.HTTPStatusError``; the dispatcher turns that
    into a failed action outcome.
    """

    def __init__(self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self.transport = transport

    async def call_webhook(
        self,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        payload: dict | None = None,
    ) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.request(
                method,
                url,
                headers=headers or {},
                json=payload if method != "GET" else None,
            )
            resp.raise_for_status()

        logger.info(f"Webhook {method} {url} → {resp.status_code}")
        try:
            body = resp.json()
        except ValueError:
            body = resp.text[:500]
        return {"status_code": resp.status_code, "body": body}
