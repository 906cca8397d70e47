from __future__ import annotations

from collections.abc import Awaitable, Callable

import httpx

from ai.providers import AIProvider
from services.checkin_service import ProcessingOutcome, process_subscription
from services.email_service import CheckInMailer
from services.subscription_store import SubscriptionStore

PROCESS_PATH = "/api/secure-worker/process-checkins"


class DispatchError(Exception):
    def __init__(self, subscription_id: str, status_code: int | None):
        super().__init__(f"Worker rejected subscription {subscription_id} (status {status_code})")
        self.kind = f"http_{status_code}" if status_code else "http_error"


def local_dispatcher(
    *,
    store: SubscriptionStore,
    key: bytes,
    provider: AIProvider,
    mailer: CheckInMailer,
) -> Callable[[str], Awaitable[ProcessingOutcome]]:
    """Process subscriptions inside the trigger's own process."""

    async def _dispatch(subscription_id: str) -> ProcessingOutcome:
        return await process_subscription(
            subscription_id,
            store=store,
            key=key,
            provider=provider,
            mailer=mailer,
        )

    return _dispatch


class HttpDispatcher:
    """POSTs each subscription id to the isolated worker endpoint."""

    def __init__(
        self,
        base_url: str,
        secret: str,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = f"{base_url.rstrip('/')}{PROCESS_PATH}"
        self.secret = secret
        self.timeout = timeout
        self.transport = transport

    async def __call__(self, subscription_id: str) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                resp = await client.post(
                    self.url,
                    headers={"Authorization": f"Bearer {self.secret}"},
                    json={"subscriptionId": subscription_id},
                )
            except httpx.TransportError:
                raise DispatchError(subscription_id, None) from None
        if resp.status_code >= 300:
            raise DispatchError(subscription_id, resp.status_code)
        return resp.json()
