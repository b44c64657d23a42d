from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import uvicorn

from .api.webhook_api.app import create_app
from .application.dtos import WebhookEventDTO
from .application.verification.key_store import KeyStore
from .application.verification.signature_verifier import SignatureVerifier
from .envs.client_env import get_settings
from .infrastructure.pay_server.pay_server_client import AsyncPayServerClient

logger = logging.getLogger("cashpay.webhooks")


async def log_event(event: WebhookEventDTO) -> Optional[Dict[str, Any]]:
    logger.info("Received %s for invoice %s", event.event, event.resolved_invoice_id())
    return None


def main() -> None:
    """Run a webhook receiver that logs every verified pay server event."""
    logging.basicConfig(level=logging.INFO)
    settings = get_settings()

    pay_server = AsyncPayServerClient(settings.endpoint, timeout=settings.http_timeout)
    key_store = KeyStore(pay_server, settings.resolved_trusted_endpoints())
    app = create_app(settings, SignatureVerifier(key_store), handler=log_event)

    print(f"Starting {settings.app_name} webhook receiver v{settings.app_version}")
    print(
        f"Webhooks accepted at: http://{settings.webhook_host}:{settings.webhook_port}"
        f"{settings.webhook_path}"
    )

    uvicorn.run(
        app,
        host=settings.webhook_host,
        port=settings.webhook_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
