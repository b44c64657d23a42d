"""FastAPI application receiving signed pay server webhooks."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from pydantic import ValidationError

from ...application.dtos import WebhookEventDTO
from ...application.verification.signature_verifier import SignatureVerifier
from ...domain.errors import KeyFetchError
from ...envs.client_env import Settings
from ...middleware.webhook_signature import WebhookSignatureMiddleware

logger = logging.getLogger(__name__)

WebhookHandler = Callable[[WebhookEventDTO], Awaitable[Optional[Dict[str, Any]]]]


def create_app(
    settings: Settings,
    verifier: SignatureVerifier,
    handler: Optional[WebhookHandler] = None,
) -> FastAPI:
    """Create the webhook receiver.

    ``handler`` only ever sees verified events. It may return a JSON object,
    which is sent back to the pay server as the response body (the server can
    use it to update the invoice's data fields). Only a 2xx response
    acknowledges delivery.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Warm the key store; verification fetches lazily if this fails.
        for endpoint in settings.resolved_trusted_endpoints():
            try:
                await verifier.key_store.register_trusted(endpoint)
            except KeyFetchError as e:
                logger.warning("%s", e)
        yield

    app = FastAPI(
        title=f"{settings.app_name} Webhooks",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.add_middleware(WebhookSignatureMiddleware, verifier=verifier)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": f"{settings.app_name} Webhooks",
            "version": settings.app_version,
        }

    @app.post(settings.webhook_path)
    async def receive_webhook(request: Request) -> Dict[str, Any]:
        """Accept a verified lifecycle event."""
        if not getattr(request.state, "webhook_verified", False):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Webhook signature was not verified",
            )
        try:
            event = WebhookEventDTO.model_validate_json(await request.body())
        except ValidationError as e:
            raise HTTPException(
                status_code=422,
                detail=f"Malformed webhook payload: {e.errors()}",
            ) from e

        logger.info(
            "Verified %s webhook for invoice %s from %s",
            event.event,
            event.resolved_invoice_id(),
            request.state.webhook_identity,
        )
        result = await handler(event) if handler is not None else None
        return result if result is not None else {"status": "ok"}

    return app
