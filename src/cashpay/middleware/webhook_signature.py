from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from fastapi import status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..application.verification.signature_verifier import (
    IDENTITY_HEADER,
    SignatureVerifier,
)
from ..domain.errors import (
    KeyFetchError,
    MalformedEnvelope,
    TrustError,
    UnsupportedSignatureType,
    VerificationError,
)

logger = logging.getLogger(__name__)


class WebhookSignatureMiddleware(BaseHTTPMiddleware):
    """Reject webhook calls whose body is not signed by a trusted pay server.

    Expected headers:
    - `Digest`: Base64 SHA-256 of the raw request body (optionally `SHA-256=` prefixed).
    - `X-Identity`: Identity of the signing server (selects the trusted key set).
    - `X-Signature`: Base64 ECDSA signature over the digest.
    - `X-Signature-Type`: Must be `ECC`.

    Verification is skipped for read-only methods and these paths:
    - `/`, `/health`, `/docs`, `/redoc`, `/openapi.json`
    """

    def __init__(
        self,
        app,
        verifier: SignatureVerifier,
        skip_paths: Optional[Iterable[str]] = None,
    ) -> None:
        super().__init__(app)
        self._verifier = verifier
        self._skip_paths = set(
            skip_paths or ["/", "/health", "/docs", "/redoc", "/openapi.json"]
        )
        self._protected_methods = {"POST", "PUT", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next: Callable):
        if self._should_skip(request):
            return await call_next(request)

        # Buffer body so downstream can read it too
        request, body = await self._buffer_request_body(request)

        try:
            await self._verifier.verify_webhook(body, request.headers)
        except (MalformedEnvelope, UnsupportedSignatureType) as e:
            return self._bad_request(str(e))
        except VerificationError as e:
            logger.warning("Rejected webhook call to %s: %s", request.url.path, e)
            return self._unauthorized(str(e))
        except TrustError as e:
            return self._forbidden(str(e))
        except KeyFetchError as e:
            logger.error("Could not verify webhook call: %s", e)
            return self._bad_gateway("Unable to obtain trusted signing keys")

        request.state.webhook_identity = request.headers.get(IDENTITY_HEADER)
        request.state.webhook_verified = True
        return await call_next(request)

    def _should_skip(self, request: Request) -> bool:
        return (
            request.url.path in self._skip_paths
            or request.method.upper() not in self._protected_methods
        )

    async def _buffer_request_body(self, request: Request) -> tuple[Request, bytes]:
        body: bytes = await request.body()

        async def receive() -> dict:
            return {"type": "http.request", "body": body, "more_body": False}

        return Request(request.scope, receive), body

    def _json_error(self, status_code: int, detail: str) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": detail})

    def _bad_request(self, detail: str) -> JSONResponse:
        return self._json_error(status.HTTP_400_BAD_REQUEST, detail)

    def _unauthorized(self, detail: str) -> JSONResponse:
        return self._json_error(status.HTTP_401_UNAUTHORIZED, detail)

    def _forbidden(self, detail: str) -> JSONResponse:
        return self._json_error(status.HTTP_403_FORBIDDEN, detail)

    def _bad_gateway(self, detail: str) -> JSONResponse:
        return self._json_error(status.HTTP_502_BAD_GATEWAY, detail)
