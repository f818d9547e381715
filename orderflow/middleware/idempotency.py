"""
Orderflow - Idempotency Key Middleware

Order placement is retried by flaky clients; one Idempotency-Key places at
most one order:
  - First request   → place the order, remember the response and a fingerprint
                      of the order payload in Redis for 24h
  - Same key, same order      → replay the remembered response
  - Same key, different order → 409, nothing is placed
If Redis is unreachable the order is placed without replay protection.
"""
import hashlib
import json
import logging

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from orderflow.core.config import get_settings
from orderflow.core.redis_client import get_redis

settings = get_settings()
logger = logging.getLogger(__name__)

IDEMPOTENCY_PREFIX = "orderflow:order-placement:"
ORDER_PLACEMENT_PATHS = {"/orders", "/orders/"}


def is_order_placement(request: Request) -> bool:
    return request.method == "POST" and request.url.path in ORDER_PLACEMENT_PATHS


def order_fingerprint(raw_body: bytes) -> str:
    """Hash of the order payload, insensitive to key order and whitespace."""
    try:
        canonical = json.dumps(json.loads(raw_body), sort_keys=True, separators=(",", ":")).encode()
    except ValueError:
        canonical = raw_body
    return hashlib.sha256(canonical).hexdigest()


class IdempotencyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        idem_key = request.headers.get("Idempotency-Key")
        if not idem_key or not is_order_placement(request):
            return await call_next(request)

        fingerprint = order_fingerprint(await request.body())
        cache_key = f"{IDEMPOTENCY_PREFIX}{idem_key}"
        redis = get_redis()

        try:
            cached = await redis.get(cache_key)
        except Exception:
            logger.warning("Idempotency cache unavailable; placing order for key %s without replay protection", idem_key)
            return await call_next(request)

        if cached:
            placed = json.loads(cached)
            if placed.get("fingerprint") != fingerprint:
                logger.warning("Idempotency-Key %s reused with a different order payload", idem_key)
                return JSONResponse(
                    content={"detail": "This Idempotency-Key was already used to place a different order."},
                    status_code=status.HTTP_409_CONFLICT,
                )
            order_number = placed["body"].get("order_number") if isinstance(placed["body"], dict) else None
            logger.info("Replaying placement of order %s for Idempotency-Key %s", order_number, idem_key)
            return JSONResponse(
                content=placed["body"],
                status_code=placed["status_code"],
                headers={"X-Idempotency-Replay": "true"},
            )

        response = await call_next(request)
        body_bytes = b"".join([chunk async for chunk in response.body_iterator])

        # Server errors are not remembered so the client can retry with the same key.
        if response.status_code < 500:
            try:
                body = json.loads(body_bytes)
            except ValueError:
                body = body_bytes.decode("utf-8", errors="replace")
            try:
                await redis.setex(
                    cache_key,
                    settings.IDEMPOTENCY_KEY_TTL_SECONDS,
                    json.dumps({"fingerprint": fingerprint, "body": body, "status_code": response.status_code}),
                )
            except Exception:
                logger.warning("Could not remember order placement for Idempotency-Key %s", idem_key)

        return Response(
            content=body_bytes,
            status_code=response.status_code,
            media_type=response.media_type,
            headers=dict(response.headers),
        )
