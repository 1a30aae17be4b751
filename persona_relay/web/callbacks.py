from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..discord.common import AgentCallback
from ..errors import AuthError, NotFoundError
from ..registry import BotRegistry

logger = logging.getLogger("persona_relay")

CALLBACK_PATH = "/webhook/agent-response"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _check_authorization(header: str | None, secret: str) -> None:
    if not secret or not header:
        raise AuthError("missing credentials")
    expected = f"Bearer {secret}"
    if not hmac.compare_digest(header.encode("utf-8"), expected.encode("utf-8")):
        raise AuthError("token mismatch")


def _missing_fields(payload: dict[str, Any]) -> list[str]:
    missing: list[str] = []
    for key in ("channelId", "personaName"):
        if not str(payload.get(key) or "").strip():
            missing.append(key)
    response = payload.get("response")
    if not isinstance(response, str) or not response.strip():
        missing.append("response")
    return missing


def _lookup_bot(registry: BotRegistry, persona_name: str) -> Any:
    bot = registry.get(persona_name)
    if bot is None:
        raise NotFoundError(persona_name)
    return bot


def build_callback_app(registry: BotRegistry, secret: str) -> FastAPI:
    app = FastAPI(title="Persona Relay Callbacks", docs_url=None, redoc_url=None, openapi_url=None)

    @app.post(CALLBACK_PATH)
    async def agent_response(request: Request) -> JSONResponse:
        try:
            payload = await request.json()
        except ValueError:
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")
        if not isinstance(payload, dict):
            return _error(status.HTTP_400_BAD_REQUEST, "JSON body must be an object")

        try:
            _check_authorization(request.headers.get("authorization"), secret)
        except AuthError as exc:
            client = request.client.host if request.client else "-"
            logger.warning("[callback.auth] rejected client=%s reason=%s", client, exc)
            return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

        missing = _missing_fields(payload)
        if missing:
            return _error(status.HTTP_400_BAD_REQUEST, f"Missing required fields: {', '.join(missing)}")

        callback = AgentCallback.from_payload(payload)
        try:
            bot = _lookup_bot(registry, callback.persona_name)
        except NotFoundError:
            logger.warning("[callback.route] unknown persona=%s", callback.persona_name)
            return _error(status.HTTP_404_NOT_FOUND, "Bot not found")

        try:
            delivered = await bot.handle_async_response(callback)
        except Exception as exc:
            logger.exception("[callback.failed] persona=%s channel=%s: %s", callback.persona_name, callback.channel_id, exc)
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

        if not delivered:
            logger.warning(
                "[callback.route] persona=%s channel=%s accepted but not delivered",
                callback.persona_name,
                callback.channel_id,
            )
        return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True})

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse(
            content={
                "status": "running",
                "personas": registry.names(),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    return app
