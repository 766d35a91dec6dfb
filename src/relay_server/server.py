"""FastAPI relay between chat clients and the streaming model gateway."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

import httpx
from fastapi import FastAPI, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from plug_chat.config import RelaySettings, load_config

from .prompt import context_counts, render_system_prompt

logger = logging.getLogger(__name__)

RATE_LIMITED = "Rate limit exceeded. Please try again in a moment."
CREDITS_DEPLETED = "AI credits depleted. Please add funds."
UNAVAILABLE = "AI service temporarily unavailable"


# -----------------------------
# Pydantic request models
# -----------------------------
class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatTurnRequest(BaseModel):
    messages: List[ChatMessage] = Field(..., min_length=1)
    context: Optional[Dict[str, Any]] = None


# -----------------------------
# Utilities
# -----------------------------
def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status)


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _upstream_payload(settings: RelaySettings, req: ChatTurnRequest) -> Dict[str, Any]:
    return {
        "model": settings.model,
        "messages": [{"role": "system", "content": render_system_prompt(req.context)}]
        + [m.model_dump() for m in req.messages],
        "stream": True,
    }


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    upstream: Optional[httpx.AsyncClient] = None,
    settings: Optional[RelaySettings] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    settings = settings or RelaySettings.from_config(cfg)
    owns_upstream = upstream is None
    upstream = upstream or httpx.AsyncClient(timeout=httpx.Timeout(settings.timeout, connect=5.0))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            # injected clients belong to the caller
            if owns_upstream:
                await upstream.aclose()

    app = FastAPI(title="Plug Chat Relay", version="0.1.0", lifespan=lifespan)
    app.state.upstream = upstream
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "model": settings.model,
            "upstream_configured": bool(settings.api_key),
        }

    @app.post("/chat")
    async def chat(req: ChatTurnRequest, authorization: Optional[str] = Header(default=None)):
        if _bearer(authorization) is None:
            return _error(401, "Unauthorized")

        api_key = settings.api_key
        if not api_key:
            logger.error("%s is not configured", settings.api_key_env)
            return _error(500, f"{settings.api_key_env} is not configured")

        logger.info("relay context loaded: %s", context_counts(req.context))

        request = upstream.build_request(
            "POST",
            settings.upstream_url,
            json=_upstream_payload(settings, req),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        )
        try:
            response = await upstream.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("upstream request failed: %s", e)
            return _error(500, UNAVAILABLE)

        if response.status_code != 200:
            body = await response.aread()
            await response.aclose()
            if response.status_code == 429:
                return _error(429, RATE_LIMITED)
            if response.status_code == 402:
                return _error(402, CREDITS_DEPLETED)
            logger.error("upstream error %s: %s", response.status_code, body[:500])
            return _error(500, UNAVAILABLE)

        async def relay() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_bytes():
                    yield chunk
            except httpx.HTTPError as e:
                logger.warning("upstream stream broke off: %s", e)
            finally:
                await response.aclose()

        return StreamingResponse(relay(), media_type="text/event-stream")

    return app
