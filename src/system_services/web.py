from __future__ import annotations

import json
from typing import Callable, Iterable

import discord
from aiohttp import web

from system_services.services.dispatch_service import EventDispatcher, WebhookEvent
from system_services.services.logger_service import LoggerService
from system_services.services.webhook_verifier import SIGNATURE_HEADER, verify_signature

WEBHOOK_ROUTE = "/render-webhook"


def create_web_app(
    *,
    secret: str | None,
    dispatcher: EventDispatcher,
    guilds: Callable[[], Iterable[discord.Guild]],
    logger: LoggerService,
) -> web.Application:
    app = web.Application()
    if not secret:
        logger.warn_once(
            "webhook.insecure",
            "webhook.verification_disabled",
            reason="RENDER_WEBHOOK_SECRET is not set; every request will be accepted",
        )

    async def health(_: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "guilds": len(list(guilds())), "verification": bool(secret)})

    async def render_webhook(request: web.Request) -> web.Response:
        raw = await request.read()
        if not verify_signature(secret, raw, request.headers.get(SIGNATURE_HEADER)):
            logger.log("webhook.rejected", remote=request.remote, body_len=len(raw))
            return web.Response(status=403, text="Invalid signature")

        try:
            payload = json.loads(raw.decode("utf-8"))
        except ValueError:
            return web.Response(status=400, text="Invalid JSON")
        if not isinstance(payload, dict):
            return web.Response(status=400, text="Invalid JSON")

        try:
            event = WebhookEvent.from_payload(payload)
            logger.log("webhook.received", event_type=event.type, service_id=event.service_id)
            await dispatcher.dispatch(event, list(guilds()))
        except Exception as exc:  # noqa: BLE001
            logger.warn("webhook.internal_error", error=repr(exc))
            return web.Response(status=500, text="Internal error")
        return web.Response(status=200, text="OK")

    app.router.add_get("/health", health)
    app.router.add_post(WEBHOOK_ROUTE, render_webhook)
    return app
