"""Realtime subscription endpoints.

- GET /api/realtime?channel=...  one-shot authorization of requested channels
- WS  /ws/realtime               session WebSocket streaming channel events

Both share the AdmissionController under the realtime bucket.  The WebSocket
re-authorizes entitlement-scoped channels before every delivery, so a
subscriber whose entitlement is revoked stops receiving protected events at
the next message and is told so.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import FastAPI, Query, Request, WebSocket
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketDisconnect

from billing.exceptions import AdmissionDenied
from billing.realtime.channels import ChannelGrant, ChannelScope, parse_channel
from billing.security.admission import RouteClass
from billing.security.auth import resolve_identity, resolve_ws_identity
from billing.security.middleware import get_client_ip

logger = logging.getLogger(__name__)

_MAX_CHANNELS_PER_REQUEST = 32

# WebSocket close codes
_POLICY_VIOLATION = 1008
_TRY_AGAIN_LATER = 1013


def _grant_map(grants: list[ChannelGrant]) -> dict[str, str]:
    return {g.channel_id: "accepted" if g.allowed else "rejected" for g in grants}


async def realtime_authorize(request: Request, channels: list[str]) -> JSONResponse:
    services = request.app.state.services

    decision = await asyncio.to_thread(
        services.admission.allow, get_client_ip(request), RouteClass.REALTIME
    )
    if not decision.allowed:
        raise AdmissionDenied(decision)

    if not channels or len(channels) > _MAX_CHANNELS_PER_REQUEST:
        return JSONResponse({"error": "Invalid channel list"}, status_code=400, headers=decision.headers())

    identity = resolve_identity(request, services.settings)
    grants = await asyncio.to_thread(
        lambda: [services.authorizer.grant(identity, channel) for channel in channels]
    )
    status = 200 if all(g.allowed for g in grants) else 403
    return JSONResponse({"channels": _grant_map(grants)}, status_code=status, headers=decision.headers())


class _RealtimeSession:
    """One authenticated WebSocket connection."""

    def __init__(self, websocket: WebSocket, identity: str, client_ip: str) -> None:
        self.websocket = websocket
        self.identity = identity
        self.client_ip = client_ip
        self.services = websocket.app.state.services
        self.sub_id = ""

    async def run(self) -> None:
        broadcaster = self.services.broadcaster
        self.sub_id, queue = broadcaster.subscribe()
        receive_task = asyncio.ensure_future(self.websocket.receive_text())
        event_task = asyncio.ensure_future(queue.get())
        try:
            while True:
                done, _ = await asyncio.wait(
                    {receive_task, event_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if receive_task in done:
                    await self._on_message(receive_task.result())
                    receive_task = asyncio.ensure_future(self.websocket.receive_text())
                if event_task in done:
                    await self._deliver(event_task.result())
                    event_task = asyncio.ensure_future(queue.get())
        finally:
            receive_task.cancel()
            event_task.cancel()
            broadcaster.unsubscribe(self.sub_id)

    async def _on_message(self, raw: str) -> None:
        try:
            message: Any = json.loads(raw)
        except json.JSONDecodeError:
            message = None
        action = message.get("action") if isinstance(message, dict) else None
        channels = message.get("channels") if isinstance(message, dict) else None
        if (
            action not in ("subscribe", "unsubscribe")
            or not isinstance(channels, list)
            or not channels
            or len(channels) > _MAX_CHANNELS_PER_REQUEST
            or not all(isinstance(c, str) for c in channels)
        ):
            await self.websocket.send_json({"type": "error", "error": "invalid_message"})
            return

        if action == "unsubscribe":
            for channel in channels:
                self.services.broadcaster.detach(self.sub_id, channel)
            await self.websocket.send_json({"type": "unsubscribed", "channels": channels})
            return

        # Every subscribe attempt counts against the realtime bucket
        decision = await asyncio.to_thread(
            self.services.admission.allow, self.client_ip, RouteClass.REALTIME
        )
        if not decision.allowed:
            await self.websocket.send_json(
                {"type": "error", "error": "rate_limited", "retry_after": decision.retry_after}
            )
            return

        authorizer = self.services.authorizer
        grants = await asyncio.to_thread(
            lambda: [authorizer.grant(self.identity, channel) for channel in channels]
        )
        for grant in grants:
            if grant.allowed:
                self.services.broadcaster.attach(self.sub_id, grant.channel_id)
        await self.websocket.send_json({"type": "subscribed", "channels": _grant_map(grants)})

    async def _deliver(self, event: dict[str, Any]) -> None:
        channel = event.get("channel", "")
        broadcaster = self.services.broadcaster
        if channel not in broadcaster.channels(self.sub_id):
            return
        parsed = parse_channel(channel)
        if parsed is not None and parsed[0] is ChannelScope.ENTITLED:
            allowed = await asyncio.to_thread(self.services.authorizer.authorize, self.identity, channel)
            if not allowed:
                broadcaster.detach(self.sub_id, channel)
                logger.info("Realtime grant revoked: %s", channel)
                await self.websocket.send_json({"type": "revoked", "channel": channel})
                return
        await self.websocket.send_json(event)


async def realtime_websocket(websocket: WebSocket) -> None:
    services = websocket.app.state.services
    client_ip = get_client_ip(websocket)

    decision = await asyncio.to_thread(services.admission.allow, client_ip, RouteClass.REALTIME)
    if not decision.allowed:
        await websocket.close(code=_TRY_AGAIN_LATER)
        return

    identity = resolve_ws_identity(websocket, services.settings)
    if identity is None:
        await websocket.close(code=_POLICY_VIOLATION)
        return

    await websocket.accept()
    try:
        await _RealtimeSession(websocket, identity, client_ip).run()
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        detail = str(exc)
        token = websocket.query_params.get("token")
        if token:
            detail = detail.replace(token, "[REDACTED]")
        logger.warning("Realtime WebSocket error: %s", detail)


def register_realtime_routes(app: FastAPI) -> None:
    """Register realtime subscription endpoints on the FastAPI app."""

    @app.get("/api/realtime")
    async def realtime_subscribe(request: Request, channel: list[str] = Query(default=[])):
        """Authorize the requested channels for the session caller."""
        return await realtime_authorize(request, channel)

    @app.websocket("/ws/realtime")
    async def ws_realtime(websocket: WebSocket):
        """Session WebSocket streaming authorized channel events."""
        await realtime_websocket(websocket)

    logger.info("Realtime routes registered: /api/realtime, /ws/realtime")
