from __future__ import annotations

import json
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, Request, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from sessiongate.api.schemas import (
    ActiveSessionResponse,
    Envelope,
    ErrorBody,
    HeartbeatResponse,
    LogoutResponse,
    RefreshResponse,
    SessionInfo,
    VerifyResponse,
)
from sessiongate.logging import get_logger, mask_id
from sessiongate.service.errors import ServiceError
from sessiongate.service.guard import SESSION_CLOSE_CODE, AuthContext
from sessiongate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_metadata(headers, client_host: Optional[str]) -> Dict[str, Any]:
    return {
        "user_agent": headers.get("user-agent", ""),
        "ip_address": client_host or "",
        "device_info": headers.get("x-device-info", ""),
    }


def _error_envelope(exc: ServiceError) -> dict:
    return Envelope(
        status="error",
        error=ErrorBody(code=exc.error_code, message=exc.message, details=exc.detail or None),
    ).model_dump()


async def get_principal(
    request: Request,
    x_auth_token: Optional[str] = Header(None, alias="X-Auth-Token"),
    x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
) -> AuthContext:
    """Resolve the caller from the token/session pair.

    Headers win; the ``token`` and ``sessionId`` query parameters are accepted
    for clients that cannot set headers.
    """
    token = x_auth_token or request.query_params.get("token")
    session_id = x_session_id or request.query_params.get("sessionId")
    runtime = get_runtime()
    return await runtime.guard.authorize(token, session_id)


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(principal: AuthContext = Depends(get_principal)):
    session = SessionInfo.from_session(principal.session) if principal.session else None
    return Envelope(
        status="ok", data=VerifyResponse(user_id=principal.user_id, session=session)
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, principal: AuthContext = Depends(get_principal)):
    """Swap the current session for a fresh one and mint a matching token."""
    runtime = get_runtime()
    metadata = dict(principal.session.metadata) if principal.session else {}
    client = _client_metadata(request.headers, request.client.host if request.client else None)
    metadata.update({key: value for key, value in client.items() if value})
    grant = await runtime.sessions.create_session(principal.user_id, metadata)
    token = runtime.tokens.issue(principal.user_id, grant.session_id)
    await runtime.sockets.end_sessions(
        principal.user_id, principal.session_id, reason="session_refreshed"
    )
    logger.info(
        "session_refreshed",
        user_id=principal.user_id,
        old_session_id=mask_id(principal.session_id),
        session_id=mask_id(grant.session_id),
    )
    return Envelope(
        status="ok",
        data=RefreshResponse(
            token=token, session_id=grant.session_id, expires_in=grant.expires_in
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    removed = await runtime.sessions.remove_session(principal.user_id, principal.session_id)
    closed = await runtime.sockets.end_sessions(
        principal.user_id, principal.session_id, reason="logout"
    )
    return Envelope(
        status="ok", data=LogoutResponse(removed=removed, connections_closed=closed)
    )


@router.post("/sessions/heartbeat", response_model=Envelope, tags=["sessions"])
async def heartbeat(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    updated = await runtime.sessions.update_last_activity(principal.user_id)
    return Envelope(status="ok", data=HeartbeatResponse(updated=updated))


@router.get("/sessions/active", response_model=Envelope, tags=["sessions"])
async def active_session(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    session = await runtime.sessions.get_active_session(principal.user_id)
    return Envelope(
        status="ok",
        data=ActiveSessionResponse(
            session=SessionInfo.from_session(session) if session else None
        ),
    )


@router.websocket("/ws")
async def websocket_session(ws: WebSocket):
    """Authenticated realtime channel.

    The first frame must be ``{"token": ..., "session_id": ...}``. Every later
    frame is revalidated before it is handled.
    """
    runtime = get_runtime()
    await ws.accept()
    connection_id = str(uuid4())
    try:
        handshake = await ws.receive_json()
        try:
            ctx = await runtime.sockets.authenticate(
                connection_id,
                ws,
                handshake,
                metadata=_client_metadata(ws.headers, ws.client.host if ws.client else None),
            )
        except ServiceError as exc:
            logger.warning("socket_handshake_rejected", error_code=exc.error_code)
            await ws.send_json(_error_envelope(exc))
            await ws.close(code=SESSION_CLOSE_CODE)
            return
        await ws.send_json(
            {
                "type": "authenticated",
                "data": {"user_id": ctx.user_id, "session_id": ctx.session_id},
            }
        )

        while ws.application_state == WebSocketState.CONNECTED:
            message = await ws.receive_json()
            try:
                await runtime.sockets.revalidate(connection_id)
            except ServiceError as exc:
                if exc.status_code == 401:
                    # Connection already ended by the guard
                    return
                await ws.send_json(_error_envelope(exc))
                continue
            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "heartbeat":
                updated = await runtime.sessions.update_last_activity(ctx.user_id)
                await ws.send_json({"type": "heartbeat_ack", "data": {"updated": updated}})
            else:
                await ws.send_json({"type": "ack", "data": {"type": kind}})
    except WebSocketDisconnect:
        return
    except json.JSONDecodeError:
        logger.warning("websocket_invalid_json", connection_id=connection_id)
        error_env = Envelope(
            status="error",
            error=ErrorBody(code="invalid_json", message="Invalid JSON in message"),
        )
        await ws.send_json(error_env.model_dump())
        await ws.close(code=1003)
    finally:
        runtime.sockets.disconnect(connection_id)
