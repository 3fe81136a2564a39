import asyncio
import json
import os
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from .bot import ZapBot
from .models import ChatTurn
from .utils import json_log

router = APIRouter()

VERSION = "1.0.0"

# WebSocket close code for policy violations (bad token)
WS_POLICY_VIOLATION = 1008


def check_auth(token: Optional[str]):
    expected = os.getenv("ADMIN_PASSWORD")
    if expected and token != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_bot(request: Request) -> ZapBot:
    return request.app.state.bot


class PlaygroundTurn(BaseModel):
    role: str
    content: str


class PlaygroundRequest(BaseModel):
    history: List[PlaygroundTurn] = []
    message: str


@router.websocket("/ws")
async def dashboard_socket(websocket: WebSocket, token: Optional[str] = Query(default=None)):
    """
    Live dashboard channel. Outbound frames are {"event", "data"}; inbound
    frames carry the commands update_config, restart_client, disconnect_session.
    """
    expected = os.getenv("ADMIN_PASSWORD")
    if expected and token != expected:
        await websocket.close(code=WS_POLICY_VIOLATION)
        return
    await websocket.accept()
    bot: ZapBot = websocket.app.state.bot

    queue, unsubscribe = bot.broadcaster.subscribe()
    # Initial snapshot goes through the same queue so nothing published
    # meanwhile can overtake it.
    for message in bot.initial_events():
        queue.put_nowait(message)
    json_log("observer_connected", observers=bot.broadcaster.observer_count)

    async def pump():
        while True:
            message = await queue.get()
            await websocket.send_json(message)

    sender = asyncio.create_task(pump())
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                json_log("observer_bad_frame", raw=raw[:200])
                continue
            if not isinstance(frame, dict):
                continue
            await bot.handle_command(frame.get("event"), frame.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        json_log("observer_disconnected", observers=bot.broadcaster.observer_count)


@router.get("/api/config")
async def get_config(request: Request, token: Optional[str] = Query(default=None)):
    check_auth(token)
    return JSONResponse(get_bot(request).config.to_json())


@router.post("/api/config")
async def post_config(request: Request, token: Optional[str] = Query(default=None)):
    check_auth(token)
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid_json")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="config must be a JSON object")
    try:
        config = get_bot(request).update_config(payload)
    except ValidationError as e:
        return JSONResponse({"ok": False, "errors": json.loads(e.json())}, status_code=422)
    return JSONResponse({"ok": True, "config": config.to_json()})


@router.get("/api/stats")
async def get_stats(request: Request, token: Optional[str] = Query(default=None)):
    check_auth(token)
    return JSONResponse(get_bot(request).stats.snapshot().to_json())


@router.get("/api/status")
async def get_status(request: Request, token: Optional[str] = Query(default=None)):
    check_auth(token)
    bot = get_bot(request)
    return JSONResponse({
        "status": bot.status.value,
        "qr": bot.qr,
        "queueDepth": bot.queue.depth,
        "aiEnabled": bot.responder is not None,
    })


@router.post("/api/restart")
async def restart(request: Request, token: Optional[str] = Query(default=None)):
    check_auth(token)
    await get_bot(request).restart_client()
    return JSONResponse({"ok": True})


@router.post("/api/disconnect")
async def disconnect(request: Request, token: Optional[str] = Query(default=None)):
    check_auth(token)
    await get_bot(request).disconnect_session()
    return JSONResponse({"ok": True})


@router.post("/api/playground")
async def playground(body: PlaygroundRequest, request: Request, token: Optional[str] = Query(default=None)):
    check_auth(token)
    history = [ChatTurn(role=t.role, content=t.content) for t in body.history]
    return JSONResponse(await get_bot(request).playground_reply(history, body.message))


@router.post("/webhook")
async def webhook(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        raw = await request.body()
        return JSONResponse({"ok": False, "error": "invalid_json", "raw": raw.decode("utf-8", "ignore")}, status_code=400)

    bot = get_bot(request)
    if bot.session is None:
        return JSONResponse({"ok": False, "error": "whatsapp_not_configured"}, status_code=503)
    handled = await bot.session.dispatch(payload)
    return JSONResponse({"ok": True, "handled": handled})


@router.get("/health")
async def health():
    return {"ok": True, "version": VERSION}
