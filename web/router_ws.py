import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from fleet.broadcast import Subscription
from fleet.errors import FleetError
from fleet.events import ErrorMessage, ManualLocationRequest
from web.services import channel, simulator

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


async def _pump(websocket: WebSocket, sub: Subscription):
    """Forward the subscription to the socket; a failed send drops the subscriber."""
    try:
        async for event in sub:
            await websocket.send_text(event.model_dump_json())
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.info("Send to subscriber %s failed: %s", sub.handle, exc)
        return
    finally:
        sub.unsubscribe()
    # the channel dropped this subscriber; tell the client to reconnect
    logger.info("Closing socket of dropped subscriber %s", sub.handle)
    await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)


async def _receive(websocket: WebSocket, sub: Subscription):
    while True:
        raw = await websocket.receive_text()
        handle_client_message(raw, sub)


def handle_client_message(raw: str, sub: Subscription):
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        sub.offer(ErrorMessage(message="Malformed JSON"))
        return
    if not isinstance(data, dict) or data.get("type") != "drone-location-update":
        sub.offer(ErrorMessage(message=f"Unsupported message type: {data.get('type') if isinstance(data, dict) else None}"))
        return
    try:
        request = ManualLocationRequest.model_validate(data)
        simulator.request_manual_location_update(request.drone_id, request.location)
    except ValidationError as exc:
        sub.offer(ErrorMessage(message=f"Invalid location update: {exc.errors()[0]['msg']}"))
    except FleetError as exc:
        sub.offer(ErrorMessage(message=str(exc)))


@router.websocket("/ws")
async def events_ws(websocket: WebSocket, organization_id: Optional[int] = None):
    await websocket.accept()
    sub = channel.subscribe(organization_id)
    sender = asyncio.create_task(_pump(websocket, sub))
    receiver = asyncio.create_task(_receive(websocket, sub))
    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        sender.cancel()
        receiver.cancel()
        sub.unsubscribe()
    if receiver in done:
        exc = receiver.exception()
        if exc is not None and not isinstance(exc, WebSocketDisconnect):
            raise exc
