import json
import logging

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect

from relay.services.session import RelaySession

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/healthz")
async def health(request: Request) -> dict[str, str | int]:
    """Report readiness, open connections and the configured model."""
    state = request.app.state
    return {
        "status": "ok",
        "connections": len(state.connections),
        "model": state.options.model,
    }


@router.websocket("/ws")
async def relay_socket(websocket: WebSocket) -> None:
    """Bidirectional chat channel: one relay session per socket."""
    state = websocket.app.state
    connection_id = await state.connections.connect(websocket)
    session = RelaySession(
        connection_id,
        store=state.store,
        llm=state.llm,
        connections=state.connections,
        options=state.options,
    )
    await session.open()
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                await state.connections.send(connection_id, "error", "Frames must be JSON")
                continue
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await state.connections.send(connection_id, "error", "Frames must be JSON")
                continue
            await session.dispatch(frame)
    except WebSocketDisconnect:
        pass
    finally:
        state.connections.disconnect(connection_id)
        await session.close()
