import asyncio
import contextlib
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from prtg_connector.dependencies.prtg_datasource import get_datasource
from prtg_connector.schemas.frame_schemas import FrameSchema
from prtg_connector.schemas.query_schemas import StreamRequestSchema, StreamStatusSchema
from prtg_connector.services.datasource import PrtgDatasource
from prtg_connector.services.stream_manager import StreamQuotaError, StreamRequestError, SubscribeStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stream", tags=["Stream"])

datasource_dependency = Depends(get_datasource)


@router.post("/subscribe", response_model=StreamStatusSchema)
async def subscribe(payload: StreamRequestSchema, datasource: PrtgDatasource = datasource_dependency):
    result = datasource.stream_manager.subscribe(payload.path, payload.data)
    return StreamStatusSchema(status=result)


@router.post("/publish", response_model=StreamStatusSchema, status_code=status.HTTP_403_FORBIDDEN)
async def publish(payload: StreamRequestSchema, datasource: PrtgDatasource = datasource_dependency):
    result = datasource.stream_manager.publish(payload.path, payload.data)
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content=StreamStatusSchema(status=result, message="this datasource is read-only").model_dump(),
    )


@router.websocket("/ws")
async def stream_socket(websocket: WebSocket):
    """
    Live stream over a websocket.

    The first message is ``{"path": ..., "data": {...}}``. After a successful
    subscribe, frames are pushed until the client disconnects. Sockets that
    send the same stream data share one poller.
    """
    datasource: PrtgDatasource = websocket.app.state.datasource
    manager = datasource.stream_manager
    await websocket.accept()

    try:
        request = StreamRequestSchema.model_validate(await websocket.receive_json())
    except (ValidationError, ValueError) as exc:
        logger.warning("Rejected stream request: %s", exc)
        await websocket.send_json({"status": SubscribeStatus.PERMISSION_DENIED})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    except WebSocketDisconnect:
        return

    result = manager.subscribe(request.path, request.data)
    await websocket.send_json({"status": result})
    if result is not SubscribeStatus.OK:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    async def send(frame: FrameSchema) -> None:
        await websocket.send_json({"frame": frame.model_dump(mode="json")})

    runner = asyncio.create_task(manager.run(request.data, send))
    watcher = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({runner, watcher}, return_when=asyncio.FIRST_COMPLETED)
        if runner in done and not runner.cancelled():
            exc = runner.exception()
            if isinstance(exc, (StreamRequestError, StreamQuotaError)):
                logger.warning("Stream run rejected: %s", exc)
                await websocket.send_json({"status": SubscribeStatus.PERMISSION_DENIED, "message": str(exc)})
            elif exc is not None:
                logger.error("Stream run failed: %s", exc)
    finally:
        for task in (runner, watcher):
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            elif not task.cancelled():
                task.exception()
        if websocket.application_state is not WebSocketState.DISCONNECTED:
            with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                await websocket.close()


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
