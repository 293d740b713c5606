"""FastAPI server: HTTP control endpoints and a WebSocket status feed."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from quill_local.errors import QuillError, UnknownModelError
from quill_local.service import TextPredictionService
from quill_local.types import (
    ModelInfo,
    ModelRequest,
    PredictRequest,
    PredictResponse,
    StatusMessage,
    ToggleRequest,
)

logger = logging.getLogger(__name__)

# Per-connection backlog; events beyond it are dropped for that client.
_MAX_PENDING = 256


def create_app(service: TextPredictionService) -> FastAPI:
    """Build and return a FastAPI application wired to *service*."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service.register()
        await service.initialize_on_startup()
        try:
            yield
        finally:
            service.close()
            service.manager.dispose()

    app = FastAPI(title="quill-local", docs_url=None, redoc_url=None, lifespan=lifespan)

    # -- HTTP endpoints -----------------------------------------------------

    @app.get("/status")
    def get_status() -> StatusMessage:
        return service.get_status()

    @app.get("/models")
    def get_models() -> list[ModelInfo]:
        manager = service.manager
        return [
            ModelInfo(
                id=m.id,
                display_name=m.display_name,
                size_bytes=m.size_bytes,
                downloaded=manager.is_model_downloaded(m.id),
            )
            for m in manager.available_models()
        ]

    @app.post("/enabled")
    async def set_enabled(body: ToggleRequest) -> StatusMessage:
        return await service.set_enabled(body.enabled)

    @app.post("/gpu")
    async def set_gpu(body: ToggleRequest) -> StatusMessage:
        return await service.set_gpu_enabled(body.enabled)

    @app.post("/model")
    def set_model(body: ModelRequest) -> StatusMessage:
        try:
            return service.set_model(body.model_id)
        except UnknownModelError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from None
        except QuillError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from None

    @app.post("/download/cancel")
    def cancel_download() -> StatusMessage:
        service.cancel_download()
        return service.get_status()

    @app.post("/predict")
    async def predict(body: PredictRequest) -> PredictResponse:
        return PredictResponse(suggestion=await service.predict(body.text))

    # -- WebSocket endpoint -------------------------------------------------

    @app.websocket("/events")
    async def events(ws: WebSocket) -> None:
        await ws.accept()

        queue: asyncio.Queue[BaseModel] = asyncio.Queue(maxsize=_MAX_PENDING)

        def enqueue(message: BaseModel) -> None:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Event queue full, dropping %s", message)

        remove = service.add_listener(enqueue)
        try:
            # Replay current state so late subscribers start in sync.
            await ws.send_json(service.get_status().model_dump())

            receiver = asyncio.ensure_future(ws.receive())
            try:
                while True:
                    getter = asyncio.ensure_future(queue.get())
                    done, _ = await asyncio.wait(
                        {getter, receiver}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if receiver in done:
                        if receiver.result()["type"] == "websocket.disconnect":
                            getter.cancel()
                            return
                        receiver = asyncio.ensure_future(ws.receive())
                    if getter in done:
                        await ws.send_json(getter.result().model_dump())
                    else:
                        getter.cancel()
            finally:
                receiver.cancel()
        except WebSocketDisconnect:
            pass
        finally:
            remove()

    return app
