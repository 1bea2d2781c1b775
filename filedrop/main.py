from contextlib import asynccontextmanager
from typing import List, Optional, Union

import uvicorn
from fastapi import (
    APIRouter, Depends, FastAPI, File, HTTPException, Request, UploadFile, WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger
from starlette.datastructures import UploadFile as StarletteUploadFile

from .deps import AuthGate, get_intake, get_query, require_auth, require_principal
from .errors import FileDropError, Unauthorized
from .index import MetadataIndex, build_index
from .intake import UploadIntake
from .keepalive import KeepAlive
from .logger import setup_logging
from .notify import PING_STATUS, Notifier, PushPublisher, WebSocketHub
from .query import FileQuery
from .schemas import UploadRecord, UploadResponse
from .settings import Settings, get_settings
from .storage import BlobStore, build_blob_store

router = APIRouter()


@router.post("/upload", response_model=UploadResponse, dependencies=[Depends(require_auth)])
async def upload(
    file: Union[UploadFile, str, None] = File(None),
    intake: UploadIntake = Depends(get_intake),
):
    # a plain form field named "file" carries no upload
    if not isinstance(file, StarletteUploadFile):
        raise HTTPException(status_code=400, detail="No file uploaded")
    record = await intake.intake(file, file.filename, file.content_type)
    return UploadResponse(**record.model_dump())


@router.get("/files", response_model=List[UploadRecord], dependencies=[Depends(require_auth)])
async def files_list(query: FileQuery = Depends(get_query)):
    return await query.list_all()


@router.get("/download/{key:path}", dependencies=[Depends(require_auth)])
async def download(key: str, request: Request, query: FileQuery = Depends(get_query)):
    record = await query.lookup(key)
    logger.info(f"Download of {key} requested")
    return await request.app.state.blob_store.response(record)


@router.get("/ping")
async def ping(request: Request):
    host = request.client.host if request.client else "unknown"
    message = f"Ping received from {host}"
    logger.info(message)
    request.app.state.notifier.publish(PING_STATUS, {"message": message})
    return PlainTextResponse("OK")


@router.get("/secure")
def secure(principal: str = Depends(require_principal)):
    return {"message": "Access granted", "principal": principal}


@router.get("/health")
def health():
    return {"status": "ok"}


@router.websocket("/ws")
async def events(websocket: WebSocket):
    hub: WebSocketHub = websocket.app.state.hub
    await hub.connect(websocket)
    try:
        while True:
            # clients only listen; inbound frames are ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket)


async def handle_filedrop_error(request: Request, exc: FileDropError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
        detail = exc.public_detail
    else:
        logger.info(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
        detail = exc.message
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": detail}, headers=headers)


def create_app(
    settings: Optional[Settings] = None,
    *,
    blob_store: Optional[BlobStore] = None,
    index: Optional[MetadataIndex] = None,
) -> FastAPI:
    """Build the application with its own collaborators.

    Every service object lives on ``app.state`` and is created in the
    lifespan, so two apps never share an index or a notifier.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL, settings.LOG_DIR)

        store = blob_store or build_blob_store(settings)
        store.initialize()
        metadata = index or build_index(settings)
        await metadata.load()

        notifier = Notifier(settings.NOTIFY_QUEUE_SIZE)
        hub = WebSocketHub()
        notifier.subscribe(hub)
        if settings.PUSH_ENDPOINT:
            notifier.subscribe(PushPublisher(settings.PUSH_ENDPOINT, settings.PUSH_TOPIC, settings.PUSH_TOKEN))
        await notifier.start()

        app.state.settings = settings
        app.state.blob_store = store
        app.state.index = metadata
        app.state.notifier = notifier
        app.state.hub = hub
        app.state.auth_gate = AuthGate(settings.API_KEY, settings.API_KEY_HEADER, settings.AUTH_ENABLED)
        app.state.intake = UploadIntake(
            store,
            metadata,
            notifier,
            allowed_extensions=settings.ALLOWED_EXTENSIONS,
            write_timeout=settings.BLOB_WRITE_TIMEOUT,
        )
        app.state.query = FileQuery(metadata)

        keepalive = None
        if settings.KEEPALIVE_URL:
            keepalive = KeepAlive(
                settings.KEEPALIVE_URL,
                notifier,
                settings.KEEPALIVE_MIN_MINUTES,
                settings.KEEPALIVE_MAX_MINUTES,
            )
            keepalive.start()

        logger.info(f"Serving uploads with {store.name} storage and {settings.INDEX_BACKEND} index")
        yield

        if keepalive is not None:
            await keepalive.stop()
        await notifier.stop()
        await metadata.close()

    app = FastAPI(title="filedrop", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(FileDropError, handle_filedrop_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
