# backend/tapecapture/main.py
from fastapi import FastAPI, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel
import logging, os

from .config import Settings, get_settings
from .db import init_db, make_engine
from .errors import CaptureError, DeviceUnavailableError, JobNotFoundError
from .launcher import EmulatedCaptureLauncher, RealCaptureLauncher
from .persistence import PersistenceAdapter
from .probe import DeviceProbe
from .registry import JobRegistry, DEFAULT_MAX_AGE_MS
from .state import is_terminal
from .watchdog import Watchdog

logger = logging.getLogger(__name__)

app = FastAPI(title="Tape Capture Service (dev)")

# --- CORS for development ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # open for dev; lock down in prod
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class StartCaptureRequest(SQLModel):
    collection_id: int
    collection_name: str


def build_registry(settings: Settings, engine: Engine) -> JobRegistry:
    return JobRegistry(
        persistence=PersistenceAdapter(engine),
        probe=DeviceProbe(settings.capture_command + ("--status",), timeout=settings.probe_timeout),
        launcher=RealCaptureLauncher(settings.capture_command),
        emulated_launcher=EmulatedCaptureLauncher() if settings.emulation_enabled else None,
        watchdog=Watchdog(settings.max_runtime),
        collections_dir=settings.collections_dir,
        cancel_grace=settings.cancel_grace,
    )


@app.on_event("startup")
async def startup():
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # tests and embedding apps may inject their own registry
    if getattr(app.state, "registry", None) is None:
        engine = make_engine(settings.database_url)
        init_db(engine)
        os.makedirs(settings.collections_dir, exist_ok=True)
        app.state.registry = build_registry(settings, engine)
    await app.state.registry.initialize()


@app.on_event("shutdown")
async def shutdown():
    registry = getattr(app.state, "registry", None)
    if registry is not None:
        await registry.shutdown()


def get_registry(request: Request) -> JobRegistry:
    return request.app.state.registry


@app.post("/captures")
async def start_capture(body: StartCaptureRequest, registry: JobRegistry = Depends(get_registry)):
    try:
        job_id = await registry.start_capture(body.collection_id, body.collection_name)
    except DeviceUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except (CaptureError, OSError) as e:
        logger.exception("start_capture failed for collection %s", body.collection_id)
        raise HTTPException(status_code=500, detail=f"Capture failed to start: {e}")
    return {"job_id": job_id}


@app.get("/captures")
def list_captures(registry: JobRegistry = Depends(get_registry)):
    return registry.get_all_jobs()


@app.post("/captures/cleanup")
async def cleanup_captures(max_age_ms: int = DEFAULT_MAX_AGE_MS, registry: JobRegistry = Depends(get_registry)):
    removed = await registry.cleanup_old_jobs(max_age_ms)
    return {"removed": removed}


@app.get("/captures/{job_id}")
def get_capture(job_id: str, registry: JobRegistry = Depends(get_registry)):
    try:
        return registry.get_job_or_raise(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/captures/{job_id}/logs")
def capture_logs(job_id: str, registry: JobRegistry = Depends(get_registry)):
    try:
        return registry.get_job_logs(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/captures/{job_id}/cancel")
async def cancel_capture(job_id: str, registry: JobRegistry = Depends(get_registry)):
    return {"cancelled": await registry.cancel_job(job_id)}


@app.get("/collections/{collection_id}/captures")
def collection_captures(collection_id: int, registry: JobRegistry = Depends(get_registry)):
    return registry.get_jobs_by_collection(collection_id)


@app.get("/devices")
async def list_devices(registry: JobRegistry = Depends(get_registry)):
    return await registry.list_devices()


@app.websocket("/capture-progress")
async def capture_progress(websocket: WebSocket):
    await websocket.accept()
    job_id = websocket.query_params.get("jobId") or websocket.query_params.get("job_id")
    if not job_id:
        await websocket.send_json({"error": "missing jobId query param"})
        await websocket.close(code=1008)
        return

    registry: JobRegistry = websocket.app.state.registry
    try:
        # subscribe before reading the snapshot so nothing falls in between
        async with registry.events.stream() as updates:
            job = registry.get_job(job_id)
            if job is None:
                await websocket.send_json({"error": "job_not_found"})
                await websocket.close()
                return

            await websocket.send_json(job.model_dump(mode="json"))
            if not is_terminal(job.status):
                async for update in updates:
                    if update.id != job_id:
                        continue
                    await websocket.send_json(update.model_dump(mode="json"))
                    if is_terminal(update.status):
                        break
            await websocket.close()

    except WebSocketDisconnect:
        logger.info("capture-progress client for %s disconnected", job_id)
