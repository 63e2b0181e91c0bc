import logging
import threading
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .errors import (
    AllocationConflict,
    InsufficientModels,
    InvalidAllocationRequest,
    InvalidJobPayload,
    PresetNotFound,
)
from .logging_utils import setup_logging
from .schemas import (
    AllocationCreate,
    AllocationOut,
    ExamplesCreate,
    ExamplesOut,
    JobOut,
    ModelOut,
    UsageOut,
)
from .service import Services, build_services
from .settings import settings

setup_logging(settings.log_level)
log = logging.getLogger("api")

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # services are built on first use, so there may be nothing to close
    services = getattr(app.state, "services", None)
    if services is not None:
        services.close()
        log.info("services closed", extra={"event": "shutdown"})

app = FastAPI(title="presetgen API", version="0.1.0", lifespan=lifespan)

_services_lock = threading.Lock()

def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        with _services_lock:
            services = getattr(request.app.state, "services", None)
            if services is None:
                services = build_services(settings)
                request.app.state.services = services
    return services

@app.middleware("http")
async def request_id_mw(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    response: Response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

@app.exception_handler(PresetNotFound)
def preset_not_found(request: Request, exc: PresetNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(InsufficientModels)
def insufficient_models(request: Request, exc: InsufficientModels):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "needed": exc.needed, "available": exc.available},
    )

@app.exception_handler(AllocationConflict)
def allocation_conflict(request: Request, exc: AllocationConflict):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(InvalidAllocationRequest)
@app.exception_handler(InvalidJobPayload)
def invalid_request(request: Request, exc: Exception):
    return JSONResponse(status_code=422, content={"detail": str(exc)})

@app.get("/healthz")
def healthz(request: Request):
    log.info("health ok", extra={"request_id": request.state.request_id, "event": "healthz"})
    return {"ok": True}

@app.get("/readyz")
def readyz(request: Request, services: Services = Depends(get_services)):
    with services.session_factory() as db:
        db.execute(text("SELECT 1"))
    services.redis.ping()
    log.info("ready ok", extra={"request_id": request.state.request_id, "event": "readyz"})
    return {"ready": True}

@app.post("/presets/{preset_id}/examples", response_model=ExamplesOut, status_code=201)
def create_examples(preset_id: str, req: ExamplesCreate, request: Request,
                    services: Services = Depends(get_services)):
    queued = services.examples.request_examples(preset_id, req.count, prompt=req.prompt, provider=req.provider)
    log.info(
        f"{len(queued)} example jobs queued",
        extra={"request_id": request.state.request_id, "preset_id": preset_id, "event": "examples_requested"},
    )
    return ExamplesOut(preset_id=preset_id, jobs=queued)

@app.post("/presets/{preset_id}/allocations", response_model=AllocationOut)
def preview_allocation(preset_id: str, req: AllocationCreate, services: Services = Depends(get_services)):
    models = services.examples.preview(preset_id, req.count)
    return AllocationOut(
        preset_id=preset_id,
        models=[ModelOut(id=m.id, name=m.display_name, image_url=m.image_url, gender=m.gender) for m in models],
    )

@app.get("/presets/{preset_id}/usage", response_model=UsageOut)
def preset_usage(preset_id: str, services: Services = Depends(get_services)):
    if not services.presets.exists(preset_id):
        raise PresetNotFound(preset_id)
    return UsageOut(preset_id=preset_id, model_ids=sorted(services.ledger.list_used(preset_id)))

@app.get("/jobs/{job_id}", response_model=JobOut)
def get_job(job_id: str, request: Request, services: Services = Depends(get_services)):
    job = services.queue.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    log.info(
        "job fetched",
        extra={"request_id": request.state.request_id, "job_id": job_id, "event": "job_get"},
    )
    return job
