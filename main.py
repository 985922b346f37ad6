# main.py
# ------------------------------------------------------------------------------------
#  FastAPI service for the render API:
#  - GET  /healthz                    -> liveness probe (no auth)
#  - POST /render/start               -> accept a render job (RENDERING)
#  - GET  /render/status/{id}         -> poll status (RENDERING|RENDERED|FAILED)
#  - POST /render/complete/{id}       -> worker callback with the render outcome
#  - GET  /debug/config, /debug/jobs  -> runtime view (only with DEBUG=true)
#  Auth:
#    * Authorization: Bearer <RENDER_API_KEY> when the key is set, open otherwise
#  Persistence:
#    * JOB_STORE=memory (default) or JOB_STORE=sqlite (SQLModel, DATABASE_URL)
# ------------------------------------------------------------------------------------

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import authorize
from errors import RenderApiError, Unauthorized
from job_store import ArtifactKind, JobRecord, JobStatus, JobStore, build_job_store, utcnow
from render_service import Clock, RenderService
from settings import Settings, settings

logger = logging.getLogger("render_api")


# ---------- Schemas ----------
class StartRenderRequest(BaseModel):
    contentJsonFileId: Optional[str] = Field(None, description="Content JSON file to render")  # noqa: N815
    renderJobId: Optional[str] = Field(None, description="Optional client job id (idempotency key)")  # noqa: N815


class StartRenderResponse(BaseModel):
    ok: bool = True
    renderJobId: str  # noqa: N815
    status: JobStatus


class RenderStatusResponse(BaseModel):
    ok: bool = True
    renderJobId: str  # noqa: N815
    status: JobStatus
    videoFileId: str = ""  # noqa: N815
    thumbnailFileId: str = ""  # noqa: N815
    subtitlesFileId: str = ""  # noqa: N815
    error: Optional[str] = None


class CompleteRenderRequest(BaseModel):
    status: JobStatus = Field(..., description="RENDERED or FAILED")
    videoFileId: Optional[str] = None  # noqa: N815
    thumbnailFileId: Optional[str] = None  # noqa: N815
    subtitlesFileId: Optional[str] = None  # noqa: N815
    error: Optional[str] = None


def _status_payload(job: JobRecord) -> RenderStatusResponse:
    return RenderStatusResponse(
        renderJobId=job.id,
        status=job.status,
        videoFileId=job.artifacts.get(ArtifactKind.VIDEO, ""),
        thumbnailFileId=job.artifacts.get(ArtifactKind.THUMBNAIL, ""),
        subtitlesFileId=job.artifacts.get(ArtifactKind.SUBTITLES, ""),
        error=job.error if job.status is JobStatus.FAILED else None,
    )


def _job_summary(job: JobRecord) -> dict:
    return {
        "renderJobId": job.id,
        "contentJsonFileId": job.content_reference,
        "status": job.status.value,
        "submittedAt": job.submitted_at.isoformat(),
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


# ---------- Dependencies ----------
def get_service(request: Request) -> RenderService:
    return request.app.state.service


def require_auth(request: Request) -> None:
    configured: Settings = request.app.state.settings
    if not authorize(request.headers.get("authorization"), configured.render_api_key):
        logger.debug("Rejected %s %s: bad or missing bearer token", request.method, request.url.path)
        raise Unauthorized()


# ---------- Error mapping ----------
async def _render_api_error(request: Request, exc: RenderApiError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def _http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


async def _invalid_body(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"Invalid request body: {field} {first.get('msg', '')}".strip() if field else "Invalid request body"
    return JSONResponse(status_code=400, content={"error": message})


async def _unhandled(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


# ------------- FastAPI app --------------
def create_app(
    config: Optional[Settings] = None,
    store: Optional[JobStore] = None,
    clock: Clock = utcnow,
) -> FastAPI:
    if config is None:
        config = settings
    if store is None:
        store = build_job_store(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=getattr(logging, config.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        store.init()
        if not config.auth_required:
            logger.warning("RENDER_API_KEY is not set: every request is accepted. Do not run like this in production.")
        logger.info("Render API listening on %s", config.port)
        yield
        store.close()

    app = FastAPI(title="Render API", version="1.0.0", lifespan=lifespan)
    app.state.settings = config
    app.state.store = store
    app.state.service = RenderService(store, config.completion_threshold, clock=clock)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RenderApiError, _render_api_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _invalid_body)
    app.add_exception_handler(Exception, _unhandled)

    # ---------- Health ----------
    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    # ---------- Index ----------
    @app.get("/")
    def index():
        return {"service": "render-api", "store": config.job_store, "authRequired": config.auth_required}

    # ---------- Render jobs ----------
    @app.post(
        "/render/start",
        response_model=StartRenderResponse,
        dependencies=[Depends(require_auth)],
    )
    def start_render(payload: Optional[StartRenderRequest] = None, service: RenderService = Depends(get_service)):
        """
        Accept a render job. Resubmitting an existing renderJobId with the same
        contentJsonFileId returns that job with its current status, which may
        already be RENDERED or FAILED.
        """
        payload = payload or StartRenderRequest()
        job = service.start(payload.contentJsonFileId, payload.renderJobId)
        return StartRenderResponse(renderJobId=job.id, status=job.status)

    @app.get(
        "/render/status/{render_job_id}",
        response_model=RenderStatusResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_auth)],
    )
    def render_status(render_job_id: str, service: RenderService = Depends(get_service)):
        return _status_payload(service.status(render_job_id))

    @app.post(
        "/render/complete/{render_job_id}",
        response_model=RenderStatusResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_auth)],
    )
    def complete_render(
        render_job_id: str,
        payload: CompleteRenderRequest,
        service: RenderService = Depends(get_service),
    ):
        artifacts = {
            ArtifactKind.VIDEO: payload.videoFileId,
            ArtifactKind.THUMBNAIL: payload.thumbnailFileId,
            ArtifactKind.SUBTITLES: payload.subtitlesFileId,
        }
        job = service.complete(render_job_id, payload.status, artifacts, error=payload.error)
        return _status_payload(job)

    # ---------- Debug (hide in prod) ----------
    if config.debug:
        @app.get("/debug/config", dependencies=[Depends(require_auth)])
        def debug_config():
            threshold = config.completion_threshold
            return {
                "JOB_STORE": config.job_store,
                "DATABASE_URL": config.database_url if config.job_store != "memory" else None,
                "RENDER_COMPLETION_THRESHOLD_S": threshold.total_seconds() if threshold else None,
                "AUTH_REQUIRED": config.auth_required,
                "PORT": config.port,
            }

        @app.get("/debug/jobs", dependencies=[Depends(require_auth)])
        def debug_jobs(olderThanS: float = Query(0, ge=0)) -> List[dict]:  # noqa: N803
            jobs = store.list_older_than(timedelta(seconds=olderThanS), now=clock())
            return [_job_summary(j) for j in jobs]

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
