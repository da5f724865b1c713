"""
Multipublish API
================
FastAPI surface for the upload form:
- Stage media in temporary R2 storage
- Start an upload session fanning out to YouTube / Instagram / TikTok
- Poll per-platform banners, cancel a running session
- Connection status + disconnect per platform
- Bulk cleanup of the temporary bucket
- Request IDs + JSON errors

Caller identity is an HS256 access JWT issued by the identity service.
Publishing runs in background tasks on this process; sessions are not
persisted, vanish on restart, and are forgotten SESSION_RETENTION_SEC
after they finish.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import asyncpg
import httpx
import jwt
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from publisher.config import Settings
from publisher.context import Platform, UploadJob
from publisher.errors import ErrorCode, PublishError, get_http_status
from publisher.platforms import PlatformAdapter, build_adapters
from publisher.session import UploadSession
from publisher.storage import R2Storage, TemporaryStorage
from publisher.token_store import PostgresTokenStore, TokenCipher, TokenStore, parse_enc_keys

VERSION = "1.0.0"

# ============================================================
# Logging
# ============================================================

settings = Settings.from_env()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("multipublish.api")

# ============================================================
# Services
# ============================================================


@dataclass
class SessionRecord:
    user_id: str
    session: UploadSession
    task: Optional[asyncio.Task] = None
    finished_at: Optional[float] = None


@dataclass
class Services:
    token_store: TokenStore
    adapters: Dict[Platform, PlatformAdapter]
    storage: Optional[TemporaryStorage] = None
    http_client: Optional[httpx.AsyncClient] = None
    db_pool: Optional[asyncpg.Pool] = None
    sessions: Dict[str, SessionRecord] = field(default_factory=dict)


def _split_origins(raw: str) -> List[str]:
    return [o.strip() for o in raw.split(",") if o.strip()]


def validate_env(cfg: Settings):
    missing = []
    if not cfg.database_url:
        missing.append("DATABASE_URL")
    if not cfg.jwt_secret or cfg.jwt_secret == "change-me":
        missing.append("JWT_SECRET")
    if not cfg.token_enc_keys:
        missing.append("TOKEN_ENC_KEYS")

    if missing:
        raise RuntimeError(f"Missing required env vars: {', '.join(missing)}")

    _ = parse_enc_keys(cfg.token_enc_keys)


async def init_services(cfg: Settings) -> Services:
    validate_env(cfg)

    db_pool = await asyncpg.create_pool(
        cfg.database_url,
        min_size=1,
        max_size=10,
        command_timeout=30,
        max_inactive_connection_lifetime=300,
    )
    token_store = PostgresTokenStore(db_pool, TokenCipher.from_env_value(cfg.token_enc_keys))

    storage = None
    if cfg.storage.configured:
        storage = R2Storage(cfg.storage)
    else:
        logger.warning("R2 storage not configured; media staging is disabled")

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(cfg.http_timeout, connect=10.0),
        follow_redirects=True,
    )
    adapters = build_adapters(cfg, http_client)
    logger.info("Services initialized")
    return Services(
        token_store=token_store,
        adapters=adapters,
        storage=storage,
        http_client=http_client,
        db_pool=db_pool,
    )


async def close_services(services: Services):
    for record in services.sessions.values():
        record.session.cancel()
    tasks = [r.task for r in services.sessions.values() if r.task is not None and not r.task.done()]
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    try:
        if services.http_client is not None:
            await services.http_client.aclose()
    finally:
        if services.db_pool is not None:
            await services.db_pool.close()


# ============================================================
# Dependencies
# ============================================================


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_services(request: Request) -> Services:
    return request.app.state.services


def verify_access_jwt(token: str, cfg: Settings) -> Optional[str]:
    try:
        payload = jwt.decode(
            token,
            cfg.jwt_secret,
            algorithms=["HS256"],
            audience=cfg.jwt_audience,
        )
    except jwt.InvalidTokenError:
        return None
    return payload.get("sub")


async def get_current_user(
    authorization: str = Header(None),
    cfg: Settings = Depends(get_settings),
) -> str:
    if not authorization:
        raise HTTPException(401, "Missing authorization header")

    token = authorization.replace("Bearer ", "")
    user_id = verify_access_jwt(token, cfg)
    if not user_id:
        raise HTTPException(401, "Invalid or expired token")
    return str(user_id)


def _parse_platform(value: str) -> Platform:
    try:
        return Platform.parse(value)
    except ValueError:
        raise HTTPException(400, f"Unknown platform: {value}")


def _new_session(services: Services, cfg: Settings) -> UploadSession:
    return UploadSession(
        services.adapters,
        services.token_store,
        storage=services.storage,
        poll=cfg.poll,
        refresh_skew_sec=cfg.token_refresh_skew_sec,
        compress_target_mb=cfg.compress_target_mb,
    )


def prune_sessions(services: Services, retention_sec: float, now: Optional[float] = None) -> int:
    """Forget sessions that finished more than ``retention_sec`` ago."""
    now = time.monotonic() if now is None else now
    expired = [
        job_id for job_id, r in services.sessions.items()
        if r.finished_at is not None and now - r.finished_at >= retention_sec
    ]
    for job_id in expired:
        del services.sessions[job_id]
    if expired:
        logger.info(f"Pruned {len(expired)} finished upload sessions")
    return len(expired)


def _get_record(services: Services, job_id: str, user_id: str) -> SessionRecord:
    record = services.sessions.get(job_id)
    if record is None or record.user_id != user_id:
        raise HTTPException(404, "Upload not found")
    return record


async def _run_session(record: SessionRecord, job: UploadJob):
    try:
        await record.session.run(job)
    except Exception as e:
        logger.exception(f"Upload session {job.job_id} crashed: {e}")
        for platform in job.target_platforms:
            state = job.per_platform_state.get(platform) or job.new_state(platform)
            if not state.is_terminal:
                state.mark_failed(ErrorCode.INTERNAL.value, "Upload session failed unexpectedly")
    finally:
        record.finished_at = time.monotonic()


# ============================================================
# Pydantic Models
# ============================================================


class UploadCreate(BaseModel):
    media_url: str = Field(..., min_length=1)
    title: str = ""
    caption: str = ""
    platforms: List[str] = Field(default_factory=list)
    privacy: Optional[str] = None


# ============================================================
# Routes
# ============================================================

router = APIRouter()


@router.get("/api/health")
async def health(services: Services = Depends(get_services), cfg: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "version": VERSION,
        "database": services.db_pool is not None,
        "r2_configured": services.storage is not None,
        "platforms": {
            "youtube": cfg.youtube.configured,
            "instagram": cfg.instagram.configured,
            "tiktok": cfg.tiktok.configured,
        },
        "active_sessions": sum(1 for r in services.sessions.values() if r.task and not r.task.done()),
    }


@router.post("/api/media")
async def stage_media(
    request: Request,
    filename: str = Query(..., min_length=1),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
    cfg: Settings = Depends(get_settings),
):
    data = await request.body()
    if not data:
        raise HTTPException(400, "Empty upload body")

    content_type = request.headers.get("content-type") or "video/mp4"
    session = _new_session(services, cfg)
    media_url = await session.stage_media(filename, data, content_type)
    logger.info(f"Media staged user={user_id} name={filename} bytes={len(data)}")
    return {"media_url": media_url}


@router.post("/api/uploads", status_code=202)
async def create_upload(
    payload: UploadCreate,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
    cfg: Settings = Depends(get_settings),
):
    platforms = {_parse_platform(p) for p in payload.platforms}
    if not platforms:
        raise HTTPException(400, "Select at least one platform")
    if services.storage is not None and not services.storage.owns(payload.media_url):
        raise HTTPException(400, "media_url must be a file staged through /api/media")
    prune_sessions(services, cfg.session_retention_sec)

    job = UploadJob(
        user_id=user_id,
        source_media_url=payload.media_url,
        title=payload.title,
        caption=payload.caption,
        target_platforms=platforms,
        privacy=payload.privacy,
    )
    session = _new_session(services, cfg)
    session.job = job
    record = SessionRecord(user_id=user_id, session=session)
    services.sessions[job.job_id] = record
    record.task = asyncio.create_task(_run_session(record, job))

    logger.info(f"Upload session started job={job.job_id} user={user_id} platforms={sorted(p.value for p in platforms)}")
    return session.summary().to_dict()


@router.get("/api/uploads/{job_id}")
async def get_upload(
    job_id: str,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
    cfg: Settings = Depends(get_settings),
):
    prune_sessions(services, cfg.session_retention_sec)
    record = _get_record(services, job_id, user_id)
    return record.session.summary().to_dict()


@router.post("/api/uploads/{job_id}/cancel")
async def cancel_upload(
    job_id: str,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    record = _get_record(services, job_id, user_id)
    record.session.cancel()
    logger.info(f"Upload cancel requested job={job_id} user={user_id}")
    return {"ok": True, "job_id": job_id}


@router.get("/api/platforms")
async def get_platforms(user_id: str = Depends(get_current_user), services: Services = Depends(get_services)):
    connected = set(await services.token_store.connected_platforms(user_id))
    return {p.value: {"connected": p in connected} for p in Platform}


@router.delete("/api/platforms/{platform}")
async def disconnect_platform(
    platform: str,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    p = _parse_platform(platform)
    await services.token_store.delete(user_id, p)
    logger.info(f"Platform disconnected user={user_id} platform={p.value}")
    return {"ok": True, "platform": p.value}


@router.delete("/api/storage")
async def delete_all_media(user_id: str = Depends(get_current_user), services: Services = Depends(get_services)):
    if services.storage is None:
        raise PublishError(ErrorCode.STORAGE_FAILED, "Temporary storage is not configured")
    deleted = await services.storage.delete_all()
    logger.info(f"Storage cleanup by user={user_id}: deleted={deleted}")
    return {"ok": True, "deleted": deleted}


# ============================================================
# FastAPI App + Middleware
# ============================================================


def create_app(cfg: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the app. Injected ``services`` are used as-is and not closed on shutdown."""
    cfg = cfg or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or await init_services(cfg)
        yield
        if services is None:
            await close_services(app.state.services)

    app = FastAPI(title="Multipublish API", version=VERSION, lifespan=lifespan)
    app.state.settings = cfg

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_split_origins(cfg.allowed_origins),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid

        start = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            logger.exception(f"[RID:{rid}] Unhandled exception: {e}")
            return JSONResponse(
                status_code=500,
                content={"error": "internal_error", "request_id": rid},
                headers={"X-Request-ID": rid},
            )
        finally:
            duration_ms = int((time.time() - start) * 1000)
            logger.info(f"rid={rid} {request.method} {request.url.path} status={status_code} dur_ms={duration_ms}")

        response.headers["X-Request-ID"] = rid
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response

    @app.exception_handler(PublishError)
    async def publish_error_handler(request: Request, exc: PublishError):
        rid = getattr(request.state, "request_id", None)
        logger.warning(f"rid={rid} {exc}")
        return JSONResponse(
            status_code=get_http_status(exc.code),
            content={**exc.to_dict(), "request_id": rid},
        )

    app.include_router(router)
    return app


app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=settings.port)
