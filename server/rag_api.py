import datetime
import json
import logging
import secrets
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from config.settings import AppSettings
from indexer.models import CrawlOptions, WebsiteSettings
from observability.logging import setup_logging
from observability.prometheus_metrics import setup_prometheus_metrics
from .chat import now_ms
from .composer import FALLBACK_ANSWER
from .job_handlers import CRAWL_JOB, release_claim
from .jobs import JobStatus
from .security import CHAT_RATE_LIMIT, CRAWL_RATE_LIMIT, get_client_ip, limiter, setup_cors, setup_rate_limiting
from .services import Services, start_services, stop_services

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"

app = FastAPI(title="SiteChat RAG API", version=API_VERSION)

setup_cors(app)
setup_rate_limiting(app)
setup_prometheus_metrics(app)


@app.on_event("startup")
async def startup_event():
    """Build the service container unless one was installed already."""
    if getattr(app.state, "services", None) is not None:
        return

    settings = AppSettings.from_env()
    setup_logging(
        level=settings.log_level,
        service_name=settings.service_name,
        log_file=settings.log_file,
        use_json=settings.log_json,
    )
    app.state.services = await start_services(settings)
    logger.info("SiteChat API started")


@app.on_event("shutdown")
async def shutdown_event():
    services = getattr(app.state, "services", None)
    if services is None:
        return
    try:
        await stop_services(services)
    finally:
        app.state.services = None


def get_services(request: Request) -> Services:
    """Dependency returning the running service container."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return services


async def require_admin(request: Request, x_admin_token: Optional[str] = Header(None)):
    services = get_services(request)
    expected = services.settings.admin_token
    if expected and not (x_admin_token and secrets.compare_digest(x_admin_token, expected)):
        raise HTTPException(status_code=401, detail="Invalid admin token")


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    session_id: Optional[str] = Field(None, alias="sessionId")


class CrawlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: Optional[str] = Field(None, alias="tenantId")
    options: Optional[CrawlOptions] = None


class WebsiteCreateRequest(BaseModel):
    domain: str
    name: str
    settings: Optional[WebsiteSettings] = None


def _normalize_domain(domain: str) -> str:
    domain = domain.strip().rstrip("/")
    candidate = domain if domain.startswith(("http://", "https://")) else f"https://{domain}"
    if not urlparse(candidate).hostname:
        raise HTTPException(status_code=400, detail="Invalid domain")
    return domain


@app.get("/")
async def root():
    return {
        "message": "SiteChat RAG API",
        "version": API_VERSION,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


@app.get("/health")
def health():
    return {"ok": True, "time": datetime.datetime.now(datetime.timezone.utc).isoformat()}


@app.get("/health/detailed")
async def detailed_health_check(services: Services = Depends(get_services)):
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "version": API_VERSION,
        "components": {},
    }

    try:
        stats = await services.store.get_stats()
        health_status["components"]["database"] = {"status": "healthy", **stats}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["components"]["database"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "degraded"

    jobs = services.jobs
    health_status["components"]["jobs"] = {
        "status": "healthy" if jobs.is_running else "unavailable",
        "backend": jobs.backend,
    }
    if not jobs.is_running:
        health_status["status"] = "degraded"

    health_status["components"]["sessions"] = {"status": "healthy", "live": len(services.sessions)}
    return health_status


@app.post("/api/chat")
@limiter.limit(CHAT_RATE_LIMIT)
async def chat(request: Request, body: ChatRequest, services: Services = Depends(get_services)):
    """Answer one visitor question for a website."""
    message = (body.message or "").strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required")
    if not body.tenant_id:
        raise HTTPException(status_code=400, detail="tenantId is required")

    session_id = body.session_id
    try:
        website = await services.store.get_website(body.tenant_id)
        if website is None:
            raise HTTPException(status_code=404, detail="Website not found")

        session = await services.chat.resolve_session(
            website, body.session_id, get_client_ip(request), request.headers.get("user-agent")
        )
        session_id = session.session_token
        reply = await services.chat.handle_message(website, session, message)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Chat request failed: {e}")
        return JSONResponse(
            status_code=500,
            content={
                "type": "error",
                "content": FALLBACK_ANSWER,
                "sessionId": session_id,
                "timestamp": now_ms(),
                "metadata": {"sources": [], "contextSources": 0},
            },
        )

    return reply.to_dict()


@app.post("/api/crawl")
@limiter.limit(CRAWL_RATE_LIMIT)
async def start_crawl(request: Request, body: CrawlRequest, services: Services = Depends(get_services)):
    """Queue a crawl of a website."""
    if not body.tenant_id:
        raise HTTPException(status_code=400, detail="tenantId is required")

    website = await services.store.get_website(body.tenant_id)
    if website is None:
        raise HTTPException(status_code=404, detail="Website not found")

    # A queued job already owns the website
    if not await services.store.try_begin_crawl(website.id, services.stale_after):
        raise HTTPException(status_code=409, detail="Website is already being crawled")

    parameters = {"website_id": website.id, "claimed": True}
    if body.options is not None:
        parameters["options"] = body.options.model_dump(mode="json", exclude_unset=True)

    try:
        job_id = await services.jobs.enqueue_job(CRAWL_JOB, parameters)
    except Exception as e:
        logger.error(f"Failed to enqueue crawl for website {website.id}: {e}")
        await release_claim(services.store, website.id)
        raise HTTPException(status_code=500, detail="Failed to start crawl")

    return {"success": True, "message": "Crawl started successfully", "jobId": job_id}


@app.get("/api/crawl/status")
async def crawl_status(tenant_id: Optional[str] = Query(None, alias="tenantId"),
                       services: Services = Depends(get_services)):
    if not tenant_id:
        raise HTTPException(status_code=400, detail="tenantId is required")

    website = await services.store.get_website(tenant_id)
    if website is None:
        raise HTTPException(status_code=404, detail="Website not found")

    document_count = await services.store.count_chunks(website.id)
    return {"website": website.public_dict(), "documentCount": document_count}


@app.get("/api/jobs/{job_id}")
async def get_job_status(job_id: str, services: Services = Depends(get_services)):
    """Get job status and logs"""
    job_record = await services.jobs.get_job_status(job_id)
    if not job_record:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_record.to_dict()


@app.get("/api/jobs", dependencies=[Depends(require_admin)])
async def list_jobs(status: Optional[str] = None, limit: int = Query(100, ge=1, le=1000),
                    services: Services = Depends(get_services)):
    job_status = None
    if status:
        try:
            job_status = JobStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

    jobs = await services.jobs.list_jobs(job_status, limit)
    return {"jobs": [job.to_dict() for job in jobs], "total": len(jobs)}


@app.post("/api/websites", status_code=201, dependencies=[Depends(require_admin)])
async def register_website(body: WebsiteCreateRequest, services: Services = Depends(get_services)):
    domain = _normalize_domain(body.domain)
    if await services.store.find_website_by_domain(domain):
        raise HTTPException(status_code=409, detail="Website already registered")

    website = await services.store.create_website(domain, body.name.strip() or domain, settings=body.settings)
    logger.info(f"Registered website {website.id} for {domain}")
    return {**website.public_dict(), "api_key": website.api_key}


@app.post("/api/websites/{website_id}/deactivate", dependencies=[Depends(require_admin)])
async def deactivate_website(website_id: str, services: Services = Depends(get_services)):
    if not await services.store.deactivate_website(website_id):
        raise HTTPException(status_code=404, detail="Website not found")
    return {"success": True, "id": website_id, "is_active": False}


@app.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket,
                      tenant_id: Optional[str] = Query(None, alias="tenantId"),
                      session_token: Optional[str] = Query(None, alias="sessionToken")):
    """Realtime chat: one socket per visitor session."""
    services: Optional[Services] = getattr(websocket.app.state, "services", None)
    if services is None or not tenant_id:
        await websocket.close(code=1008)
        return

    website = await services.store.get_website(tenant_id)
    if website is None:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    client_ip = websocket.client.host if websocket.client else None
    try:
        session = await services.chat.resolve_session(
            website, session_token, client_ip, websocket.headers.get("user-agent")
        )
    except Exception as e:
        logger.error(f"WebSocket session setup failed for website {website.id}: {e}")
        await websocket.send_json({"type": "error", "content": FALLBACK_ANSWER, "timestamp": now_ms()})
        await websocket.close(code=1011)
        return
    services.sessions.register(session, websocket)

    try:
        await websocket.send_json({
            "type": "system",
            "content": services.chat.welcome_message(website),
            "sessionId": session.session_token,
            "timestamp": now_ms(),
        })

        while True:
            raw = await websocket.receive_text()
            services.sessions.touch(session.id)

            try:
                frame = json.loads(raw)
            except ValueError:
                frame = None
            if not isinstance(frame, dict):
                await websocket.send_json({"type": "error", "content": "Invalid message format",
                                           "timestamp": now_ms()})
                continue

            if frame.get("type") == "ping":
                await websocket.send_json({"type": "pong", "timestamp": now_ms()})
                continue

            content = frame.get("content")
            if frame.get("type") != "message" or not isinstance(content, str) or not content.strip():
                await websocket.send_json({"type": "error", "content": "Invalid message format",
                                           "timestamp": now_ms()})
                continue

            await websocket.send_json({"type": "typing", "timestamp": now_ms()})
            try:
                reply = await services.chat.handle_message(website, session, content.strip())
            except Exception as e:
                logger.error(f"WebSocket chat failed for session {session.id}: {e}")
                await websocket.send_json({"type": "error", "content": FALLBACK_ANSWER,
                                           "timestamp": now_ms()})
                continue

            await websocket.send_json({
                "type": "message",
                "content": reply.content,
                "sessionId": reply.session_id,
                "timestamp": reply.timestamp,
                "metadata": {"sources": reply.sources, "contextSources": reply.context_sources},
            })

    except WebSocketDisconnect:
        logger.debug(f"Session {session.id} disconnected")
    finally:
        await services.sessions.unregister(session.id)
