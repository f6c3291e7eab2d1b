import asyncio
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from flashui import generation, placeholders, ratelimit
from flashui.auth import extract_client_key, require_api_key
from flashui.llm_client import probe as llm_probe, status as llm_status
from flashui.models import InspirationImage, Session
from flashui.store import SessionStore, StoreEvent
from flashui.variations import apply_variation, iter_variations, resolve_artifact

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

PLACEHOLDER_REFRESH_DELAY_SECS = 3.0
# Changes to the variation list only; applying a variation is an artifact write
VARIATION_LIST_EVENTS = frozenset({"variation", "variations_cleared"})

STORE = SessionStore()


def get_store() -> SessionStore:
    return STORE


def _placeholder_refresh_enabled() -> bool:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return False
    return os.getenv("PLACEHOLDER_REFRESH", "1").lower() in {"1", "true", "yes", "on"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if _placeholder_refresh_enabled() and llm_status().get("has_token"):
        log.info("placeholders.lifespan: scheduling suggestion refresh")
        generation.spawn(
            placeholders.refresh_placeholders(delay=PLACEHOLDER_REFRESH_DELAY_SECS),
            name="placeholder-refresh",
        )
    yield


app = FastAPI(lifespan=lifespan)

allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s status=%s dur_ms=%d",
            rid,
            request.method,
            request.url.path,
            getattr(response, "status_code", "?"),
            dur_ms,
        )


class SessionRequest(BaseModel):
    prompt: str = Field("", description="Natural-language description of the component to design")
    image: Optional[InspirationImage] = Field(default=None, description="Optional inspiration image")
    surprise: bool = Field(False, description="Pick a suggested prompt when prompt is empty")


class ApplyVariationRequest(BaseModel):
    html: Optional[str] = Field(default=None, description="Replacement markup")
    variation_index: Optional[int] = Field(default=None, description="Index into the current variation list")


def _safe_rate_check(bucket: str, key: str):
    """Return (allowed, remaining, reset_ts); fail open if the limiter itself breaks."""
    try:
        return ratelimit.check(bucket, key)
    except Exception:
        log.exception("rate_limit: limiter error; allowing request")
        return True, 9999, int(time.time()) + 60


def _rate_limit_headers(remaining: int, reset_ts: int, *, limited: bool = False) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset_ts),
    }
    if limited:
        wait_seconds = max(0, reset_ts - int(time.time()))
        headers["Retry-After"] = str(wait_seconds)
    return headers


def _rate_limit_payload(reset_ts: int) -> Dict[str, Any]:
    wait_seconds = max(0, reset_ts - int(time.time()))
    return {
        "error": "rate limit exceeded",
        "reset": reset_ts,
        "retry_after_seconds": wait_seconds,
        "message": f"Rate limit exceeded. Try again in {wait_seconds} seconds.",
    }


def _limited_response(remaining: int, reset_ts: int) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content=_rate_limit_payload(reset_ts),
        headers=_rate_limit_headers(remaining, reset_ts, limited=True),
    )


def _missing_credentials_response() -> JSONResponse:
    return JSONResponse(status_code=503, content={"error": "Missing LLM credentials"})


def _client_key(api_key: str, request: Request) -> str:
    return extract_client_key(api_key, request.client.host if request.client else "anon")


def _dump(session: Optional[Session]) -> Optional[Dict[str, Any]]:
    return session.model_dump(mode="json") if session is not None else None


def _line(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False) + "\n"


def _session_or_404(store: SessionStore, session_id: str) -> Session:
    session = store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session not found")
    return session


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/llm/status")
def llm_status_endpoint() -> Dict[str, Any]:
    return llm_status()


@app.get("/llm/probe")
def llm_probe_endpoint() -> Dict[str, Any]:
    return llm_probe()


@app.get("/placeholders")
def list_placeholders() -> Dict[str, Any]:
    return {"placeholders": placeholders.current()}


@app.post("/sessions")
async def create_session(
    req: SessionRequest,
    request: Request,
    store: SessionStore = Depends(get_store),
    api_key: str = Depends(require_api_key),
):
    """Create a session (3 placeholder artifacts) and start generating in the background."""
    if not llm_status().get("has_token"):
        return _missing_credentials_response()

    client_key = _client_key(api_key, request)
    allowed, remaining, reset_ts = _safe_rate_check("sessions", client_key)
    log.info("rate_limit check bucket=sessions allowed=%s remaining=%s", allowed, remaining)
    if not allowed:
        return _limited_response(remaining, reset_ts)

    prompt = (req.prompt or "").strip()
    if not prompt and req.surprise:
        prompt = placeholders.pick()
        log.info("sessions: surprise prompt=%r", prompt)
    try:
        session = generation.submit_prompt(store, prompt, req.image)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return JSONResponse(
        status_code=202,
        content=_dump(session),
        headers=_rate_limit_headers(remaining, reset_ts),
    )


@app.get("/sessions")
async def list_sessions(store: SessionStore = Depends(get_store)) -> Dict[str, Any]:
    current = store.current_session
    return {
        "current_session_id": current.id if current else None,
        "sessions": [_dump(s) for s in store.sessions],
    }


@app.get("/sessions/{session_id}")
async def get_session(session_id: str, store: SessionStore = Depends(get_store)) -> Dict[str, Any]:
    session = _session_or_404(store, session_id)
    return {"stale": store.is_stale(session_id), "session": _dump(session)}


@app.post("/sessions/{session_id}/current")
async def make_current(session_id: str, store: SessionStore = Depends(get_store)) -> Dict[str, Any]:
    _session_or_404(store, session_id)
    return {"session": _dump(store.set_current(session_id))}


async def _session_event_lines(store: SessionStore, session_id: str, request_id: Optional[str]) -> AsyncIterator[str]:
    queue: "asyncio.Queue[StoreEvent]" = asyncio.Queue()

    def listener(event: StoreEvent) -> None:
        if event.session_id == session_id and event.kind not in VARIATION_LIST_EVENTS:
            queue.put_nowait(event)

    unsubscribe = store.subscribe(listener)
    try:
        yield _line({"event": "meta", "request_id": request_id})
        session = store.get_session(session_id)
        yield _line({"event": "session", "data": _dump(session)})
        # Drain whatever was queued before the last artifact settled
        while session is not None and (not session.is_final or not queue.empty()):
            event = await queue.get()
            session = store.get_session(session_id)
            if event.kind == "append":
                yield _line(
                    {
                        "event": "delta",
                        "artifact_id": event.artifact_id,
                        "text": event.fragment,
                        "stale": event.stale,
                    }
                )
            elif event.artifact_id:
                artifact = store.get_artifact(session_id, event.artifact_id)
                data = artifact.model_dump(mode="json") if artifact else None
                yield _line({"event": "artifact", "data": data, "stale": event.stale})
            else:
                yield _line({"event": "session", "data": _dump(session), "stale": event.stale})
        yield _line({"event": "done", "data": _dump(session)})
    finally:
        unsubscribe()


@app.get("/sessions/{session_id}/events")
async def session_events(session_id: str, request: Request, store: SessionStore = Depends(get_store)):
    """
    NDJSON progress stream: meta, a session snapshot, then delta/artifact
    events until every artifact is final, then done.
    """
    _session_or_404(store, session_id)
    request_id = getattr(request.state, "request_id", None)
    return StreamingResponse(
        _session_event_lines(store, session_id, request_id),
        media_type="application/x-ndjson",
    )


@app.post("/sessions/{session_id}/artifacts/{index}/variations")
async def create_variations(
    session_id: str,
    index: int,
    request: Request,
    store: SessionStore = Depends(get_store),
    api_key: str = Depends(require_api_key),
):
    """NDJSON stream of variation events for one artifact, as each record is decoded."""
    if not llm_status().get("has_token"):
        return _missing_credentials_response()
    try:
        artifact = resolve_artifact(store, session_id, index)
    except KeyError:
        raise HTTPException(status_code=404, detail="artifact not found")

    client_key = _client_key(api_key, request)
    allowed, remaining, reset_ts = _safe_rate_check("variations", client_key)
    if not allowed:
        return _limited_response(remaining, reset_ts)

    request_id = getattr(request.state, "request_id", None)

    async def _iter() -> AsyncIterator[str]:
        yield _line({"event": "meta", "request_id": request_id, "artifact_id": artifact.id})
        count = 0
        async for variation in iter_variations(store, session_id, artifact.id):
            yield _line({"event": "variation", "index": count, "data": variation.model_dump(mode="json")})
            count += 1
        yield _line({"event": "done", "count": count})

    return StreamingResponse(
        _iter(),
        media_type="application/x-ndjson",
        headers=_rate_limit_headers(remaining, reset_ts),
    )


@app.get("/variations")
async def list_variations(store: SessionStore = Depends(get_store)) -> Dict[str, Any]:
    target = store.variation_target
    return {
        "session_id": target[0] if target else None,
        "artifact_id": target[1] if target else None,
        "variations": [v.model_dump(mode="json") for v in store.variations],
    }


@app.post("/sessions/{session_id}/artifacts/{index}/apply")
async def apply_variation_endpoint(
    session_id: str,
    index: int,
    req: ApplyVariationRequest,
    store: SessionStore = Depends(get_store),
    api_key: str = Depends(require_api_key),
) -> Dict[str, Any]:
    try:
        artifact = resolve_artifact(store, session_id, index)
    except KeyError:
        raise HTTPException(status_code=404, detail="artifact not found")

    html = req.html
    if req.variation_index is not None:
        if store.variation_target != (session_id, artifact.id):
            raise HTTPException(status_code=409, detail="no variations for this artifact")
        if not 0 <= req.variation_index < len(store.variations):
            raise HTTPException(status_code=404, detail="variation not found")
        html = store.variations[req.variation_index].html
    if not html:
        raise HTTPException(status_code=422, detail="html or variation_index is required")

    updated = apply_variation(store, session_id, artifact.id, html)
    return {"artifact": updated.model_dump(mode="json")}
