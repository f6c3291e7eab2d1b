"""Thin async client for the Gemini REST API. It only moves text in and out;
retries live in flashui.retry and are applied by the callers around the
initial request. The credential is read on every call so a key added to the
environment is picked up without a restart.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from flashui.models import InspirationImage

log = logging.getLogger(__name__)

GEMINI_API_BASE = os.getenv("GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta").strip().rstrip("/")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-3-flash-preview").strip()
try:
    LLM_TIMEOUT_SECS = float(os.getenv("LLM_TIMEOUT_SECS", "120"))
except ValueError:
    LLM_TIMEOUT_SECS = 120.0


class MissingCredentialsError(RuntimeError):
    pass


class GenerationServiceError(RuntimeError):
    """Error reported by the generation service or its transport."""

    def __init__(self, message: str, status: Optional[str] = None, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


def api_key() -> str:
    return (os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY") or "").strip()


def _require_api_key() -> str:
    key = api_key()
    if not key:
        raise MissingCredentialsError("API_KEY is not configured.")
    return key


def status() -> Dict[str, Any]:
    has_token = bool(api_key())
    return {
        "provider": "gemini" if has_token else None,
        "model": GEMINI_MODEL,
        "has_token": has_token,
        "using": "gemini" if has_token else "none",
    }


def probe() -> Dict[str, Any]:
    return {"ok": bool(api_key()), "using": "gemini" if api_key() else "none"}


def text_part(text: str) -> Dict[str, Any]:
    return {"text": text}


def image_part(image: InspirationImage) -> Dict[str, Any]:
    return {"inlineData": {"mimeType": image.mime_type, "data": image.data}}


def build_parts(text: str, image: Optional[InspirationImage] = None) -> List[Dict[str, Any]]:
    """Content parts for one user turn; the image, when present, goes first."""
    parts = [text_part(text)]
    if image is not None:
        parts.insert(0, image_part(image))
    return parts


def _endpoint(model: Optional[str], method: str) -> str:
    return f"{GEMINI_API_BASE}/models/{model or GEMINI_MODEL}:{method}"


def _body(parts: List[Dict[str, Any]], temperature: Optional[float]) -> Dict[str, Any]:
    body: Dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
    if temperature is not None:
        body["generationConfig"] = {"temperature": float(temperature)}
    return body


def _make_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=LLM_TIMEOUT_SECS)


def _extract_gemini_text(payload: Dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate; empty string when none."""
    if not isinstance(payload, dict):
        return ""
    candidates = payload.get("candidates") or []
    for cand in candidates:
        if not isinstance(cand, dict):
            continue
        content = cand.get("content") or {}
        parts = content.get("parts") or []
        texts = [p.get("text") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
        if texts:
            return "".join(texts)
    return ""


def _error_from_payload(payload: Any, code: Optional[int] = None) -> GenerationServiceError:
    err = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(err, dict):
        message = str(err.get("message") or f"HTTP {code}")
        status_str = err.get("status")
        err_code = err.get("code") if isinstance(err.get("code"), int) else code
        return GenerationServiceError(message, status=status_str, code=err_code)
    if isinstance(err, str):
        return GenerationServiceError(err, code=code)
    return GenerationServiceError(f"Generation service returned HTTP {code}", code=code)


def _error_from_response(code: int, raw: bytes) -> GenerationServiceError:
    text = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text)
    except ValueError:
        payload = None
    if isinstance(payload, list) and payload:
        payload = payload[0]
    exc = _error_from_payload(payload, code)
    if not isinstance(payload, dict) and text.strip():
        exc = GenerationServiceError(f"HTTP {code}: {text.strip()[:400]}", code=code)
    log.warning("llm: HTTP %s status=%s message=%s", code, exc.status, str(exc)[:200])
    return exc


def _deadline_error(exc: Exception) -> GenerationServiceError:
    return GenerationServiceError(
        f"Request deadline exceeded ({exc.__class__.__name__})",
        status="DEADLINE_EXCEEDED",
        code=504,
    )


async def generate_content(
    parts: List[Dict[str, Any]],
    *,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
) -> str:
    """One non-streamed generateContent call; returns the response text ('' when empty)."""
    key = _require_api_key()
    async with _make_client() as client:
        try:
            resp = await client.post(
                _endpoint(model, "generateContent"),
                params={"key": key},
                json=_body(parts, temperature),
            )
        except httpx.TimeoutException as exc:
            raise _deadline_error(exc) from exc
        except httpx.HTTPError as exc:
            raise GenerationServiceError(f"Transport error: {exc!r}") from exc
        if resp.status_code != 200:
            raise _error_from_response(resp.status_code, resp.content)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise GenerationServiceError("Generation service returned a non-JSON body", code=resp.status_code) from exc
    return _extract_gemini_text(payload)


async def open_content_stream(
    parts: List[Dict[str, Any]],
    *,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
) -> AsyncIterator[str]:
    """Start a streamGenerateContent call and return its text fragments.

    The request and status check happen here, so wrapping this coroutine in
    ``with_retry`` retries only the opening of the stream. Failures while
    iterating the returned fragments are raised to the consumer as-is.
    """
    key = _require_api_key()
    client = _make_client()
    request = client.build_request(
        "POST",
        _endpoint(model, "streamGenerateContent"),
        params={"alt": "sse", "key": key},
        json=_body(parts, temperature),
    )
    try:
        response = await client.send(request, stream=True)
    except httpx.TimeoutException as exc:
        await client.aclose()
        raise _deadline_error(exc) from exc
    except httpx.HTTPError as exc:
        await client.aclose()
        raise GenerationServiceError(f"Transport error: {exc!r}") from exc
    if response.status_code != 200:
        try:
            raw = await response.aread()
        finally:
            await response.aclose()
            await client.aclose()
        raise _error_from_response(response.status_code, raw)
    return _iter_stream_text(client, response)


async def _iter_stream_text(client: httpx.AsyncClient, response: httpx.Response) -> AsyncIterator[str]:
    try:
        async for line in response.aiter_lines():
            line = line.strip()
            if line.startswith("data:"):
                line = line[len("data:"):].strip()
            line = line.strip("[],")
            if not line:
                continue
            try:
                chunk = json.loads(line)
            except ValueError:
                log.debug("llm: skipping non-JSON stream line: %s", line[:120])
                continue
            if isinstance(chunk, dict) and chunk.get("error"):
                raise _error_from_payload(chunk, response.status_code)
            text = _extract_gemini_text(chunk)
            if text:
                yield text
    except httpx.TimeoutException as exc:
        raise _deadline_error(exc) from exc
    except httpx.HTTPError as exc:
        raise GenerationServiceError(f"Stream interrupted: {exc!r}") from exc
    finally:
        await response.aclose()
        await client.aclose()
