from __future__ import annotations

import logging
import os
from typing import Any, AsyncIterator, List, Optional

from flashui import llm_client
from flashui.llm_prompts import build_variation_prompt
from flashui.models import Artifact, ComponentVariation
from flashui.retry import with_retry
from flashui.store import SessionStore
from flashui.stream_decoder import decode_frames

log = logging.getLogger(__name__)

MAX_VARIATIONS = 3
try:
    VARIATION_TEMPERATURE = float(os.getenv("VARIATION_TEMPERATURE", "1.2"))
except ValueError:
    VARIATION_TEMPERATURE = 1.2


def _coerce_variation(record: Any) -> Optional[ComponentVariation]:
    if not isinstance(record, dict):
        return None
    name = record.get("name")
    body = record.get("html")
    if body is None:
        body = record.get("content")
    if not isinstance(name, str) or not name.strip():
        return None
    if not isinstance(body, str) or not body.strip():
        return None
    return ComponentVariation(name=name.strip(), html=body)


def resolve_artifact(store: SessionStore, session_id: str, index: int) -> Artifact:
    session = store.get_session(session_id)
    if session is None:
        raise KeyError(session_id)
    if index < 0 or index >= len(session.artifacts):
        raise KeyError(f"{session_id}[{index}]")
    return session.artifacts[index]


async def iter_variations(store: SessionStore, session_id: str, artifact_id: str) -> AsyncIterator[ComponentVariation]:
    """Stream variations of one artifact into the store, yielding each as it is accepted.

    Errors end the stream quietly; whatever was collected stays in the store.
    """
    session = store.get_session(session_id)
    if session is None or session.artifact(artifact_id) is None:
        raise KeyError(artifact_id)
    token = store.clear_variations(session_id, artifact_id)
    parts = [llm_client.text_part(build_variation_prompt(session.prompt))]
    accepted = 0
    try:
        stream = await with_retry(
            lambda: llm_client.open_content_stream(parts, temperature=VARIATION_TEMPERATURE),
            label=f"variations {artifact_id}",
        )
        frames = decode_frames(stream)
        try:
            async for record in frames:
                variation = _coerce_variation(record)
                if variation is None:
                    log.debug("variations: skipping record without name/html")
                    continue
                if not store.add_variation(token, variation):
                    log.info("variations: request superseded artifact=%s", artifact_id)
                    break
                accepted += 1
                yield variation
                if accepted >= MAX_VARIATIONS:
                    break
        finally:
            await frames.aclose()
            close_stream = getattr(stream, "aclose", None)
            if close_stream is not None:
                await close_stream()
    except Exception:
        log.exception("variations: generation stopped artifact=%s after %d", artifact_id, accepted)
    log.info("variations: artifact=%s produced=%d", artifact_id, accepted)


async def generate_variations(store: SessionStore, session_id: str, artifact_id: str) -> List[ComponentVariation]:
    return [v async for v in iter_variations(store, session_id, artifact_id)]


def apply_variation(store: SessionStore, session_id: str, artifact_id: str, html: str) -> Artifact:
    updated = store.apply_variation(session_id, artifact_id, html)
    if updated is None:
        raise KeyError(artifact_id)
    log.info("variations: applied to session=%s artifact=%s", session_id, artifact_id)
    return updated
