from __future__ import annotations

import asyncio
import html
import logging
import os
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Set

from flashui import llm_client
from flashui.llm_parsing import json_array_from_text, string_items, strip_code_fences
from flashui.llm_prompts import build_artifact_prompt, build_style_prompt
from flashui.models import ARTIFACTS_PER_SESSION, ArtifactStatus, InspirationImage, Session
from flashui.retry import with_retry
from flashui.store import SessionStore

log = logging.getLogger(__name__)

FALLBACK_STYLES = (
    "Primary Pigment Gridwork",
    "Tactile Risograph Layering",
    "Kinetic Silhouette Balance",
)
try:
    ARTIFACT_STAGGER_SECS = float(os.getenv("ARTIFACT_STAGGER_MS", "2500")) / 1000.0
except ValueError:
    ARTIFACT_STAGGER_SECS = 2.5

ARTIFACT_FAILURE_HINT = (
    "The API request was rejected. This usually happens due to rate limits. Please try again in a moment."
)
SESSION_FAILURE_HINT = "Rate limit exceeded. Please wait a few seconds before your next creation."

# Strong references to fire-and-forget tasks; the loop only keeps weak ones
_BACKGROUND_TASKS: Set["asyncio.Task[Any]"] = set()


def spawn(coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> "asyncio.Task[Any]":
    task = asyncio.create_task(coro, name=name)
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)
    return task


def failure_card(title: str, exc: Optional[BaseException], fallback: str) -> str:
    message = str(exc or "").strip() or fallback
    return (
        '<div style="background: #18181b; color: #f87171; padding: 24px; font-family: sans-serif; '
        'border-radius: 12px; border: 1px solid #ef4444;">'
        f'<h3 style="margin: 0 0 12px 0;">{html.escape(title)}</h3>'
        '<p style="margin: 0; font-size: 0.9rem; line-height: 1.5; color: #fca5a5;">'
        f"{html.escape(message)}</p>"
        "</div>"
    )


def parse_style_names(text: Optional[str]) -> List[str]:
    """Exactly one label per artifact slot, falling back to the fixed set."""
    try:
        names = string_items(json_array_from_text(text))
    except ValueError as exc:
        log.warning("generation.styles: failed to parse style directions (%s); using fallbacks", exc)
        names = []
    if len(names) < ARTIFACTS_PER_SESSION:
        if names:
            log.info("generation.styles: only %d directions returned; using fallbacks", len(names))
        names = list(FALLBACK_STYLES)
    return names[:ARTIFACTS_PER_SESSION]


async def generate_artifact(
    store: SessionStore,
    session_id: str,
    artifact_id: str,
    prompt: str,
    style: str,
    image: Optional[InspirationImage] = None,
) -> None:
    """Stream one artifact into the store and finalize it. Never raises."""
    log.info("generation.artifact: start session=%s artifact=%s style=%s", session_id, artifact_id, style)
    parts = llm_client.build_parts(build_artifact_prompt(prompt, style, image is not None), image)
    try:
        stream = await with_retry(
            lambda: llm_client.open_content_stream(parts),
            label=f"artifact {artifact_id}",
        )
        async for fragment in stream:
            if isinstance(fragment, str) and fragment:
                store.append_html(session_id, artifact_id, fragment)
        current = store.get_artifact(session_id, artifact_id)
        final_html = strip_code_fences(current.html if current else "")
        status = ArtifactStatus.COMPLETE if final_html else ArtifactStatus.ERROR
        store.finalize_artifact(session_id, artifact_id, final_html, status)
        log.info(
            "generation.artifact: done session=%s artifact=%s status=%s chars=%d",
            session_id,
            artifact_id,
            status.value,
            len(final_html),
        )
    except Exception as exc:
        log.exception("generation.artifact: failed session=%s artifact=%s", session_id, artifact_id)
        store.finalize_artifact(
            session_id,
            artifact_id,
            failure_card("Generation Halted", exc, ARTIFACT_FAILURE_HINT),
            ArtifactStatus.ERROR,
        )


async def fetch_style_names(prompt: str, image: Optional[InspirationImage] = None) -> List[str]:
    parts = llm_client.build_parts(build_style_prompt(prompt, image is not None), image)
    text = await with_retry(lambda: llm_client.generate_content(parts), label="style directions")
    return parse_style_names(text)


def create_session(store: SessionStore, prompt: str) -> Session:
    """Register a new session with placeholder artifacts before any remote call."""
    cleaned = (prompt or "").strip()
    if not cleaned:
        raise ValueError("prompt must not be empty")
    return store.create_session(cleaned)


async def run_session(
    store: SessionStore,
    session_id: str,
    image: Optional[InspirationImage] = None,
    *,
    stagger: Optional[float] = None,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> None:
    """Fetch style directions, then launch one staggered artifact task per slot.

    Launches are spaced by ``stagger`` seconds but never wait on each other;
    the coroutine returns once every launched task has settled.
    """
    session = store.get_session(session_id)
    if session is None:
        raise KeyError(session_id)
    stagger = ARTIFACT_STAGGER_SECS if stagger is None else stagger
    sleep = sleep or asyncio.sleep

    try:
        styles = await fetch_style_names(session.prompt, image)
    except Exception as exc:
        log.exception("generation.session: style directions failed session=%s", session_id)
        store.fail_session(session_id, failure_card("Blueprint Error", exc, SESSION_FAILURE_HINT))
        return

    store.set_style_names(session_id, styles)
    tasks: List["asyncio.Task[Any]"] = []
    for idx, (artifact, style) in enumerate(zip(session.artifacts, styles)):
        if idx:
            await sleep(stagger)
        tasks.append(
            spawn(
                generate_artifact(store, session_id, artifact.id, session.prompt, style, image),
                name=f"artifact-{artifact.id}",
            )
        )
    await asyncio.gather(*tasks)
    log.info("generation.session: settled session=%s", session_id)


def submit_prompt(
    store: SessionStore,
    prompt: str,
    image: Optional[InspirationImage] = None,
) -> Session:
    """Create the session now and continue the generation in the background.

    Must be called from a running event loop.
    """
    session = create_session(store, prompt)
    spawn(run_session(store, session.id, image), name=f"session-{session.id}")
    return session
