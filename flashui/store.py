"""In-memory session/artifact store.

All state lives in immutable snapshots. Every mutation derives the next
snapshot from the latest stored one and swaps the whole sessions tuple, so a
reader holding an old snapshot never sees a half-applied change and two tasks
writing different artifacts of one session cannot lose each other's updates.

Writes run on the event loop thread; there are no locks.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from flashui.models import (
    Artifact,
    ArtifactStatus,
    ComponentVariation,
    Session,
    placeholder_session,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreEvent:
    kind: str
    session_id: Optional[str] = None
    artifact_id: Optional[str] = None
    fragment: Optional[str] = None
    stale: bool = False


Listener = Callable[[StoreEvent], None]


class SessionStore:
    def __init__(self) -> None:
        self._sessions: Tuple[Session, ...] = ()
        self._current_id: Optional[str] = None
        self._variations: Tuple[ComponentVariation, ...] = ()
        self._variation_target: Optional[Tuple[str, str]] = None
        self._variation_token = 0
        self._listeners: List[Listener] = []

    # -- reads -------------------------------------------------------------

    @property
    def sessions(self) -> Tuple[Session, ...]:
        return self._sessions

    @property
    def current_session(self) -> Optional[Session]:
        if self._current_id is None:
            return None
        return self.get_session(self._current_id)

    def get_session(self, session_id: str) -> Optional[Session]:
        for sess in self._sessions:
            if sess.id == session_id:
                return sess
        return None

    def get_artifact(self, session_id: str, artifact_id: str) -> Optional[Artifact]:
        sess = self.get_session(session_id)
        return sess.artifact(artifact_id) if sess else None

    def is_stale(self, session_id: str) -> bool:
        """A session is stale once another session has become current."""
        return self._current_id is not None and session_id != self._current_id

    # -- observation -------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def _publish(self, event: StoreEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("store: listener failed for event=%s", event.kind)

    # -- sessions ----------------------------------------------------------

    def create_session(self, prompt: str, now_ms: Optional[int] = None) -> Session:
        """Append a session with placeholder artifacts and make it current."""
        session = placeholder_session(prompt, now_ms=now_ms)
        self._sessions = self._sessions + (session,)
        self._current_id = session.id
        log.info("store: created session=%s artifacts=%d", session.id, len(session.artifacts))
        self._publish(StoreEvent("session_created", session.id))
        return session

    def set_current(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise KeyError(session_id)
        self._current_id = session_id
        self._publish(StoreEvent("current_changed", session_id))
        return session

    def _replace_session(self, session_id: str, build: Callable[[Session], Session]) -> Optional[Session]:
        sessions = self._sessions
        for idx, sess in enumerate(sessions):
            if sess.id != session_id:
                continue
            updated = build(sess)
            if updated is sess:
                return None
            self._sessions = sessions[:idx] + (updated,) + sessions[idx + 1 :]
            return updated
        log.debug("store: session=%s not found", session_id)
        return None

    def _replace_artifact(
        self,
        session_id: str,
        artifact_id: str,
        build: Callable[[Artifact], Optional[Artifact]],
    ) -> Optional[Artifact]:
        result: Dict[str, Artifact] = {}

        def rebuild(sess: Session) -> Session:
            arts = list(sess.artifacts)
            for idx, art in enumerate(arts):
                if art.id != artifact_id:
                    continue
                updated = build(art)
                if updated is None:
                    return sess
                arts[idx] = updated
                result["artifact"] = updated
                return sess.model_copy(update={"artifacts": tuple(arts)})
            return sess

        self._replace_session(session_id, rebuild)
        return result.get("artifact")

    def _stale_note(self, session_id: str) -> bool:
        stale = self.is_stale(session_id)
        if stale:
            log.debug("store: write to non-current session=%s", session_id)
        return stale

    def set_style_names(self, session_id: str, names: Sequence[str]) -> Optional[Session]:
        """Replace artifact labels in slot order; content and status are untouched."""

        def rebuild(sess: Session) -> Session:
            arts = tuple(
                art.model_copy(update={"style_name": names[idx]}) if idx < len(names) else art
                for idx, art in enumerate(sess.artifacts)
            )
            return sess.model_copy(update={"artifacts": arts})

        updated = self._replace_session(session_id, rebuild)
        if updated is not None:
            self._publish(StoreEvent("styles", session_id, stale=self._stale_note(session_id)))
        return updated

    def fail_session(self, session_id: str, html: str) -> Optional[Session]:
        """Mark every still-streaming artifact of a session as failed with ``html``."""

        def rebuild(sess: Session) -> Session:
            arts = tuple(
                art if art.is_final else art.model_copy(update={"html": html, "status": ArtifactStatus.ERROR})
                for art in sess.artifacts
            )
            return sess.model_copy(update={"artifacts": arts})

        updated = self._replace_session(session_id, rebuild)
        if updated is not None:
            self._publish(StoreEvent("session_failed", session_id, stale=self._stale_note(session_id)))
        return updated

    # -- artifacts ---------------------------------------------------------

    def append_html(self, session_id: str, artifact_id: str, fragment: str) -> Optional[Artifact]:
        """Extend a streaming artifact. Finalized artifacts ignore late fragments."""
        if not fragment:
            return None

        def build(art: Artifact) -> Optional[Artifact]:
            if art.is_final:
                return None
            return art.model_copy(update={"html": art.html + fragment})

        updated = self._replace_artifact(session_id, artifact_id, build)
        if updated is not None:
            self._publish(
                StoreEvent("append", session_id, artifact_id, fragment=fragment, stale=self._stale_note(session_id))
            )
        return updated

    def finalize_artifact(
        self,
        session_id: str,
        artifact_id: str,
        html: str,
        status: ArtifactStatus,
    ) -> Optional[Artifact]:
        """Move a streaming artifact to ``complete`` or ``error``; a no-op once final."""
        if status == ArtifactStatus.STREAMING:
            raise ValueError("finalize requires a final status")

        def build(art: Artifact) -> Optional[Artifact]:
            if art.is_final:
                return None
            return art.model_copy(update={"html": html, "status": status})

        updated = self._replace_artifact(session_id, artifact_id, build)
        if updated is not None:
            self._publish(StoreEvent("finalized", session_id, artifact_id, stale=self._stale_note(session_id)))
        else:
            log.debug("store: finalize ignored session=%s artifact=%s", session_id, artifact_id)
        return updated

    def apply_variation(self, session_id: str, artifact_id: str, html: str) -> Optional[Artifact]:
        """Overwrite an artifact wholesale with a chosen variation and mark it complete."""

        def build(art: Artifact) -> Artifact:
            return art.model_copy(update={"html": html, "status": ArtifactStatus.COMPLETE})

        updated = self._replace_artifact(session_id, artifact_id, build)
        if updated is not None:
            self._publish(StoreEvent("variation_applied", session_id, artifact_id, stale=self._stale_note(session_id)))
        return updated

    # -- variations --------------------------------------------------------

    @property
    def variations(self) -> Tuple[ComponentVariation, ...]:
        return self._variations

    @property
    def variation_target(self) -> Optional[Tuple[str, str]]:
        return self._variation_target

    def clear_variations(self, session_id: str, artifact_id: str) -> int:
        """Start a new variation request; returns the token later additions must carry."""
        self._variation_token += 1
        self._variations = ()
        self._variation_target = (session_id, artifact_id)
        self._publish(StoreEvent("variations_cleared", session_id, artifact_id))
        return self._variation_token

    def add_variation(self, token: int, variation: ComponentVariation) -> bool:
        if token != self._variation_token:
            log.debug("store: dropping variation from superseded request token=%d", token)
            return False
        self._variations = self._variations + (variation,)
        target = self._variation_target or (None, None)
        self._publish(StoreEvent("variation", target[0], target[1]))
        return True
