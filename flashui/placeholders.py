from __future__ import annotations

import asyncio
import logging
import random
from typing import List, Optional, Tuple

from flashui import llm_client
from flashui.llm_parsing import json_array_from_text, string_items
from flashui.llm_prompts import PLACEHOLDER_PROMPT
from flashui.retry import with_retry

log = logging.getLogger(__name__)

INITIAL_PLACEHOLDERS: Tuple[str, ...] = (
    "bioluminescent task list",
    "brutalist weather dashboard",
    "tactile music player with physical knobs",
    "origami-fold pricing table",
    "terrarium habit tracker",
    "letterpress recipe card",
    "neon subway map navigator",
    "ceramic glaze color picker",
)
REFRESH_KEEP = 10

_pool: List[str] = list(INITIAL_PLACEHOLDERS)


def current() -> List[str]:
    return list(_pool)


def reset() -> None:
    """Used by tests to clear state."""
    _pool[:] = list(INITIAL_PLACEHOLDERS)


def pick(rng: Optional[random.Random] = None) -> str:
    return (rng or random).choice(_pool)


async def refresh_placeholders(delay: float = 0.0) -> List[str]:
    """Ask the model for fresh prompt ideas and add up to REFRESH_KEEP of them to the pool.

    Failures leave the pool untouched; nothing is raised.
    """
    if delay > 0:
        await asyncio.sleep(delay)
    try:
        text = await with_retry(
            lambda: llm_client.generate_content([llm_client.text_part(PLACEHOLDER_PROMPT)]),
            label="placeholders",
        )
        ideas = string_items(json_array_from_text(text))
    except Exception as exc:
        log.warning("placeholders: refresh failed silently: %r", exc)
        return []
    if not ideas:
        return []
    random.shuffle(ideas)
    added = [idea for idea in ideas[:REFRESH_KEEP] if idea not in _pool]
    _pool.extend(added)
    log.info("placeholders: added %d suggestions (pool=%d)", len(added), len(_pool))
    return added
