from __future__ import annotations

_IP_SAFEGUARD = (
    "**STRICT IP SAFEGUARD:**\n"
    "Never use artist or brand names. Use physical and material metaphors."
)


def build_style_prompt(prompt: str, has_image: bool = False) -> str:
    image_note = (
        "An inspiration image has been provided. Use it as a primary reference for color harmony, "
        'layout structure, and overall stylistic "DNA".'
        if has_image
        else ""
    )
    return f"""
Generate 3 distinct, highly evocative design directions for: "{prompt}".

{image_note}

{_IP_SAFEGUARD}

**GOAL:**
Return ONLY a raw JSON array of 3 *NEW*, creative names for these directions (e.g. ["Tactile Risograph Press", "Kinetic Silhouette Balance", "Primary Pigment Gridwork"]).
""".strip()


def build_artifact_prompt(prompt: str, style: str, has_image: bool = False) -> str:
    image_note = (
        "CRITICAL: The user has provided an inspiration image. Treat its layout, spacing, and color "
        "palette as your primary blueprint while interpreting it through the specific direction above."
        if has_image
        else ""
    )
    return f"""
You are Flash UI. Create a stunning, high-fidelity UI component for: "{prompt}".

**CONCEPTUAL DIRECTION: {style}**

{image_note}

**VISUAL EXECUTION RULES:**
1. **Materiality**: Use the specified metaphor to drive every CSS choice.
2. **Typography**: Use high-quality web fonts. Pair a bold sans-serif with a refined monospace for data.
3. **Motion**: Include subtle, high-performance CSS/JS animations.
4. **IP SAFEGUARD**: No artist names or trademarks.
5. **Layout**: Be bold with negative space and hierarchy. Avoid generic cards.

Return ONLY RAW HTML. No markdown fences.
""".strip()


def build_variation_prompt(prompt: str) -> str:
    return f"""
You are a master UI/UX designer. Generate 3 RADICAL CONCEPTUAL VARIATIONS of: "{prompt}".

**STRICT IP SAFEGUARD:**
No names of artists.
Instead, describe the *Physicality* and *Material Logic* of the UI.

**YOUR TASK:**
For EACH variation:
- Invent a unique design persona name based on a NEW physical metaphor.
- Rewrite the prompt to fully adopt that metaphor's visual language.
- Generate high-fidelity HTML/CSS.

Required JSON Output Format (stream ONE object per line):
`{{ "name": "Persona Name", "html": "..." }}`
""".strip()


PLACEHOLDER_PROMPT = (
    'Generate 20 creative, short, diverse UI component prompts (e.g. "bioluminescent task list"). '
    "Return ONLY a raw JSON array of strings. "
    "IP SAFEGUARD: Avoid referencing specific famous artists, movies, or brands."
)
