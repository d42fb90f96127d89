from __future__ import annotations

from typing import Dict, Sequence

from herald.models import ScriptResult


def placeholder(name: str) -> str:
    return "{{" + name + "}}"


def render_result(result: ScriptResult) -> str:
    """Text substituted for a script's placeholder; one trailing newline is dropped."""
    if result.error:
        if result.stdout:
            text = f"{result.stdout}\n[script error: {result.error}]"
        else:
            text = f"[script error: {result.error}]"
    else:
        text = result.stdout
    if text.endswith("\n"):
        text = text[:-1]
    return text


def resolve_template(message: str, results: Sequence[ScriptResult]) -> str:
    # Later results win for repeated names; dict order keeps the first-seen position.
    replacements: Dict[str, str] = {}
    for result in results:
        replacements[placeholder(result.name)] = render_result(result)

    resolved = message
    for token, text in replacements.items():
        resolved = resolved.replace(token, text)
    return resolved
