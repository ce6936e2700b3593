"""Response parsing utilities for LLM output.

Extracts JSON from raw LLM responses, turns it into an ActorAction, and
normalizes error messages into stable signatures for loop detection.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from src.core.exceptions import ResponseParseError
from src.core.models import ActionKind, ActorAction

# Accepted spellings for action fields; models drift between snake and camel case.
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "kind": ("action", "kind", "type"),
    "target_actor": ("target_actor", "targetActor", "targetAgent", "handoff", "next"),
    "path": ("path", "file", "filePath", "file_path"),
    "signal": ("signal", "consensus", "consensusSignal", "consensus_signal"),
}


def extract_code_blocks(text: str, language: Optional[str] = None) -> list[str]:
    """Extract fenced code blocks from LLM output."""
    if language:
        pattern = rf"```{re.escape(language)}\s*\n(.*?)```"
    else:
        pattern = r"```(?:\w+)?\s*\n(.*?)```"

    matches = re.findall(pattern, text, re.DOTALL)
    return [m.strip() for m in matches]


def extract_json_block(text: str) -> Optional[dict[str, Any]]:
    """Extract and parse the first JSON object from LLM output.

    Tries a ```json fence, then the whole text, then the outermost {...} span.
    """
    candidates = [*extract_code_blocks(text, "json"), text.strip()]
    outer = re.search(r"\{.*\}", text, re.DOTALL)
    if outer:
        candidates.append(outer.group(0))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def parse_actor_action(text: str, default_target: Optional[str] = None) -> ActorAction:
    """Parse an LLM reply into an ActorAction.

    Raises:
        ResponseParseError: No JSON object, unknown action, or missing payload.
    """
    data = extract_json_block(text)
    if data is None:
        raise ResponseParseError(f"No JSON object in actor reply: {text[:200]!r}")
    return action_from_dict(data, default_target=default_target)


def action_from_dict(data: dict[str, Any], default_target: Optional[str] = None) -> ActorAction:
    fields: dict[str, Any] = {}
    for name, aliases in _FIELD_ALIASES.items():
        for alias in aliases:
            if data.get(alias) not in (None, ""):
                fields[name] = data[alias]
                break

    kind = str(fields.get("kind", "")).lower()
    if not kind and "signal" in fields:
        kind = ActionKind.CONSENSUS.value
    if kind not in {k.value for k in ActionKind}:
        raise ResponseParseError(f"Unknown action kind {kind!r}")
    fields["kind"] = kind

    if "target_actor" not in fields:
        if default_target is None:
            raise ResponseParseError("Actor reply names no handoff target")
        fields["target_actor"] = default_target

    for key in ("reasoning", "content", "decision", "edits"):
        if key in data:
            fields[key] = data[key]
    if isinstance(fields.get("signal"), str):
        fields["signal"] = fields["signal"].lower()

    try:
        return ActorAction.model_validate(fields)
    except PydanticValidationError as e:
        raise ResponseParseError(f"Invalid {kind} action: {e}") from e


def normalize_error_signature(error_text: str) -> str:
    """Normalize an error message for deduplication.

    Strips file paths, line numbers, and timestamps so that
    the same logical error produces the same signature.
    """
    sig = error_text.strip()

    # Remove timestamps (before line numbers, since :HH:MM:SS overlaps with :N:N)
    sig = re.sub(r'\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}[.\d]*\w*', '<TIMESTAMP>', sig)

    # Remove file paths (Unix and Windows)
    sig = re.sub(r'(/[\w./-]+|\w:\\[\w.\\-]+)', '<PATH>', sig)

    # Remove line numbers
    sig = re.sub(r'line \d+', 'line <N>', sig, flags=re.IGNORECASE)
    sig = re.sub(r':\d+:\d+', ':<N>:<N>', sig)

    # Remove memory addresses
    sig = re.sub(r'0x[0-9a-fA-F]+', '<ADDR>', sig)

    # Collapse whitespace
    sig = re.sub(r'\s+', ' ', sig).strip()

    return sig
