"""Anthropic Messages API helpers shared by the research services."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from anthropic import AsyncAnthropic

from config import settings

logger = logging.getLogger(__name__)

WEB_SEARCH_TOOL_TYPE = "web_search_20250305"
_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_FENCED_ANY_RE = re.compile(r"```\s*([\s\S]*?)\s*```")
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def get_anthropic_client(api_key: Optional[str] = None) -> Optional[AsyncAnthropic]:
    """Get an async Anthropic client, or None for missing/placeholder keys."""
    key = (api_key if api_key is not None else settings.ANTHROPIC_API_KEY) or ""
    key = key.strip()
    if not key or "your_" in key or key == "test-key":
        return None
    return AsyncAnthropic(api_key=key)


def web_search_tool(max_uses: Optional[int] = None) -> Dict[str, Any]:
    tool: Dict[str, Any] = {"type": WEB_SEARCH_TOOL_TYPE, "name": "web_search"}
    uses = int(max_uses if max_uses is not None else settings.WEB_SEARCH_MAX_USES)
    if uses > 0:
        tool["max_uses"] = uses
    return tool


async def create_message(
    client: AsyncAnthropic,
    *,
    prompt: str,
    max_tokens: int,
    tools: Optional[List[Dict[str, Any]]] = None,
    max_continuations: int = 3,
    **kwargs: Any,
) -> Any:
    """Single-prompt Messages API call that resumes ``pause_turn`` server-tool turns."""
    messages: List[Dict[str, Any]] = [{"role": "user", "content": prompt}]
    request: Dict[str, Any] = {
        "model": settings.RESEARCH_MODEL,
        "max_tokens": max_tokens,
        "messages": messages,
        **kwargs,
    }
    if tools:
        request["tools"] = tools

    response = await client.messages.create(**request)
    continuations = 0
    while _block_field(response, "stop_reason") == "pause_turn" and continuations < max_continuations:
        continuations += 1
        messages.append({"role": "assistant", "content": _block_field(response, "content")})
        response = await client.messages.create(**request)
    return response


def _block_field(block: Any, field: str) -> Any:
    if isinstance(block, dict):
        return block.get(field)
    return getattr(block, field, None)


def extract_text(message: Any) -> str:
    """Join every text block of a Messages API response."""
    content = _block_field(message, "content") or []
    parts: List[str] = []
    for block in content:
        if _block_field(block, "type") == "text":
            text = _block_field(block, "text")
            if text:
                parts.append(str(text))
    return "\n".join(parts).strip()


def find_tool_input(message: Any, tool_name: str) -> Optional[Dict[str, Any]]:
    """Return the input of the last client tool_use block named ``tool_name``."""
    content = _block_field(message, "content") or []
    found: Optional[Dict[str, Any]] = None
    for block in content:
        if _block_field(block, "type") != "tool_use":
            continue
        if _block_field(block, "name") != tool_name:
            continue
        payload = _block_field(block, "input")
        if isinstance(payload, dict):
            found = payload
    return found


def strip_code_fences(text: str) -> str:
    """Unwrap a ```json fenced block (or any fenced block) when present."""
    match = _FENCED_JSON_RE.search(text) or _FENCED_ANY_RE.search(text)
    if match:
        return match.group(1)
    return text


def parse_json_response(text: str, *, find_object: bool = False) -> Any:
    """Parse an LLM JSON answer that may be wrapped in markdown fences.

    With ``find_object`` the outermost ``{...}`` span is parsed, which tolerates
    chatter before or after the JSON body.
    """
    candidate = strip_code_fences(text or "").strip()
    if find_object:
        match = _JSON_OBJECT_RE.search(candidate)
        if match:
            candidate = match.group(0)
    return json.loads(candidate)
