"""
Response Parser - turns model output into a StructuredReply

Models asked for JSON do not always comply: the block may be fenced, bare,
cut off by the token limit, or missing entirely. Parsing is an ordered chain
of strategies; the first one that yields non-empty text wins.
"""
from __future__ import annotations

import json
import re
from typing import Any, Callable, Optional

from pydantic import ValidationError

from app.core.logging import get_logger
from app.domain.schemas import StructuredReply

logger = get_logger(__name__)

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
_BARE_OBJECT = re.compile(r'\{[\s\S]*"responses?"[\s\S]*\}')
_FIELD_START = re.compile(r'"responses?"\s*:\s*(\[)?\s*"')
_STRING_BODY = re.compile(r'((?:[^"\\]|\\.)*)("?)', re.DOTALL)
_NEXT_ITEM = re.compile(r'\s*,\s*"')
_ESCAPE = re.compile(r'\\(["\\/nrt])')
_ESCAPES = {'"': '"', "\\": "\\", "/": "/", "n": "\n", "r": "\r", "t": "\t"}

ParseStrategy = Callable[[str], Optional[StructuredReply]]


def _unescape(value: str) -> str:
    return _ESCAPE.sub(lambda m: _ESCAPES[m.group(1)], value)


def _with_ellipsis(text: str) -> str:
    if text.endswith((".", "!", "?")):
        return text
    return text + "..."


def _reply_from_data(data: Any) -> Optional[StructuredReply]:
    if not isinstance(data, dict):
        return None

    raw = data.get("responses")
    if raw is None:
        raw = data.get("response")
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return None

    responses = [r.strip() for r in raw if isinstance(r, str) and r.strip()]
    if not responses:
        logger.warning("Model returned an empty responses field")
        return None

    try:
        return StructuredReply.model_validate({**data, "responses": responses})
    except ValidationError as e:
        # Keep the text even if the optional blocks are malformed
        logger.warning(
            "Discarding malformed optional fields in model reply",
            extra_data={"errors": e.error_count()}
        )
        return StructuredReply(responses=responses)


def _load(candidate: str) -> Optional[StructuredReply]:
    try:
        return _reply_from_data(json.loads(candidate))
    except ValueError:
        return None


def parse_fenced_json(content: str) -> Optional[StructuredReply]:
    match = _FENCED_JSON.search(content)
    return _load(match.group(1)) if match else None


def parse_bare_object(content: str) -> Optional[StructuredReply]:
    match = _BARE_OBJECT.search(content)
    return _load(match.group(0)) if match else None


def parse_truncated_field(content: str) -> Optional[StructuredReply]:
    """
    Pull the response strings out of JSON that does not parse.

    Covers output cut off by the token limit; the last recovered chunk gets an
    ellipsis if it does not end a sentence.
    """
    match = _FIELD_START.search(content)
    if not match:
        return None

    is_array = match.group(1) is not None
    rest = content[match.end():]
    chunks: list[str] = []

    while True:
        body = _STRING_BODY.match(rest)
        text = _unescape(body.group(1)).strip()
        if text:
            chunks.append(text)
        closed = body.group(2) == '"'
        if not closed or not is_array:
            break
        rest = rest[body.end():]
        following = _NEXT_ITEM.match(rest)
        if not following:
            break
        rest = rest[following.end():]

    if not chunks:
        return None
    chunks[-1] = _with_ellipsis(chunks[-1])
    return StructuredReply(responses=chunks)


def parse_raw_text(content: str) -> Optional[StructuredReply]:
    """Plain prose reply; anything still looking like JSON is rejected"""
    text = _FENCED_JSON.sub("", content).strip()
    if not text or text.startswith("{"):
        return None
    return StructuredReply(responses=[text])


PARSE_STRATEGIES: list[ParseStrategy] = [
    parse_fenced_json,
    parse_bare_object,
    parse_truncated_field,
    parse_raw_text,
]


def parse_response(content: str | None, allow_raw_text: bool = True) -> Optional[StructuredReply]:
    """
    First non-empty result of the strategy chain, or None.

    With allow_raw_text=False a reply carrying no JSON structure at all is
    unusable, so the caller can ask the model again.
    """
    if not content or not content.strip():
        return None

    strategies = PARSE_STRATEGIES if allow_raw_text else PARSE_STRATEGIES[:-1]
    for strategy in strategies:
        reply = strategy(content)
        if reply is not None:
            if strategy is not parse_fenced_json:
                logger.info(
                    "Model reply recovered by fallback parser",
                    extra_data={"strategy": strategy.__name__, "preview": content[:200]}
                )
            return reply

    logger.warning("Model reply unusable", extra_data={"preview": content[:200]})
    return None
