from __future__ import annotations

import json
import re
from typing import Any

from .errors import ResponseParsingError, ResponseTagError

DEFAULT_RESPONSE_TAG = "GENERATE"

_FENCE_PATTERN = re.compile(r"^\s*```[a-zA-Z0-9_+\-.]*[ \t]*\n?(.*?)\n?```\s*$", re.DOTALL)


def slugify_name(name: str, *, max_length: int = 24) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:max_length].rstrip("-")


def parse_generate_tag(text: str, *, tag: str = DEFAULT_RESPONSE_TAG) -> str:
    """Return the payload enclosed in the first ``<TAG>...</TAG>`` pair.

    Raises:
        ResponseTagError: If the response does not contain a complete tag pair.
    """
    match = re.search(rf"<{re.escape(tag)}>(.*?)</{re.escape(tag)}>", text, flags=re.DOTALL)
    if match is None:
        preview = text[:120].replace("\n", " ")
        raise ResponseTagError(f"Response is missing the <{tag}> tag pair: {preview}")
    return match.group(1).strip()


def remove_code_block_fences(text: str) -> str:
    match = _FENCE_PATTERN.match(text)
    if match is None:
        return text.strip()
    return match.group(1).strip()


def extract_json_payload(text: str) -> dict[str, Any]:
    """Extract a JSON object from model output.

    Attempts parsing in order: direct JSON, fenced code block, first/last brace extraction.

    Raises:
        ResponseParsingError: If no JSON object can be extracted from the text.
    """
    body = remove_code_block_fences(text)
    if not body:
        raise ResponseParsingError("Model returned empty output; expected JSON object")

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    start = body.find("{")
    end = body.rfind("}")
    if start != -1 and end > start:
        candidate = body[start : end + 1]
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError as exc:
            raise ResponseParsingError(f"Failed to parse extracted JSON payload: {exc}") from exc
        if isinstance(payload, dict):
            return payload

    preview = body[:220].replace("\n", " ")
    raise ResponseParsingError(f"Model output did not contain a JSON object: {preview}")


def content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous LLM response content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
            elif isinstance(item, dict) and item.get("content") is not None:
                chunks.append(content_to_text(item["content"]))
            else:
                chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    return str(content)

