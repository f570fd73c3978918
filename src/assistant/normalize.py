# src/assistant/normalize.py
#
# Provider 回應驗證與擷取
# 已知兩種形狀（依 API 版本不同）：
#   candidates[0].content.parts[0].text
#   candidates[0].content.text
from __future__ import annotations

from typing import Any

from .errors import AIValidationError
from .types import ResponseCheck, ResponseEnvelope, Usage


def validate_response(data: Any) -> ResponseCheck:
    if not isinstance(data, dict):
        return ResponseCheck(False, "not an object")

    if data.get("error"):
        return ResponseCheck(False, "api returned error")

    candidates = data.get("candidates")
    if not isinstance(candidates, list):
        return ResponseCheck(False, "no candidates array")
    if not candidates:
        return ResponseCheck(False, "empty candidates array")

    candidate = candidates[0]
    if not isinstance(candidate, dict):
        return ResponseCheck(False, "invalid first candidate")

    content = candidate.get("content")
    if not isinstance(content, dict):
        return ResponseCheck(False, "no content in candidate")

    parts = content.get("parts")
    if isinstance(parts, list):
        if not parts:
            return ResponseCheck(False, "empty parts array")
        first = parts[0]
        if not isinstance(first, dict) or not first.get("text"):
            return ResponseCheck(False, "no text in first part")
        return ResponseCheck(True)

    text = content.get("text")
    if isinstance(text, str) and text:
        return ResponseCheck(True)

    return ResponseCheck(False, "no parts array or text in content")


def extract_text(data: Any) -> str:
    check = validate_response(data)
    if not check.valid:
        raise AIValidationError(f"Invalid response format: {check.reason}", data=data)

    content = data["candidates"][0]["content"]

    # 新版：content.text
    text = content.get("text")
    if isinstance(text, str) and text:
        return text

    # 舊版：content.parts[0].text
    return str(content["parts"][0]["text"])


def _count(meta: dict, key: str) -> int:
    try:
        return int(meta.get(key) or 0)
    except (TypeError, ValueError):
        return 0


def extract_usage(data: Any) -> Usage:
    meta = data.get("usageMetadata") if isinstance(data, dict) else None
    if not isinstance(meta, dict):
        return Usage()

    return Usage(
        prompt_units=_count(meta, "promptTokenCount"),
        output_units=_count(meta, "candidatesTokenCount"),
        total_units=_count(meta, "totalTokenCount"),
    )


def normalize_response(data: Any) -> ResponseEnvelope:
    return ResponseEnvelope(text=extract_text(data), usage=extract_usage(data), raw=data)
