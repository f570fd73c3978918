# src/assistant/types.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

JsonDict = Dict[str, Any]


@dataclass
class Usage:
    prompt_units: int = 0
    output_units: int = 0
    total_units: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_units": self.prompt_units,
            "output_units": self.output_units,
            "total_units": self.total_units,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Usage":
        data = data or {}
        return cls(
            prompt_units=int(data.get("prompt_units") or 0),
            output_units=int(data.get("output_units") or 0),
            total_units=int(data.get("total_units") or 0),
        )


@dataclass
class ResponseEnvelope:
    text: str
    usage: Usage = field(default_factory=Usage)
    raw: Any = None


@dataclass(frozen=True)
class ResponseCheck:
    valid: bool
    reason: str = ""


@dataclass
class ProviderReply:
    """Transport 回傳：HTTP 狀態碼 + 已解析的 JSON body。"""
    status: int
    body: Any = None


class FallbackResponder(Protocol):
    """provider 無法使用時，產生降級（但有明確標示）的回覆。"""

    def respond(self, user_text: str, mode: str) -> ResponseEnvelope:
        ...


@dataclass
class AssistantReply:
    id: str
    conversation_id: Optional[str]
    content: str
    mode: str
    timestamp: str
    processing_time_ms: int = 0
    usage: Usage = field(default_factory=Usage)
    context: JsonDict = field(default_factory=dict)
    from_cache: bool = False
    is_fallback: bool = False
    category: Optional[str] = None
    formatted: Optional[str] = None
    error_type: Optional[str] = None


HistoryItem = Dict[str, Any]
History = List[HistoryItem]
