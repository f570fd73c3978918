# src/assistant/storage.py
#
# 外部協作者的最小介面 + 參考實作
# - KeyValueStore：字串 key/value，get/set/delete + 依 prefix 列舉（快取跨 process 持久化用）
# - ConversationLog：對話紀錄（建立 / 讀取 / 附加訊息）
# 兩者都不要求交易性；正式環境可換成 Redis / DB 實作，只要符合簽名

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


# -------------------------
# Key-value store
# -------------------------

@runtime_checkable
class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self, prefix: str = "") -> List[str]:
        ...

    def flush(self) -> None:
        """把累積的變更落盤；純記憶體實作可以什麼都不做。"""
        ...


class InMemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        return [k for k in self._data if k.startswith(prefix)]

    def flush(self) -> None:
        pass

    def __len__(self) -> int:
        return len(self._data)


class JsonFileKeyValueStore(InMemoryKeyValueStore):
    """
    整份資料存成一個 JSON 檔；set / delete 只改記憶體，flush() 時才落盤（先寫暫存檔再 replace）。
    檔案壞掉時從空白開始，不中斷服務。
    """

    def __init__(self, path: str):
        self.path = Path(path)
        initial: Dict[str, str] = {}
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    initial = {str(k): str(v) for k, v in data.items()}
            except (OSError, ValueError) as e:
                logger.warning(f"Cache store unreadable, starting empty: {self.path} ({e})")
        super().__init__(initial)
        self._dirty = False

    def set(self, key: str, value: str) -> None:
        super().set(key, value)
        self._dirty = True

    def delete(self, key: str) -> None:
        if key in self._data:
            super().delete(key)
            self._dirty = True

    def flush(self) -> None:
        if self._dirty:
            self._write()
            self._dirty = False

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self.path)


# -------------------------
# Conversation log
# -------------------------

@runtime_checkable
class ConversationLog(Protocol):
    async def create_conversation(self, meta: Optional[Dict[str, Any]] = None) -> str:
        ...

    async def load_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def add_message(self, conversation_id: str, message: Dict[str, Any]) -> None:
        ...


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryConversationLog:
    """
    記錄格式：
      {"id", "title", "mode", "created_at", "updated_at", "messages": [{role, content, timestamp, metadata}]}
    """

    def __init__(self):
        self._conversations: Dict[str, Dict[str, Any]] = {}

    async def create_conversation(self, meta: Optional[Dict[str, Any]] = None) -> str:
        meta = dict(meta or {})
        conversation_id = str(meta.pop("id", None) or f"conv_{uuid.uuid4().hex[:12]}")
        now = _utc_now_iso()
        self._conversations[conversation_id] = {
            "id": conversation_id,
            "title": meta.pop("title", "New Conversation"),
            "mode": meta.pop("mode", "general"),
            "created_at": now,
            "updated_at": now,
            "messages": [],
            **meta,
        }
        return conversation_id

    async def load_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return self._conversations.get(conversation_id)

    async def add_message(self, conversation_id: str, message: Dict[str, Any]) -> None:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise KeyError(f"Conversation not found: {conversation_id}")

        item = {
            "role": message.get("role", "user"),
            "content": message.get("content", ""),
            "timestamp": message.get("timestamp") or _utc_now_iso(),
            "metadata": dict(message.get("metadata") or {}),
        }
        conv["messages"].append(item)
        conv["updated_at"] = item["timestamp"]

        # 第一則 user 訊息當標題
        if conv.get("title") == "New Conversation" and item["role"] == "user" and item["content"]:
            text = item["content"]
            conv["title"] = text[:50] + ("..." if len(text) > 50 else "")

    def list_conversations(self) -> List[Dict[str, Any]]:
        return sorted(self._conversations.values(), key=lambda c: c.get("updated_at") or "", reverse=True)
