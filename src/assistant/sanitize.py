# src/assistant/sanitize.py
# 使用者輸入清理：純函式、冪等、不拋例外
from __future__ import annotations

import re
from typing import Any

# 保留 \t \n \r，其餘控制字元移除
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_input(text: Any, max_chars: int = 4000) -> str:
    if not isinstance(text, str):
        return ""
    cleaned = _CONTROL_CHARS.sub("", text).strip()
    if len(cleaned) > max_chars:
        cleaned = cleaned[:max_chars].rstrip()
    return cleaned
