# src/assistant/prompts/registry.py
#
# PromptRegistry：載入/版本/模板渲染
# - 管理 templates/ 內的 prompt 檔案（例如 mcq_v1.md）
# - 支援簡單變數替換：{{var}}
# - 內建 prompt_version 解析（從檔名推：*_vN.md）
#
# 使用方式（範例）：
#   registry = PromptRegistry.from_default()
#   text, meta = registry.render("mcq_analysis_v1", variables={"question": "..."})
#
# 每個模式一份 system prompt：<mode>_v1.md
# 模板用 {{var}}；沒提供的變數保留原樣

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class PromptMeta:
    name: str                 # e.g. "mcq_v1"
    version: Optional[str]    # e.g. "v1"
    path: str                 # absolute path


class PromptNotFoundError(FileNotFoundError):
    pass


class PromptTemplateError(RuntimeError):
    pass


class PromptRegistry:
    """
    以檔案系統做 Prompt Registry。
    預設目錄：src/assistant/prompts/templates
    """

    def __init__(self, template_dir: str):
        self.template_dir = Path(template_dir).resolve()
        if not self.template_dir.exists():
            raise PromptTemplateError(f"Prompt template directory not found: {self.template_dir}")

    @classmethod
    def from_default(cls) -> "PromptRegistry":
        here = Path(__file__).resolve()
        return cls(str(here.parent / "templates"))

    def list_templates(self) -> List[str]:
        return [p.stem for p in sorted(self.template_dir.glob("*.md"))]

    def resolve_path(self, name: str) -> Path:
        """
        name 可帶或不帶 .md
        """
        filename = name if name.endswith(".md") else f"{name}.md"
        p = (self.template_dir / filename).resolve()
        if not p.exists():
            raise PromptNotFoundError(f"Prompt template not found: {p}")
        return p

    def load(self, name: str) -> Tuple[str, PromptMeta]:
        p = self.resolve_path(name)
        text = _read_template(str(p))
        return text, PromptMeta(name=p.stem, version=self._infer_version(p.stem), path=str(p))

    def render(self, name: str, *, variables: Optional[Dict[str, Any]] = None) -> Tuple[str, PromptMeta]:
        """
        回傳：(rendered_text, meta)
        """
        raw, meta = self.load(name)
        return self._substitute(raw, dict(variables or {})).strip(), meta

    def latest(self, prefix: str) -> str:
        """
        mcq -> mcq_v2（若有多版，取版本號最大的）
        """
        pattern = re.compile(rf"^{re.escape(prefix)}_v(\d+)$")
        versions = []
        for stem in self.list_templates():
            m = pattern.match(stem)
            if m:
                versions.append((int(m.group(1)), stem))
        if not versions:
            raise PromptNotFoundError(f"No template versions found for: {prefix}")
        return max(versions)[1]

    # -------------------------
    # Internal helpers
    # -------------------------

    def _infer_version(self, stem: str) -> Optional[str]:
        """
        從檔名推版本：xxx_v1 -> v1
        """
        m = re.search(r"(_v\d+)$", stem)
        return m.group(1).lstrip("_") if m else None

    def _substitute(self, text: str, variables: Dict[str, Any]) -> str:
        def repl(match: re.Match) -> str:
            key = match.group(1).strip()
            if key in variables:
                v = variables[key]
                return "" if v is None else str(v)
            return match.group(0)

        return re.sub(r"\{\{\s*([^}]+?)\s*\}\}", repl, text)


@lru_cache(maxsize=64)
def _read_template(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")
