# src/assistant/modes.py
#
# ModeRegistry：助理「模式」的小型狀態機
# - 模式是封閉集合（ModeId）；每個模式一份不可變的 ModeConfig
#   （system prompt、生成參數、輸出格式、允許的下一個模式、快取分類）
# - set_mode：未知模式 -> InvalidModeError；不在 allowed_next_modes 內的切換照樣允許，只記 warning
# - get_prompt_template：system prompt -> 輔助 context -> 近期對話 -> 模式指示 -> 使用者輸入（固定順序）

from __future__ import annotations

import json
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, FrozenSet, List, Mapping, Optional, Sequence, Union

from .categories import CacheCategory
from .errors import InvalidModeError
from .prompts import PromptRegistry
from . import observability as obs


class ModeId(str, Enum):
    GENERAL = "general"
    MCQ = "mcq"
    ESSAY = "essay"
    NEWS = "news"
    MCQ_GENERATOR = "mcq_generator"
    FLASHCARD_GENERATOR = "flashcard_generator"
    ANSWER_EVALUATION = "answer_evaluation"


ModeLike = Union[ModeId, str]
Formatter = Callable[[str], str]


# -------------------------
# Output formatters
# -------------------------

def _sections(text: str) -> List[str]:
    return [s.strip() for s in re.split(r"\n\s*\n", text or "") if s.strip()]


def format_conversational(text: str) -> str:
    return text


def format_structured_mcq(text: str) -> str:
    headings = (
        (("correct answer",), "Correct Answer"),
        (("incorrect options",), "Incorrect Options"),
        (("concept",), "Key Concepts"),
        (("strategy",), "Exam Strategy"),
        (("related",), "Related Topics"),
    )
    out = []
    for section in _sections(text):
        lowered = section.lower()
        title = next((t for keys, t in headings if any(k in lowered for k in keys)), None)
        out.append(f"### {title}\n{section}" if title else section)
    return "\n\n".join(out)


def format_detailed_feedback(text: str) -> str:
    out = []
    for section in _sections(text):
        lowered = section.lower()
        if "score" in lowered or "rating" in lowered:
            out.append(f"### Score\n{section}")
        elif "strength" in lowered:
            out.append(f"### Strengths\n{section}")
        elif "improvement" in lowered or "suggestion" in lowered:
            out.append(f"### Improvements\n{section}")
        else:
            out.append(section)
    return "\n\n".join(out)


def format_news_analysis(text: str) -> str:
    out = []
    for section in _sections(text):
        lowered = section.lower()
        if "relevance" in lowered:
            out.append(f"### Relevance\n{section}")
        elif "subject" in lowered or "category" in lowered:
            out.append(f"### Category\n{section}")
        elif "key points" in lowered:
            out.append(f"### Key Points\n{section}")
        else:
            out.append(section)
    return "\n\n".join(out)


FORMATTERS: Mapping[str, Formatter] = MappingProxyType({
    "conversational": format_conversational,
    "structured_mcq": format_structured_mcq,
    "detailed_feedback": format_detailed_feedback,
    "news_analysis": format_news_analysis,
    "question_set": format_conversational,
    "flashcards": format_conversational,
})


# -------------------------
# Mode config
# -------------------------

@dataclass(frozen=True)
class ModeConfig:
    id: ModeId
    name: str
    description: str
    system_prompt_template: str
    temperature: float
    max_output_tokens: int
    output_format: str
    allowed_next_modes: FrozenSet[ModeId]
    cache_category: Optional[CacheCategory]  # None：依關鍵字推論
    instruction_line: str
    preserve_context: bool = True

    @property
    def formatter(self) -> Formatter:
        return FORMATTERS[self.output_format]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id.value,
            "name": self.name,
            "description": self.description,
            "temperature": self.temperature,
            "max_output_tokens": self.max_output_tokens,
            "output_format": self.output_format,
            "allowed_next_modes": sorted(m.value for m in self.allowed_next_modes),
            "cache_category": self.cache_category.value if self.cache_category else None,
            "preserve_context": self.preserve_context,
        }


@dataclass
class ModeSwitch:
    previous_mode: ModeId
    current_mode: ModeId
    allowed: bool
    config: ModeConfig
    context: Dict[str, Any] = field(default_factory=dict)


# 模板變數
_TEMPLATE_VARS = {"max_score": 250, "quantity": 5}

# (id, name, description, temperature, max tokens, format, next modes, category, instruction, preserve)
_MODE_TABLE = (
    (ModeId.GENERAL, "General Assistant", "General exam preparation assistance",
     0.7, 1024, "conversational",
     {ModeId.MCQ, ModeId.ESSAY, ModeId.NEWS, ModeId.MCQ_GENERATOR, ModeId.FLASHCARD_GENERATOR, ModeId.ANSWER_EVALUATION},
     None, "User Query:", True),
    (ModeId.MCQ, "MCQ Analysis", "Multiple choice question analysis and explanations",
     0.3, 512, "structured_mcq",
     {ModeId.GENERAL, ModeId.NEWS, ModeId.MCQ_GENERATOR},
     CacheCategory.MCQ_EXPLANATIONS, "Please analyze the following MCQ and provide a structured response:", True),
    (ModeId.ESSAY, "Essay Feedback", "Essay evaluation and improvement suggestions",
     0.5, 2048, "detailed_feedback",
     {ModeId.GENERAL, ModeId.MCQ, ModeId.NEWS, ModeId.ANSWER_EVALUATION},
     CacheCategory.ESSAY_FEEDBACK, "Please evaluate the following essay and provide detailed feedback:", True),
    (ModeId.NEWS, "News Analysis", "Current affairs analysis for exam relevance",
     0.4, 1024, "news_analysis",
     {ModeId.GENERAL, ModeId.MCQ, ModeId.ESSAY},
     CacheCategory.NEWS_SUMMARIES, "Please analyze the following news item for exam relevance:", False),
    (ModeId.MCQ_GENERATOR, "MCQ Generator", "Generate practice MCQs on a topic",
     0.6, 2048, "question_set",
     {ModeId.GENERAL, ModeId.MCQ, ModeId.FLASHCARD_GENERATOR},
     CacheCategory.MCQ_EXPLANATIONS, "Generate questions on the following topic:", False),
    (ModeId.FLASHCARD_GENERATOR, "Flashcard Generator", "Create revision flashcards on a topic",
     0.5, 1536, "flashcards",
     {ModeId.GENERAL, ModeId.MCQ_GENERATOR},
     CacheCategory.COMMON_QUERIES, "Create flashcards on the following topic:", False),
    (ModeId.ANSWER_EVALUATION, "Answer Evaluation", "Evaluate written mains answers",
     0.4, 2048, "detailed_feedback",
     {ModeId.GENERAL, ModeId.ESSAY},
     CacheCategory.ESSAY_FEEDBACK, "Please evaluate the following answer:", True),
)


def build_default_modes(prompts: Optional[PromptRegistry] = None) -> Dict[ModeId, ModeConfig]:
    prompts = prompts or PromptRegistry.from_default()
    modes: Dict[ModeId, ModeConfig] = {}
    for (mode_id, name, description, temperature, max_tokens, fmt,
         next_modes, category, instruction, preserve) in _MODE_TABLE:
        system_prompt, _ = prompts.render(prompts.latest(mode_id.value), variables=_TEMPLATE_VARS)
        modes[mode_id] = ModeConfig(
            id=mode_id,
            name=name,
            description=description,
            system_prompt_template=system_prompt,
            temperature=temperature,
            max_output_tokens=max_tokens,
            output_format=fmt,
            allowed_next_modes=frozenset(next_modes),
            cache_category=category,
            instruction_line=instruction,
            preserve_context=preserve,
        )

    missing = set(ModeId) - set(modes)
    if missing:
        raise RuntimeError(f"Mode table is missing: {sorted(m.value for m in missing)}")
    return modes


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# -------------------------
# Registry
# -------------------------

class ModeRegistry:
    def __init__(
        self,
        modes: Optional[Mapping[ModeId, ModeConfig]] = None,
        *,
        default_mode: ModeLike = ModeId.GENERAL,
        prompts: Optional[PromptRegistry] = None,
        history_limit: int = 10,
    ):
        self._modes: Mapping[ModeId, ModeConfig] = MappingProxyType(dict(modes or build_default_modes(prompts)))
        self.default_mode = self.resolve(default_mode)
        self.current: ModeId = self.default_mode

        # context：會序列化進 prompt；switch_info：切換紀錄，不進 prompt（避免時間戳讓 fingerprint 每次都不同）
        self.context: Dict[str, Any] = {}
        self.switch_info: Dict[str, Any] = {}
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_limit)

    def resolve(self, mode: ModeLike) -> ModeId:
        try:
            mode_id = ModeId(mode)
        except ValueError:
            raise InvalidModeError(f"Invalid mode: {mode!r}") from None
        if mode_id not in self._modes:
            raise InvalidModeError(f"Mode not configured: {mode_id.value}")
        return mode_id

    def get(self, mode: Optional[ModeLike] = None) -> ModeConfig:
        return self._modes[self.current if mode is None else self.resolve(mode)]

    @property
    def current_config(self) -> ModeConfig:
        return self._modes[self.current]

    def validate_transition(self, from_mode: ModeLike, to_mode: ModeLike) -> bool:
        try:
            src, dst = ModeId(from_mode), ModeId(to_mode)
        except ValueError:
            return False
        if src not in self._modes or dst not in self._modes:
            return False
        return src == dst or dst in self._modes[src].allowed_next_modes

    def set_mode(self, mode: ModeLike, context: Optional[Dict[str, Any]] = None) -> ModeSwitch:
        target = self.resolve(mode)
        previous = self.current
        allowed = self.validate_transition(previous, target)

        if target != previous:
            obs.log_mode_switch(previous.value, target.value, allowed)
            self._history.append({
                "mode": previous.value,
                "context": dict(self.context),
                "timestamp": _utc_now_iso(),
            })

        self.current = target
        if context:
            self.context.update(context)
        self.switch_info = {"mode_set_at": _utc_now_iso(), "previous_mode": previous.value}

        return ModeSwitch(
            previous_mode=previous,
            current_mode=target,
            allowed=allowed,
            config=self._modes[target],
            context=dict(self.context),
        )

    def get_prompt_template(
        self,
        user_text: str,
        *,
        history: Optional[Sequence[Dict[str, Any]]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        cfg = self.current_config
        parts = [cfg.system_prompt_template.strip()]

        aux = {**self.context, **(context or {})}
        if aux:
            parts.append("Context: " + json.dumps(aux, ensure_ascii=False, sort_keys=True, default=str))

        if history:
            lines = [f"{item.get('role', 'user')}: {item.get('content', '')}" for item in history]
            parts.append("Recent conversation:\n" + "\n".join(lines))

        parts.append(cfg.instruction_line)
        parts.append(user_text)
        return "\n\n".join(parts)

    def process_response(self, text: str) -> Dict[str, Any]:
        cfg = self.current_config
        return {
            "content": cfg.formatter(text),
            "mode": cfg.id.value,
            "format": cfg.output_format,
            "timestamp": _utc_now_iso(),
            "context": dict(self.context),
        }

    def add_context(self, key: str, value: Any) -> None:
        self.context[key] = value

    def clear_context(self, preserve_mode: bool = False) -> None:
        self.context = {}
        if not preserve_mode:
            self.switch_info = {}

    def get_mode_history(self, limit: int = 5) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def get_available_modes(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": mode_id.value,
                "name": cfg.name,
                "description": cfg.description,
                "is_current": mode_id == self.current,
            }
            for mode_id, cfg in self._modes.items()
        ]

    def reset_to_default(self) -> None:
        self.set_mode(self.default_mode)
        self.clear_context()


# -------------------------
# MCQ helpers
# -------------------------

_MCQ_SECTION_MARKERS = (
    ("incorrect_options", "INCORRECT OPTIONS"),
    ("correct_answer", "CORRECT ANSWER"),
    ("concepts", "CONCEPT"),
    ("strategy", "STRATEGY"),
    ("related", "RELATED"),
)


def _option(options: Any, letter: str, index: int) -> str:
    if isinstance(options, Mapping):
        return str(options.get(letter) or options.get(letter.lower()) or f"Option {letter}")
    if isinstance(options, Sequence) and not isinstance(options, str) and index < len(options):
        return str(options[index])
    return f"Option {letter}"


def build_mcq_analysis_prompt(mcq: Mapping[str, Any], *, prompts: Optional[PromptRegistry] = None) -> str:
    """
    mcq: {question, options (dict A-D 或 list), correct_answer, user_answer?, subject?}
    """
    if not mcq.get("question"):
        raise ValueError("mcq.question is required")

    prompts = prompts or PromptRegistry.from_default()
    options = mcq.get("options") or {}
    text, _ = prompts.render(
        prompts.latest("mcq_analysis"),
        variables={
            "question": mcq["question"],
            "option_a": _option(options, "A", 0),
            "option_b": _option(options, "B", 1),
            "option_c": _option(options, "C", 2),
            "option_d": _option(options, "D", 3),
            "user_answer": mcq.get("user_answer") or "Not answered",
            "correct_answer": mcq.get("correct_answer") or "Unknown",
            "subject": mcq.get("subject") or "General Studies",
        },
    )
    return text


def extract_mcq_sections(text: str) -> Dict[str, str]:
    """
    把 MCQ 分析回覆切成段落：correct_answer / incorrect_options / concepts / strategy / related
    標題行本身不算內容
    """
    sections: Dict[str, str] = {}
    current: Optional[str] = None
    buf: List[str] = []

    for line in (text or "").splitlines():
        upper = line.strip().upper()
        # INCORRECT 要先比，否則會被 CORRECT ANSWER 吃掉
        marker = next((name for name, key in _MCQ_SECTION_MARKERS if key in upper), None)
        if marker:
            if current and buf:
                sections[current] = "\n".join(buf).strip()
            current, buf = marker, []
        elif current and line.strip():
            buf.append(line)

    if current and buf:
        sections[current] = "\n".join(buf).strip()
    return sections
