# src/assistant/providers/mock_provider.py
from __future__ import annotations

import re
from typing import Any, Dict, Optional

from ..types import JsonDict, ProviderReply, ResponseEnvelope, Usage


_MODE_RESPONSES: Dict[str, tuple] = {
    "general": (
        "CONCEPT EXPLANATION:\nThis topic needs both the theoretical framework and its practical applications.\n\n"
        "STUDY APPROACH:\n• Learn the basic definition first\n• Understand the historical context\n"
        "• Connect with current developments\n• Practice previous year questions",
        "EXAM PERSPECTIVE:\nThis concept appears regularly in examinations.\n\n"
        "IMPORTANT ASPECTS:\n• Constitutional provisions\n• Historical evolution\n• Current relevance",
    ),
    "mcq": (
        "MCQ ANALYSIS:\n\nCONCEPT TESTED:\nCore principle and its application.\n\n"
        "STEP-BY-STEP APPROACH:\n1. Identify the concept being tested\n2. Eliminate clearly wrong options\n"
        "3. Compare the remaining options\n\nCORRECT ANSWER: B\n\nEXPLANATION:\nOption B states the principle accurately.",
    ),
    "essay": (
        "ESSAY EVALUATION:\n\nSTRENGTHS IDENTIFIED:\n• Clear introduction with proper context\n• Logical flow\n\n"
        "AREAS FOR IMPROVEMENT:\n• Add more contemporary examples\n• Strengthen the conclusion\n\nSCORE: 6/10",
    ),
    "news": (
        "NEWS ANALYSIS:\n\nSYLLABUS RELEVANCE:\n• GS Paper 2: Governance\n• GS Paper 3: Economy\n\n"
        "KEY TAKEAWAYS:\n• Policy background\n• Stakeholders involved\n• Likely exam angles",
    ),
    "mcq_generator": (
        "MCQ QUESTIONS GENERATED:\n\nQUESTION 1:\nWhich of the following is NOT a fundamental right?\n"
        "A) Right to Equality\nB) Right to Property\nC) Right to Freedom of Religion\nD) Right to Constitutional Remedies\n\n"
        "CORRECT ANSWER: B\nEXPLANATION: The right to property was removed from Part III by the 44th Amendment.",
    ),
    "flashcard_generator": (
        "FLASHCARDS CREATED:\n\nFLASHCARD 1:\nFRONT: What is the Basic Structure Doctrine?\n"
        "BACK: A judicial principle from the Kesavananda Bharati case (1973) limiting Parliament's amending power.",
    ),
    "answer_evaluation": (
        "ANSWER EVALUATION:\n\nSTRUCTURE ANALYSIS:\n• Introduction: clear context\n• Body: logical arguments\n"
        "• Conclusion: needs actionable suggestions\n\nSCORE: 6/10",
    ),
}

# 關鍵字命中時優先回覆（依序比對）
_CONTEXTUAL: tuple = (
    ("constitution", "CONSTITUTION:\n\nDEFINITION:\nThe supreme law establishing the framework of government, "
                     "fundamental rights and directive principles."),
    ("federalism", "FEDERALISM:\n\nCONCEPT:\nA quasi-federal structure with both federal and unitary features."),
    ("fundamental rights", "FUNDAMENTAL RIGHTS:\n\nBasic rights guaranteed under Articles 12-35 of the Constitution."),
    ("current affairs", "Current affairs are a crucial part of preparation. Follow government policy, "
                        "international relations and economic developments."),
    ("prelims", "Prelims has two objective papers: General Studies and CSAT."),
    ("mains", "Mains emphasises analytical writing across essay, general studies and optional papers."),
)

_MODE_SUFFIX = {
    "mcq": "\n\nFor MCQ practice: focus on factual accuracy and recent developments.",
    "essay": "\n\nFor essay writing: approach the topic from historical, contemporary and future angles.",
    "news": "\n\nCurrent relevance: track recent policies and court judgments on this topic.",
}


class MockProvider:
    """
    供本機/CI 與降級（fallback）用的 Mock Provider。

    特色：
    - 不需要任何金鑰，也不連網
    - 回覆是固定的（同樣輸入永遠得到同樣輸出），測試可預期
    - post_json() 回 Gemini 形狀的 body，可以直接接在 RequestClient 後面
    - respond() 給 ServiceOrchestrator 當 FallbackResponder
    """

    name: str = "mock"

    def __init__(self, *, mode: str = "general"):
        self.mode = mode

    # ---------- FallbackResponder ----------

    def respond(self, user_text: str, mode: str) -> ResponseEnvelope:
        text = self.generate_text(user_text, mode)
        return ResponseEnvelope(text=text, usage=self._usage(user_text, text), raw={"mock": True, "mode": mode})

    def generate_text(self, user_text: str, mode: str = "general") -> str:
        contextual = self._contextual(user_text or "", mode)
        if contextual:
            return contextual

        pool = _MODE_RESPONSES.get(mode) or _MODE_RESPONSES["general"]
        return pool[len(user_text or "") % len(pool)]

    # ---------- ProviderTransport ----------

    async def post_json(
        self,
        url: str,
        payload: JsonDict,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ProviderReply:
        prompt = self._extract_prompt(payload)
        text = self.generate_text(prompt, self.mode)
        usage = self._usage(prompt, text)
        body = {
            "candidates": [{"content": {"parts": [{"text": text}], "role": "model"}, "finishReason": "STOP"}],
            "usageMetadata": {
                "promptTokenCount": usage.prompt_units,
                "candidatesTokenCount": usage.output_units,
                "totalTokenCount": usage.total_units,
            },
        }
        return ProviderReply(status=200, body=body)

    # ---------- helpers ----------

    def _contextual(self, text: str, mode: str) -> Optional[str]:
        lowered = text.lower()
        for keyword, response in _CONTEXTUAL:
            if keyword in lowered:
                return response + _MODE_SUFFIX.get(mode, "")

        if mode in ("mcq_generator", "flashcard_generator"):
            topic = re.sub(r"\b(generate|create|make|mcqs?|questions|flashcards?|for|about|on)\b", "", text,
                           flags=re.IGNORECASE).strip() or "Indian Constitution"
            head = "MCQ QUESTIONS ON" if mode == "mcq_generator" else "FLASHCARDS FOR"
            return f"{head} {topic.upper()}:\n\n" + _MODE_RESPONSES[mode][0].split("\n\n", 1)[1]

        return None

    def _extract_prompt(self, payload: Any) -> str:
        try:
            prompt = str(payload["contents"][0]["parts"][0]["text"])
        except (KeyError, IndexError, TypeError):
            return ""
        # 使用者輸入在組好的 prompt 最後一段；system prompt 的關鍵字不算
        return prompt.rsplit("\n\n", 1)[-1]

    def _usage(self, prompt: str, text: str) -> Usage:
        # 粗估：4 字元 ≈ 1 token
        p = len(prompt or "") // 4
        o = len(text) // 4
        return Usage(prompt_units=p, output_units=o, total_units=p + o)
