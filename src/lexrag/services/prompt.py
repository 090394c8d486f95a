"""Prompt construction for legal question answering."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from typing import Sequence

from lexrag.models import BuiltPrompt, Message, RetrievedPassage
from lexrag.schemas import Turn

_HEBREW = re.compile(r"[\u0590-\u05FF]")
_PLACEHOLDER = re.compile(r"\{(index|source_name|section|content|context|query)\}")

HEBREW_CHARS_PER_TOKEN = 2.5
OTHER_CHARS_PER_TOKEN = 4.0

DEFAULT_SYSTEM_PROMPT = """אתה מומחה למשפט ישראלי המסייע בשאלות משפטיות בעברית.

כללים חשובים:
1. ענה רק על סמך המידע המסופק בהקשר. אם אין מספיק מידע, ציין זאת.
2. השתמש בשפה משפטית מדויקת בעברית.
3. ציין תמיד את מקורות המידע (שם החוק והסעיף הרלוונטי).
4. אל תמציא או תנחש מידע שאינו מופיע בהקשר.
5. אם השאלה חורגת מתחום המשפט הישראלי או מהמידע הזמין, הבהר זאת.
6. עדיף להגיד "איני יודע" מאשר לספק מידע שגוי.

פורמט תשובה:
- תחילה, ספק תשובה ממוקדת לשאלה
- לאחר מכן, הרחב אם רלוונטי
- בסוף, ציין את המקורות בפורמט: [מקור: שם החוק, סעיף X]"""

DEFAULT_USER_PROMPT_TEMPLATE = """הקשר משפטי רלוונטי:
{context}

שאלת המשתמש: {query}

אנא ענה על השאלה בהתבסס על ההקשר המשפטי שסופק."""

DEFAULT_PASSAGE_FORMAT = """[מקור {index}]
חוק: {source_name}
{section}
תוכן:
{content}"""


def _fill(template: str, values: dict[str, str]) -> str:
    """Substitute known placeholders in one pass so inserted text is never rescanned."""

    return _PLACEHOLDER.sub(lambda match: values.get(match.group(1), match.group(0)), template)


def estimate_token_count(text: str) -> int:
    """Approximate tokens: Hebrew at 2.5 characters per token, everything else at 4."""

    hebrew = len(_HEBREW.findall(text))
    other = len(text) - hebrew
    return math.ceil(hebrew / HEBREW_CHARS_PER_TOKEN + other / OTHER_CHARS_PER_TOKEN)


@dataclass(frozen=True)
class PromptTemplate:
    """Templates and limits used to render prompts."""

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    user_prompt_template: str = DEFAULT_USER_PROMPT_TEMPLATE
    passage_format: str = DEFAULT_PASSAGE_FORMAT
    context_separator: str = "\n\n---\n\n"
    max_context_chars: int = 12000
    history_header: str = "היסטוריית שיחה קודמת:"
    user_label: str = "שאלה"
    assistant_label: str = "תשובה"
    section_label: str = "סעיף"

    @property
    def default_context_tokens(self) -> int:
        return max(1, int(self.max_context_chars / OTHER_CHARS_PER_TOKEN))


class PromptBuilder:
    """Builds system and user messages from a question and retrieved passages."""

    def __init__(self, template: PromptTemplate | None = None) -> None:
        self._template = template or PromptTemplate()

    @property
    def template(self) -> PromptTemplate:
        return self._template

    def with_template(self, **overrides: object) -> "PromptBuilder":
        return PromptBuilder(replace(self._template, **overrides))

    def build(
        self,
        query: str,
        passages: Sequence[RetrievedPassage],
        history: Sequence[Turn] | None = None,
        max_context_tokens: int | None = None,
    ) -> BuiltPrompt:
        budget = max_context_tokens if max_context_tokens is not None else self._template.default_context_tokens
        included: list[str] = []
        used_tokens = 0
        truncated = False
        for index, passage in enumerate(passages, start=1):
            formatted = self.format_passage(passage, index)
            tokens = estimate_token_count(formatted)
            if included and used_tokens + tokens > budget:
                truncated = True
                break
            included.append(formatted)
            used_tokens += tokens

        context = self._template.context_separator.join(included)
        user_message = _fill(self._template.user_prompt_template, {"context": context, "query": query})
        if history:
            user_message = f"{self._template.history_header}\n{self.render_history(history)}\n\n{user_message}"

        system_message = self._template.system_prompt
        return BuiltPrompt(
            system_message=system_message,
            user_message=user_message,
            passages_included=len(included),
            estimated_tokens=estimate_token_count(system_message) + estimate_token_count(user_message),
            truncated=truncated,
        )

    def format_passage(self, passage: RetrievedPassage, index: int) -> str:
        section = f"{self._template.section_label}: {passage.section_ref}" if passage.section_ref else ""
        return _fill(
            self._template.passage_format,
            {
                "index": str(index),
                "source_name": passage.source_name,
                "section": section,
                "content": passage.content.strip(),
            },
        )

    def render_history(self, history: Sequence[Turn]) -> str:
        lines = []
        for turn in history:
            label = self._template.user_label if turn.role == "user" else self._template.assistant_label
            lines.append(f"{label}: {turn.content}")
        return "\n\n".join(lines)

    @staticmethod
    def to_messages(built: BuiltPrompt) -> list[Message]:
        return [
            Message(role="system", content=built.system_message),
            Message(role="user", content=built.user_message),
        ]


__all__ = [
    "PromptBuilder",
    "PromptTemplate",
    "estimate_token_count",
]
