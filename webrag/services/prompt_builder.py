from __future__ import annotations

from datetime import date
from typing import Any, Iterable

from webrag.models.context import WebContext
from webrag.models.events import HistoryMessage
from webrag.services.prompt_store import render_prompt

Message = dict[str, str]


def history_messages(history: Iterable[HistoryMessage | dict[str, Any]]) -> list[Message]:
    """Normalize stored turns into role/content messages, oldest first."""
    messages: list[Message] = []
    for item in history:
        if isinstance(item, HistoryMessage):
            message = item.to_message()
        else:
            message = {"role": str(item.get("role", "user")), "content": str(item.get("content", ""))}
        if message["content"].strip():
            messages.append(message)
    return messages


def build_final_messages(question: str, history: list[Message], context: WebContext) -> list[Message]:
    """System sourcing rules, the prior turns, then the question with its web context."""
    system = render_prompt("answer.system", today_iso=date.today().isoformat())
    user = f"Question: {question}\n\nWeb context (JSON):\n{context.to_json()}"
    return [{"role": "system", "content": system}, *history, {"role": "user", "content": user}]


def build_direct_messages(question: str, history: list[Message]) -> list[Message]:
    return [*history, {"role": "user", "content": question}]
