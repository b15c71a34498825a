from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from apkllama.cancellation import CancellationToken
from apkllama.client import InferenceClient

logger = structlog.get_logger(__name__)

MAX_EXCHANGES = 20


@dataclass(frozen=True, slots=True)
class Message:
    sender: str
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def formatted_time(self) -> str:
        return self.timestamp.strftime("%H:%M:%S")


class ConversationHistory:
    """Rolling transcript of the free-form AI console, capped at 20 exchanges."""

    def __init__(self, max_exchanges: int = MAX_EXCHANGES) -> None:
        self._messages: deque[Message] = deque(maxlen=max_exchanges * 2)

    def __len__(self) -> int:
        return len(self._messages)

    def is_empty(self) -> bool:
        return not self._messages

    def add_user_message(self, content: str) -> None:
        self._messages.append(Message("User", content))

    def add_assistant_message(self, content: str) -> None:
        self._messages.append(Message("Assistant", content))

    def clear(self) -> None:
        self._messages.clear()

    def formatted(self) -> str:
        return "".join(f"[{msg.formatted_time}] {msg.sender}: {msg.content}\n\n" for msg in self._messages)

    def context(self) -> str:
        lines = ["Previous conversation:"]
        lines.extend(f"{msg.sender.upper()}: {msg.content}" for msg in self._messages)
        return "\n".join(lines) + "\n\nCurrent prompt: "


class ConsoleSession:
    def __init__(self, client: InferenceClient, history: ConversationHistory | None = None) -> None:
        self._client = client
        self._history = history or ConversationHistory()
        self._lock = threading.Lock()

    @property
    def history(self) -> ConversationHistory:
        return self._history

    def ask(self, prompt: str, token: CancellationToken | None = None) -> str:
        question = prompt.strip()
        with self._lock:
            full_prompt = question if self._history.is_empty() else self._history.context() + question
        answer = self._client.generate(full_prompt, token)
        with self._lock:
            self._history.add_user_message(question)
            self._history.add_assistant_message(answer)
        logger.info("console_answered", history_size=len(self._history))
        return answer
