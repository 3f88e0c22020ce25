"""
Per-conversation state: rolling message window and chart history.

Histories are only appended after a question produced its full result, and
``ConversationSession.lock`` serialises questions of the same conversation.

Environment configuration (read by ``get_session_store``):
- CONVERSATION_MAX_SESSIONS: sessions kept in memory (default: 500)
"""
import asyncio
import os
from collections import OrderedDict, deque
from typing import Deque, List, Optional

from aria_coach.core.logging import get_logger
from aria_coach.services.ai.charts import ChartHistory, chart_summary
from aria_coach.services.ai.schema import ChartHistoryEntry, ConversationMessage, PipelineResult

logger = get_logger(__name__)

CONVERSATION_WINDOW = 20


class ConversationSession:
    def __init__(self, conversation_id: str, window: int = CONVERSATION_WINDOW):
        self.conversation_id = conversation_id
        self._messages: Deque[ConversationMessage] = deque(maxlen=window)
        self.chart_history = ChartHistory()
        self.lock = asyncio.Lock()

    @property
    def messages(self) -> List[ConversationMessage]:
        return list(self._messages)

    def last_assistant_message(self) -> Optional[str]:
        for message in reversed(self._messages):
            if message.role == "assistant":
                return message.content
        return None

    def append(self, message: ConversationMessage) -> None:
        self._messages.append(message)

    def record_turn(self, question: str, result: PipelineResult) -> None:
        """Append the question and its answer, and push the chart when there is one."""
        self.append(ConversationMessage(role="user", content=question))
        self.append(ConversationMessage(
            role="assistant",
            content=result.text_content,
            has_chart=result.chart is not None,
            chart_summary=chart_summary(result.chart) if result.chart else None,
        ))
        if result.chart is not None:
            self.chart_history.push(ChartHistoryEntry(
                question=question,
                spec=result.chart.spec,
                data=result.chart.data,
                insights=result.chart.insights,
            ))


class SessionStore:
    """Bounded LRU of conversation sessions."""

    def __init__(self, max_sessions: int = 500):
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[str, ConversationSession]" = OrderedDict()

    def get_or_create(self, conversation_id: str) -> ConversationSession:
        session = self._sessions.get(conversation_id)
        if session is None:
            session = ConversationSession(conversation_id)
            self._sessions[conversation_id] = session
            while len(self._sessions) > self.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.info("conversation_evicted", conversation_id=evicted)
        else:
            self._sessions.move_to_end(conversation_id)
        return session

    def get(self, conversation_id: str) -> Optional[ConversationSession]:
        return self._sessions.get(conversation_id)

    def delete(self, conversation_id: str) -> bool:
        return self._sessions.pop(conversation_id, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)


_session_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    global _session_store
    if _session_store is None:
        _session_store = SessionStore(max_sessions=int(os.getenv("CONVERSATION_MAX_SESSIONS", "500") or "500"))
    return _session_store
