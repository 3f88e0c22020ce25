"""
Unit tests for conversation sessions.

Tests verify:
- The message window keeps the 20 most recent messages
- A turn appends the question, the answer and the chart (if any)
- The session store is a bounded LRU configured from the environment
"""
from aria_coach.services.ai import conversation
from aria_coach.services.ai.conversation import CONVERSATION_WINDOW, ConversationSession, SessionStore
from aria_coach.services.ai.schema import ChartResult, ChartSpecification, ConversationMessage, PipelineResult


def chart_result() -> ChartResult:
    spec = ChartSpecification.model_validate({
        "chartType": "pie",
        "title": "KOLs par ville",
        "query": {"groupBy": "city", "metrics": [{"name": "kols"}]},
    })
    return ChartResult(spec=spec, data=[{"name": "Lyon", "kols": 2}, {"name": "Grenoble", "kols": 1}])


class TestConversationSession:
    def test_window_keeps_most_recent(self):
        session = ConversationSession("c1")
        for i in range(CONVERSATION_WINDOW + 5):
            session.append(ConversationMessage(role="user", content=f"m{i}"))

        messages = session.messages

        assert len(messages) == 20
        assert messages[0].content == "m5"
        assert messages[-1].content == "m24"

    def test_record_turn_without_chart(self):
        session = ConversationSession("c1")

        session.record_turn("Bonjour", PipelineResult(text_content="Bonjour !", source="direct"))

        assert [m.role for m in session.messages] == ["user", "assistant"]
        assert session.messages[1].has_chart is False
        assert session.messages[1].chart_summary is None
        assert len(session.chart_history) == 0
        assert session.last_assistant_message() == "Bonjour !"

    def test_record_turn_with_chart(self):
        session = ConversationSession("c1")
        result = PipelineResult(text_content="Voici le graphique.", chart=chart_result(), source="llm")

        session.record_turn("KOLs par ville en camembert", result)

        assistant = session.messages[-1]
        assert assistant.has_chart is True
        assert assistant.chart_summary == "KOLs par ville (pie, 2 points)"
        latest = session.chart_history.latest()
        assert latest.question == "KOLs par ville en camembert"
        assert latest.data == [{"name": "Lyon", "kols": 2}, {"name": "Grenoble", "kols": 1}]

    def test_last_assistant_message_when_none(self):
        session = ConversationSession("c1")
        session.append(ConversationMessage(role="user", content="Bonjour"))

        assert session.last_assistant_message() is None


class TestSessionStore:
    def test_get_or_create_reuses_sessions(self):
        store = SessionStore()

        first = store.get_or_create("a")

        assert store.get_or_create("a") is first
        assert store.get("b") is None
        assert len(store) == 1

    def test_least_recently_used_is_evicted(self):
        store = SessionStore(max_sessions=2)
        store.get_or_create("a")
        store.get_or_create("b")
        store.get_or_create("a")

        store.get_or_create("c")

        assert store.get("b") is None
        assert store.get("a") is not None
        assert store.get("c") is not None

    def test_delete(self):
        store = SessionStore()
        store.get_or_create("a")

        assert store.delete("a") is True
        assert store.delete("a") is False

    def test_singleton_reads_environment(self, monkeypatch):
        monkeypatch.setenv("CONVERSATION_MAX_SESSIONS", "3")

        store = conversation.get_session_store()

        assert store.max_sessions == 3
        assert conversation.get_session_store() is store
