"""
Integration tests for the HTTP API (health, LLM configuration, coach).

The coach pipeline is built on scripted orchestrators; no LLM is contacted.
"""
import pytest
from fastapi.testclient import TestClient

from aria_coach.main import app
from aria_coach.routes import coach as coach_routes
from aria_coach.routes import llm as llm_routes
from aria_coach.services.ai import conversation
from aria_coach.services.ai.agents.chart import ChartAgent
from aria_coach.services.ai.agents.response import ResponseAgent
from aria_coach.services.ai.agents.router import IntentRouterAgent
from aria_coach.services.ai.context import ContextBuilder
from aria_coach.services.ai.orchestration import CoachPipeline
from aria_coach.services.llm.invocation import ConfigTestResult
from tests.fakes import TODAY, ScriptedOrchestrator

GROQ_KEY = "gsk_abcdefghijklmnop"


@pytest.fixture
def client(monkeypatch):
    """Create test client."""
    for name in ("LOCAL_LLM_BASE_URL", "LOCAL_LLM_MODEL", "LOCAL_LLM_ROUTER_MODEL"):
        monkeypatch.delenv(name, raising=False)
    return TestClient(app)


@pytest.fixture
def coach_with(monkeypatch, dataset, knowledge_base):
    """Install a pipeline answering from scripted replies."""

    def install(replies=None, stream_pieces=None):
        pipeline = CoachPipeline(
            ContextBuilder(directory=dataset, search=dataset, actions=dataset, knowledge=knowledge_base, today=TODAY),
            router=IntentRouterAgent(ScriptedOrchestrator()),
            chart_agent=ChartAgent(ScriptedOrchestrator()),
            response_agent=ResponseAgent(ScriptedOrchestrator(replies=replies, stream_pieces=stream_pieces)),
        )
        monkeypatch.setattr(coach_routes, "get_coach_pipeline", lambda: pipeline)
        monkeypatch.setattr(coach_routes, "get_crm_dataset", lambda: dataset)
        return pipeline

    return install


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/health/")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "message": "API is running"}

    def test_trace_id_is_propagated(self, client):
        response = client.get("/health/", headers={"X-Trace-ID": "trace-abc"})

        assert response.headers["X-Trace-ID"] == "trace-abc"
        assert response.headers["X-Request-ID"]

    def test_llm_health_without_configuration(self, client):
        response = client.get("/health/llm")

        data = response.json()
        assert response.status_code == 200
        assert data["configured"] is None
        assert data["local"]["baseUrl"] == "http://localhost:11434/v1"
        assert data["local"]["model"] == "qwen3:4b"
        assert data["onDevice"]["supported"] is False
        assert "probes" not in data

    def test_metrics_endpoint(self, client):
        client.get("/health/")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "llm_requests_total" in response.text


class TestLLMConfig:
    def test_providers(self, client):
        response = client.get("/llm/providers")

        providers = {p["id"]: p for p in response.json()}
        assert providers["groq"]["keyPrefix"] == "gsk_"
        assert providers["groq"]["defaultModel"] == "llama-3.3-70b-versatile"
        assert providers["azure"]["needsBaseUrl"] is True
        assert "local" in providers

    def test_save_read_and_clear(self, client):
        saved = client.put("/llm/config", json={"apiKey": GROQ_KEY})

        assert saved.status_code == 200
        assert saved.json()["provider"] == "groq"
        assert saved.json()["apiKey"] == "gsk_...mnop"

        stored = client.get("/llm/config").json()
        assert stored["configured"] is True
        assert stored["model"] == "llama-3.3-70b-versatile"
        assert GROQ_KEY not in str(stored)

        cleared = client.delete("/llm/config").json()
        assert cleared["configured"] is False
        assert client.get("/llm/config").json()["configured"] is False

    def test_local_configuration_without_key(self, client):
        saved = client.put(
            "/llm/config",
            json={"provider": "local", "model": "llama3.2", "baseUrl": "http://gpu-box:11434/v1"},
        )

        assert saved.status_code == 200
        stored = client.get("/llm/config").json()
        assert stored["configured"] is True
        assert stored["provider"] == "local"
        assert stored["model"] == "llama3.2"
        health = client.get("/health/llm").json()
        assert health["local"]["baseUrl"] == "http://gpu-box:11434/v1"
        assert health["local"]["model"] == "llama3.2"

    def test_explicit_provider_and_model(self, client):
        response = client.put(
            "/llm/config",
            json={"provider": "OpenAI", "apiKey": "sk-proj-1234567890", "model": "gpt-4o"},
        )

        assert response.json()["provider"] == "openai"
        assert response.json()["model"] == "gpt-4o"

    @pytest.mark.parametrize(
        "body",
        [
            {"apiKey": "short"},
            {"apiKey": "your_api_key_here"},
            {"provider": "skynet", "apiKey": GROQ_KEY},
        ],
    )
    def test_invalid_configuration(self, client, body):
        response = client.put("/llm/config", json=body)

        assert response.status_code == 400
        assert response.json()["status_code"] == 400

    def test_connection_test(self, client, monkeypatch):
        probed = []

        class DummyInvoker:
            async def probe(self, adapter, credential):
                probed.append((adapter.kind, credential))
                return ConfigTestResult(success=True, provider="groq", model=adapter.default_model, latency_ms=42)

        monkeypatch.setattr(llm_routes, "get_llm_invoker", lambda: DummyInvoker())

        response = client.post("/llm/config/test", json={"apiKey": GROQ_KEY})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert probed == [("groq", GROQ_KEY)]

    def test_on_device_status(self, client):
        response = client.get("/llm/on-device")

        assert response.status_code == 200
        assert response.json()["supported"] is False


class TestCoach:
    def test_ask_answers_and_records_turn(self, client, coach_with):
        coach_with(replies=["Bonjour ! Votre territoire va bien."])

        response = client.post("/coach/ask", json={"question": "Comment va mon territoire ?"})

        data = response.json()
        assert response.status_code == 200
        assert data["textContent"] == "Bonjour ! Votre territoire va bien."
        assert data["source"] == "direct"
        assert data["providerTier"] == "configured"
        assert "chart" not in data
        session = conversation.get_session_store().get(data["conversationId"])
        assert [m.role for m in session.messages] == ["user", "assistant"]

    def test_conversation_continues(self, client, coach_with):
        coach_with(replies=["Première.", "Seconde."])

        first = client.post("/coach/ask", json={"question": "Bonjour", "conversationId": "conv-1"})
        second = client.post("/coach/ask", json={"question": "Et ensuite ?", "conversationId": "conv-1"})

        assert first.json()["conversationId"] == second.json()["conversationId"] == "conv-1"
        assert len(conversation.get_session_store().get("conv-1").messages) == 4

    def test_all_tiers_failed_returns_diagnostic(self, client, coach_with):
        coach_with(replies=[])

        response = client.post("/coach/ask", json={"question": "Quels KOLs voir ?"})

        assert response.status_code == 200
        assert response.json()["source"] == "diagnostic"
        assert "HTTP 503" in response.json()["textContent"]

    def test_blank_question(self, client, coach_with):
        coach_with()

        assert client.post("/coach/ask", json={"question": "   "}).status_code == 400
        assert client.post("/coach/ask", json={"question": ""}).status_code == 422

    def test_stream(self, client, coach_with):
        coach_with(stream_pieces=["Bon", "jour"])

        response = client.post("/coach/stream", json={"question": "Salut", "conversationId": "conv-s"})

        assert response.status_code == 200
        assert response.headers["X-Conversation-ID"] == "conv-s"
        assert response.text.count("event: delta") == 2
        assert "event: done" in response.text
        assert "\"textContent\":\"Bonjour\"" in response.text
        assert len(conversation.get_session_store().get("conv-s").messages) == 2

    def test_delete_conversation(self, client, coach_with):
        coach_with(replies=["Ok."])
        client.post("/coach/ask", json={"question": "Bonjour", "conversationId": "conv-d"})

        deleted = client.delete("/coach/conversations/conv-d")
        missing = client.delete("/coach/conversations/conv-d")

        assert deleted.json() == {"deleted": True, "conversationId": "conv-d"}
        assert missing.status_code == 404
