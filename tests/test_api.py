"""Tests for the orchestrator HTTP API."""

from fastapi.testclient import TestClient

from shared.models import ModelResponse, ToolInvocationRequest


class TestOrchestratorAPI:
    """Tests for the FastAPI app."""

    def setup_method(self):
        """Install a gateway backed by scripted models."""
        from domains.settings import SettingsStore, register_settings_tools
        from orchestrator.gateway import AssistantGateway
        from orchestrator.llm import ScriptedChatModel, ScriptedStructuredModel
        from orchestrator.main import app
        from tool_registry import ToolRegistry

        self.store = SettingsStore()
        registry = ToolRegistry()
        register_settings_tools(registry, self.store)
        self.chat_model = ScriptedChatModel()
        self.structured_model = ScriptedStructuredModel()

        self.app = app
        self.app.state.gateway = AssistantGateway(
            chat_model=self.chat_model,
            structured_model=self.structured_model,
            registry=registry,
        )

    def teardown_method(self):
        self.app.state.gateway = None

    def test_health(self):
        with TestClient(self.app) as client:
            response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["tool_count"] == 2

    def test_list_tools(self):
        with TestClient(self.app) as client:
            response = client.get("/tools")

        assert response.status_code == 200
        names = {t["function"]["name"] for t in response.json()["tools"]}
        assert names == {"get_current_app_settings", "update_app_settings"}

    def test_chat(self):
        self.chat_model.set_next_response(
            ModelResponse(tool_calls=[ToolInvocationRequest(name="get_current_app_settings")])
        )
        self.chat_model.set_next_response("Your font size factor is 1.0.")

        with TestClient(self.app) as client:
            response = client.post("/chat", json={"message": "What is my font size?"})

        assert response.status_code == 200
        body = response.json()
        assert body["completed"] is True
        assert body["response"] == "Your font size factor is 1.0."
        assert body["iterations"] == 1
        assert [r["role"] for r in body["transcript"]] == ["user", "assistant", "tool", "assistant"]

    def test_chat_continues_session(self):
        self.chat_model.set_next_response("Hello!")
        self.chat_model.set_next_response("You said hello earlier.")

        with TestClient(self.app) as client:
            first = client.post("/chat", json={"message": "Hello"}).json()
            second = client.post(
                "/chat",
                json={"message": "What did I say?", "session_id": first["session_id"]}
            ).json()
            ended = client.delete(f"/sessions/{first['session_id']}")
            missing = client.delete(f"/sessions/{first['session_id']}")

        assert second["session_id"] == first["session_id"]
        assert [r["role"] for r in second["transcript"]] == ["user", "assistant", "user", "assistant"]
        assert len(self.chat_model.call_history[1]["turns"]) == 3
        assert ended.status_code == 200
        assert missing.status_code == 404

    def test_chat_rejects_empty_message(self):
        with TestClient(self.app) as client:
            response = client.post("/chat", json={"message": ""})

        assert response.status_code == 422
