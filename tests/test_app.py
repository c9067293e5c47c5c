"""Tests for the composition root and the HTTP API."""

import pytest

from shared.config import GatewaySettings, ProviderSettings, RegistrySettings, Settings


@pytest.fixture
def app_settings(provider_settings):
    return Settings(
        providers=provider_settings,
        registry=RegistrySettings(default_provider="A", breaker_cooldown_seconds=0),
        gateway=GatewaySettings(retry_backoff_seconds=0),
    )


@pytest.fixture
def mock_clients(provider_settings):
    from orchestrator.llm import MockProviderClient

    return {p.id: MockProviderClient(models=p.models, cost_per_1k=p.cost_per_1k) for p in provider_settings}


@pytest.fixture
def api(app_settings, mock_clients):
    from fastapi.testclient import TestClient

    from orchestrator.main import create_app

    app = create_app(app_settings, clients=mock_clients)
    with TestClient(app) as client:
        yield client


class TestBuildOrchestrator:
    """Tests for wiring the engine."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, app_settings, mock_clients):
        """Starting connects providers; stopping persists state."""
        from orchestrator.app import AUTOSAVE_JOB, HEALTH_CHECK_JOB, build_orchestrator
        from orchestrator.persistence import MemoryStore

        store = MemoryStore()
        orchestrator = build_orchestrator(app_settings, clients=mock_clients, store=store)

        assert set(orchestrator.scheduler.tasks) == {HEALTH_CHECK_JOB, AUTOSAVE_JOB}
        assert orchestrator.registry.get_client("A") is mock_clients["A"]

        await orchestrator.start(run_jobs=False)
        assert orchestrator.started is True
        assert orchestrator.registry.active_provider_id == "A"

        orchestrator.conversations.create_conversation()
        await orchestrator.stop()

        assert orchestrator.started is False
        assert sorted(store.keys()) == ["conversations", "provider-state"]

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, app_settings, mock_clients):
        """A second engine on the same store restores conversations and the active provider."""
        from orchestrator.app import build_orchestrator
        from orchestrator.persistence import MemoryStore

        store = MemoryStore()
        first = build_orchestrator(app_settings, clients=mock_clients, store=store)
        await first.start(run_jobs=False)
        conversation_id = first.conversations.create_conversation(title="Persisted")
        first.registry.switch_active_provider("B")
        await first.stop()

        second = build_orchestrator(app_settings, clients=mock_clients, store=store)
        await second.start(run_jobs=False)

        assert second.conversations.get(conversation_id).title == "Persisted"
        assert second.registry.active_provider_id == "B"
        await second.stop()

    def test_storage_path_selects_file_store(self, app_settings, mock_clients, tmp_path):
        from orchestrator.app import build_orchestrator
        from orchestrator.persistence import JsonFileStore

        app_settings.storage_path = str(tmp_path / "state")

        orchestrator = build_orchestrator(app_settings, clients=mock_clients)

        assert isinstance(orchestrator.store, JsonFileStore)

    def test_clients_built_from_settings(self, provider_settings):
        """Mock providers get clients; unsupported kinds and disabled providers do not."""
        from orchestrator.app import build_orchestrator
        from orchestrator.llm import MockProviderClient

        settings = Settings(
            providers=[
                provider_settings[0],
                ProviderSettings(id="odd", display_name="Odd", kind="carrier-pigeon", api_key="k"),
                ProviderSettings(id="off", display_name="Off", kind="mock", enabled=False),
            ],
            registry=RegistrySettings(default_provider="A"),
        )

        orchestrator = build_orchestrator(settings)

        assert isinstance(orchestrator.registry.get_client("A"), MockProviderClient)
        assert orchestrator.registry.get_client("odd") is None
        assert not orchestrator.registry.has_provider("off")


class TestAPI:
    """Tests for the HTTP endpoints."""

    def test_health(self, api):
        response = api.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["active_provider"] == "A"

    def test_providers(self, api):
        response = api.get("/providers")

        assert response.status_code == 200
        data = response.json()
        assert [p["id"] for p in data["providers"]] == ["A", "B", "C"]
        assert data["active_provider"] == "A"

    def test_activate_provider(self, api):
        response = api.post("/providers/B/activate")

        assert response.status_code == 200
        assert response.json()["from"] == "A"
        assert response.json()["to"] == "B"
        assert api.get("/providers").json()["active_provider"] == "B"

    def test_activate_unknown_provider(self, api):
        """Unknown providers map to 400 with a structured body."""
        response = api.post("/providers/nope/activate")

        assert response.status_code == 400
        assert response.json()["code"] == "UnknownProvider"
        assert response.json()["category"] == "needs_setup"

    def test_set_model(self, api):
        assert api.put("/providers/A/model", json={"model": "A-large"}).json()["model"] == "A-large"

        response = api.put("/providers/A/model", json={"model": "nope"})

        assert response.status_code == 400
        assert response.json()["code"] == "UnknownModel"

    def test_chat_creates_conversation(self, api):
        """Chat without a conversation id starts one."""
        response = api.post("/chat", json={"message": "Hello"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["content"] == "This is a mock response."
        assert data["provider"] == "A"

        conversation = api.get(f"/conversations/{data['conversation_id']}").json()
        assert [m["role"] for m in conversation["messages"]] == ["user", "assistant"]
        assert conversation["title"] == "Hello"

    def test_chat_provider_failure(self, api, mock_clients):
        """Exhausted retries come back as 503 with the failed result."""
        mock_clients["A"].fail_next(3)

        response = api.post("/chat", json={"message": "Hello"})

        assert response.status_code == 503
        assert response.json()["success"] is False
        assert response.json()["error"]["code"] == "ProviderUnavailable"

    def test_chat_refused_credential(self, api, mock_clients):
        """A refused credential comes back as 400 with a needs_setup error."""
        mock_clients["A"].fail_next(1, PermissionError("key revoked"))

        response = api.post("/chat", json={"message": "Hello"})

        assert response.status_code == 400
        assert response.json()["needs_credential"] is True
        assert response.json()["error"]["code"] == "ProviderAuthFailed"
        assert response.json()["error"]["category"] == "needs_setup"

    def test_chat_unknown_conversation(self, api):
        response = api.post("/chat", json={"message": "Hi", "conversation_id": "missing"})

        assert response.status_code == 404
        assert response.json()["code"] == "ConversationNotFound"

    def test_conversation_lifecycle(self, api):
        """Create, list, search, export and delete."""
        response = api.post("/conversations", json={"title": "Budget review", "tags": ["finance"]})
        assert response.status_code == 201
        conversation_id = response.json()["conversation_id"]

        listed = api.get("/conversations").json()["conversations"]
        assert listed[0]["id"] == conversation_id

        results = api.get("/conversations/search", params={"q": "finance"}).json()
        assert results["count"] == 1
        assert results["results"][0]["score"] == 5

        exported = api.get(f"/conversations/{conversation_id}/export", params={"format": "markdown"})
        assert exported.text.startswith("# Budget review")

        assert api.delete(f"/conversations/{conversation_id}").status_code == 200
        assert api.get(f"/conversations/{conversation_id}").status_code == 404

    def test_conversation_provider_and_sessions(self, api):
        conversation_id = api.post("/conversations", json={}).json()["conversation_id"]

        switched = api.post(f"/conversations/{conversation_id}/provider", json={"provider": "C"}).json()
        assert switched["session_state"]["current_provider"] == "C"
        assert switched["session_state"]["pinned"] is True

        resumed = api.post(f"/conversations/{conversation_id}/resume").json()
        assert resumed["session_state"]["continuation_mode"] is True

        continued = api.post("/sessions/continue").json()
        assert continued["id"] == conversation_id

        assert api.post("/conversations/unknown/resume").status_code == 404
        assert api.post(f"/conversations/{conversation_id}/cancel").json() == {"cancelled": False}

    def test_clear_and_compact(self, api):
        conversation_id = api.post("/conversations", json={}).json()["conversation_id"]
        api.post("/chat", json={"message": "one", "conversation_id": conversation_id})

        compacted = api.post(f"/conversations/{conversation_id}/compact", json={"instructions": "short"}).json()
        assert len(compacted["messages"]) == 2

        cleared = api.post(f"/conversations/{conversation_id}/clear").json()
        assert cleared["messages"] == []

    def test_reset_costs(self, api):
        api.post("/chat", json={"message": "Hello"})
        assert api.get("/providers").json()["global_cost"]["session_cost"] > 0

        response = api.post("/providers/reset-costs")

        assert response.status_code == 200
        assert response.json()["global_cost"]["session_cost"] == 0.0
        assert response.json()["global_cost"]["total_cost"] > 0

    def test_events(self, api):
        api.post("/conversations", json={})

        data = api.get("/events", params={"name": "conversation-created"}).json()

        assert data["count"] == 1
        assert data["events"][0]["name"] == "conversation-created"
