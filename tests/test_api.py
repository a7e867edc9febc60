# =============================================================================
# API Tests — Chat and Admin Endpoints
# =============================================================================
#
# FastAPI TestClient with dependency overrides:
#   - get_current_principal → a principal the test can switch
#   - get_checkpoint_store  → MemoryStore (dict-backed, no event loop ties)
#   - get_pipeline_services → scripted LLM + in-memory content
#
# The client is not used as a context manager, so the lifespan (which
# creates tables on Postgres) never runs. Audit logging is switched off.
# =============================================================================

from __future__ import annotations

import copy
import json
import time

import pytest
from fastapi.testclient import TestClient

from convoflow.api import audit
from convoflow.api.deps import get_checkpoint_store, get_current_principal, get_pipeline_services
from convoflow.errors import AccessDeniedError, CheckpointNotFoundError, StaleCheckpointError
from convoflow.main import app
from convoflow.services.auth import Principal, Role
from convoflow.services.checkpoints import CheckpointRecord, CheckpointStats
from tests.fakes import ADEQUACY, ANSWER, SELECTOR, make_services

ALICE = Principal("alice", Role.USER)
BOB = Principal("bob", Role.USER)
ADMIN = Principal("root", Role.ADMIN)

SCRIPT = {
    SELECTOR: {"tasks": [{"category": "web", "query": "paris spring"}], "reasoning": "travel"},
    ADEQUACY: {"is_adequate": True, "score": 0.9, "reasoning": "covered"},
    ANSWER: "Paris is mild in spring [1].",
}


class MemoryStore:
    """Dict-backed checkpoint store with the same ownership rules."""

    ttl_seconds = 3600

    def __init__(self) -> None:
        self.records: dict[str, CheckpointRecord] = {}
        self.cleanups: list[int] = []

    def _check(self, record: CheckpointRecord, principal: Principal) -> None:
        if not principal.is_admin and record.owner_id != principal.user_id:
            raise AccessDeniedError(f"'{principal.user_id}' may not access '{record.run_id}'")

    async def get(self, run_id, principal):
        record = self.records.get(run_id)
        if record is None:
            raise CheckpointNotFoundError(run_id)
        self._check(record, principal)
        return copy.deepcopy(record)

    async def put(self, run_id, step, state, principal):
        now = int(time.time())
        record = self.records.get(run_id)
        if record is None:
            self.records[run_id] = CheckpointRecord(
                run_id, principal.user_id, step, copy.deepcopy(state), now, now
            )
            return
        self._check(record, principal)
        if step <= record.step:
            raise StaleCheckpointError(run_id, step, record.step)
        record.step, record.state, record.updated_at = step, copy.deepcopy(state), now

    async def delete(self, run_id, principal):
        record = self.records.get(run_id)
        if record is None:
            raise CheckpointNotFoundError(run_id)
        self._check(record, principal)
        del self.records[run_id]

    async def cleanup(self, max_age_seconds=None):
        self.cleanups.append(max_age_seconds)
        return 2

    async def stats(self, principal):
        return CheckpointStats(
            total=len(self.records),
            oldest=None,
            newest=None,
            avg_size_bytes=0.0,
            per_user_counts={"alice": len(self.records)} if principal.is_admin else None,
        )


class Harness:
    def __init__(self) -> None:
        self.principal = ALICE
        self.store = MemoryStore()
        self.services, self.provider = make_services(SCRIPT)
        self.http = TestClient(app)

    def chat(self, message, **extra):
        return self.http.post("/chat", json={"message": message, **extra})


@pytest.fixture
def api(monkeypatch):
    monkeypatch.setattr(audit.settings, "audit_logging_enabled", False)
    harness = Harness()
    app.dependency_overrides[get_current_principal] = lambda: harness.principal
    app.dependency_overrides[get_checkpoint_store] = lambda: harness.store
    app.dependency_overrides[get_pipeline_services] = lambda: harness.services
    yield harness
    app.dependency_overrides.clear()


def _sse_events(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealth:

    def test_health(self, api):
        response = api.http.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


# ---------------------------------------------------------------------------
# POST /chat
# ---------------------------------------------------------------------------


class TestChat:

    def test_new_conversation(self, api):
        response = api.chat("What is Paris like in spring?")
        assert response.status_code == 200

        body = response.json()
        assert body["answer"] == "Paris is mild in spring [1]."
        assert body["is_final"] is True
        assert body["iterations"] == 0
        assert body["sources"][0]["id"] == "web-paris"
        assert body["sources"][0]["index"] == 1
        assert api.store.records[body["run_id"]].owner_id == "alice"

    def test_follow_up_on_same_run(self, api):
        run_id = api.chat("What is Paris like in spring?").json()["run_id"]
        response = api.chat("And in summer?", run_id=run_id)

        assert response.status_code == 200
        assert response.json()["run_id"] == run_id
        messages = api.store.records[run_id].state["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant"]

    def test_sources_can_be_hidden(self, api):
        response = api.chat("What is Paris like in spring?", options={"include_source_info": False})
        assert response.json()["sources"] == []

    def test_foreign_run_forbidden(self, api):
        run_id = api.chat("What is Paris like in spring?").json()["run_id"]
        api.principal = BOB
        response = api.chat("Show me", run_id=run_id)
        assert response.status_code == 403

    @pytest.mark.parametrize("payload", [
        {},
        {"message": "hi", "messages": [{"role": "user", "content": "hi"}]},
        {"messages": [{"role": "assistant", "content": "hello"}]},
        {"message": ""},
        {"message": "hi", "options": {"temperature": 5}},
    ])
    def test_invalid_requests(self, api, payload):
        assert api.http.post("/chat", json=payload).status_code == 422


# ---------------------------------------------------------------------------
# POST /chat/stream
# ---------------------------------------------------------------------------


class TestChatStream:

    def test_step_events_then_done(self, api):
        response = api.http.post("/chat/stream", json={"message": "What is Paris like in spring?"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = _sse_events(response.text)
        kinds = [kind for kind, _ in events]
        assert kinds[-1] == "done"
        steps = [data for kind, data in events if kind == "step"]
        assert [s["node"] for s in steps] == [
            "select", "retrieve", "rerank", "evaluate", "synthesize", "guard",
        ]
        assert [s["step"] for s in steps] == [1, 2, 3, 4, 5, 6]
        assert events[-1][1]["answer"] == "Paris is mild in spring [1]."

    def test_error_event(self, api):
        run_id = api.chat("What is Paris like in spring?").json()["run_id"]
        api.principal = BOB
        response = api.http.post("/chat/stream", json={"message": "hi", "run_id": run_id})

        events = _sse_events(response.text)
        assert events == [("error", {
            "message": f"'bob' may not access '{run_id}'", "status_code": 403,
        })]


# ---------------------------------------------------------------------------
# Checkpoint Endpoints
# ---------------------------------------------------------------------------


class TestRunEndpoints:

    def test_get_run(self, api):
        run_id = api.chat("What is Paris like in spring?").json()["run_id"]
        response = api.http.get(f"/chat/{run_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["owner_id"] == "alice"
        assert body["step"] == 6
        assert body["current_node"] == "guard"
        assert body["is_final"] is True
        assert body["answer"] == "Paris is mild in spring [1]."
        assert len(body["messages"]) == 2

    def test_get_unknown_run(self, api):
        assert api.http.get("/chat/missing").status_code == 404

    def test_admin_can_read_any_run(self, api):
        run_id = api.chat("What is Paris like in spring?").json()["run_id"]
        api.principal = ADMIN
        assert api.http.get(f"/chat/{run_id}").status_code == 200
        api.principal = BOB
        assert api.http.get(f"/chat/{run_id}").status_code == 403

    def test_delete_run(self, api):
        run_id = api.chat("What is Paris like in spring?").json()["run_id"]
        assert api.http.delete(f"/chat/{run_id}").status_code == 204
        assert api.http.get(f"/chat/{run_id}").status_code == 404

    def test_resume_with_message(self, api):
        run_id = api.chat("What is Paris like in spring?").json()["run_id"]
        response = api.http.post(f"/chat/{run_id}/resume", json={"message": "And autumn?"})
        assert response.status_code == 200
        assert response.json()["run_id"] == run_id
        assert api.store.records[run_id].step == 12

    def test_resume_finished_run_returns_it(self, api):
        run_id = api.chat("What is Paris like in spring?").json()["run_id"]
        response = api.http.post(f"/chat/{run_id}/resume", json={})
        assert response.status_code == 200
        assert response.json()["answer"] == "Paris is mild in spring [1]."
        assert api.store.records[run_id].step == 6

    def test_resume_unknown_run(self, api):
        assert api.http.post("/chat/missing/resume", json={}).status_code == 404


# ---------------------------------------------------------------------------
# Admin Endpoints
# ---------------------------------------------------------------------------


class TestAdmin:

    def test_stats_require_admin(self, api):
        assert api.http.get("/admin/checkpoints/stats").status_code == 403
        api.principal = ADMIN
        response = api.http.get("/admin/checkpoints/stats")
        assert response.status_code == 200
        assert response.json()["total"] == 0

    def test_cleanup_defaults_to_ttl(self, api):
        api.principal = ADMIN
        response = api.http.post("/admin/checkpoints/cleanup")
        assert response.status_code == 200
        assert response.json() == {"deleted": 2, "max_age_seconds": 3600}

    def test_cleanup_with_max_age(self, api):
        api.principal = ADMIN
        response = api.http.post("/admin/checkpoints/cleanup", json={"max_age_seconds": 60})
        assert response.json()["max_age_seconds"] == 60
        assert api.store.cleanups == [60]
