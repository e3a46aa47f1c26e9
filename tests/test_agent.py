import json
from pathlib import Path

import httpx
import pytest

from conftest import racecheck, sha, ten_k_rows
from qtimer.agent import Agent, AgentState, FileStatus, ResultsClient, main, scan_directory
from qtimer.settings import AgentSettings, settings


@pytest.fixture
def agent_config(tmp_path):
    watch = tmp_path / "exports"
    watch.mkdir()
    return AgentSettings(
        QTIMER_AGENT_WATCH_DIR=str(watch),
        QTIMER_AGENT_STATE_FILE=str(tmp_path / "state.json"),
        QTIMER_AGENT_MAX_RETRIES=3,
        QTIMER_AGENT_RETRY_DELAY=0,
    )


@pytest.fixture
def watch_dir(agent_config):
    return Path(agent_config.QTIMER_AGENT_WATCH_DIR)


@pytest.fixture
def make_agent(client, agent_config):
    def _make(http=None, sleeps=None):
        rc = ResultsClient(http or client, settings.QTIMER_ADMIN_PASSWORD)
        return Agent(agent_config, rc, sleep=(sleeps.append if sleeps is not None else lambda s: None))
    return _make


def _mock_http(statuses):
    """httpx client whose upload endpoint answers with the given statuses, then 200."""
    calls = {"login": 0, "upload": 0, "tokens": []}
    queue = list(statuses)

    def handler(request):
        if request.url.path == "/auth/login":
            calls["login"] += 1
            return httpx.Response(200, json={"token": f"token-{calls['login']}"})
        calls["upload"] += 1
        calls["tokens"].append(request.headers.get("Authorization"))
        status = queue.pop(0) if queue else 200
        if isinstance(status, Exception):
            raise status
        if status == 200:
            return httpx.Response(200, json={"EventID": 3, "RecordsInserted": 2, "Reprocessed": False})
        return httpx.Response(status, json={"error": "server says no"})

    return httpx.Client(transport=httpx.MockTransport(handler), base_url="http://results.test"), calls


def test_new_export_creates_event(client, make_agent, watch_dir, agent_config):
    content = racecheck("Maratón Test", ten_k_rows(10))
    (watch_dir / "maraton.racecheck").write_bytes(content)

    agent = make_agent()
    assert agent.run_once() == 1

    event = client.get("/events/maraton-test").json()
    assert event["recordsCount"] == 10
    assert event["fileHash"] == sha(content)

    saved = json.loads(open(agent_config.QTIMER_AGENT_STATE_FILE, encoding="utf-8").read())
    entry = saved["files"][str(watch_dir / "maraton.racecheck")]
    assert entry["status"] == "COMPLETED"
    assert entry["hash"] == sha(content)
    assert entry["event_id"] == event["id"]
    assert entry["records"] == 10


def test_unchanged_export_is_not_resent(make_agent, watch_dir):
    (watch_dir / "a.racecheck").write_bytes(racecheck("Carrera", ten_k_rows(3)))
    assert make_agent().run_once() == 1

    # state survives a restart
    assert make_agent().run_once() == 0


def test_rewritten_export_replaces_results(client, make_agent, watch_dir):
    path = watch_dir / "live.racecheck"
    path.write_bytes(racecheck("Carrera", ten_k_rows(3)))
    agent = make_agent()
    agent.run_once()

    path.write_bytes(racecheck("Carrera", ten_k_rows(8)))
    assert agent.run_once() == 1

    body = client.get("/events/carrera/participants").json()
    assert body["totalCount"] == 8
    assert len(client.get("/events").json()["events"]) == 1


def test_agent_can_target_an_event(client, admin_headers, make_agent, watch_dir, agent_config):
    created = client.post("/events/create", json={"name": "Nombre Oficial"}, headers=admin_headers).json()
    agent_config.QTIMER_AGENT_EVENT_ID = created["id"]
    (watch_dir / "x.racecheck").write_bytes(racecheck("Otro Nombre", ten_k_rows(4)))

    make_agent().run_once()

    event = client.get(f"/events/{created['id']}").json()
    assert event["name"] == "Nombre Oficial"
    assert event["recordsCount"] == 4


def test_rejected_export_fails_without_retry(make_agent, watch_dir, agent_config, tmp_path):
    agent_config.QTIMER_AGENT_ERROR_DIR = str(tmp_path / "errors")
    (watch_dir / "bad.racecheck").write_bytes(b"Carrera\n")
    sleeps = []

    agent = make_agent(sleeps=sleeps)
    assert agent.run_once() == 0

    entry = agent.state.files[str(watch_dir / "bad.racecheck")]
    assert entry.status == FileStatus.FAILED
    assert entry.retry_count == 0
    assert entry.error.startswith("400")
    assert sleeps == []
    assert not (watch_dir / "bad.racecheck").exists()
    assert (tmp_path / "errors" / "bad.racecheck").exists()


def test_completed_exports_can_be_moved(make_agent, watch_dir, agent_config, tmp_path):
    agent_config.QTIMER_AGENT_COMPLETED_DIR = str(tmp_path / "done")
    (watch_dir / "a.racecheck").write_bytes(racecheck("Carrera", ten_k_rows(2)))

    make_agent().run_once()

    assert not (watch_dir / "a.racecheck").exists()
    assert (tmp_path / "done" / "a.racecheck").exists()


def test_server_errors_are_retried(make_agent, watch_dir):
    http, calls = _mock_http([503, httpx.ConnectError("connection refused")])
    (watch_dir / "a.racecheck").write_bytes(racecheck("Carrera", ten_k_rows(2)))
    sleeps = []

    agent = make_agent(http=http, sleeps=sleeps)
    assert agent.run_once() == 1

    entry = agent.state.files[str(watch_dir / "a.racecheck")]
    assert entry.status == FileStatus.COMPLETED
    assert entry.retry_count == 2
    assert calls["upload"] == 3
    assert sleeps == [0, 0]


def test_retries_are_bounded(make_agent, watch_dir):
    http, calls = _mock_http([500, 502, 503, 504])
    (watch_dir / "a.racecheck").write_bytes(racecheck("Carrera", ten_k_rows(2)))

    agent = make_agent(http=http)
    assert agent.run_once() == 0

    entry = agent.state.files[str(watch_dir / "a.racecheck")]
    assert entry.status == FileStatus.FAILED
    assert entry.retry_count == 3
    assert calls["upload"] == 3

    # failed files wait for a new export
    assert agent.run_once() == 0
    assert calls["upload"] == 3


def test_expired_token_triggers_login(make_agent, watch_dir):
    http, calls = _mock_http([401])
    (watch_dir / "a.racecheck").write_bytes(racecheck("Carrera", ten_k_rows(2)))

    assert make_agent(http=http).run_once() == 1
    assert calls["login"] == 2
    assert calls["tokens"] == ["Bearer token-1", "Bearer token-2"]


def test_scan_only_queues_results_files(watch_dir):
    (watch_dir / "notes.txt").write_text("hola")
    (watch_dir / "UPPER.RACECHECK").write_bytes(racecheck("Carrera", ten_k_rows(1)))
    (watch_dir / "sub.racecheck").mkdir()

    state = AgentState()
    pending = scan_directory(watch_dir, state, ".racecheck")

    assert pending == [str(watch_dir / "UPPER.RACECHECK")]


def test_interrupted_send_is_resumed(make_agent, watch_dir, agent_config):
    content = racecheck("Carrera", ten_k_rows(2))
    path = watch_dir / "a.racecheck"
    path.write_bytes(content)
    with open(agent_config.QTIMER_AGENT_STATE_FILE, "w", encoding="utf-8") as fh:
        json.dump({"files": {str(path): {"hash": sha(content), "status": "PROCESSING"}}}, fh)

    agent = make_agent()
    assert agent.state.files[str(path)].status == FileStatus.PENDING
    assert agent.run_once() == 1


def test_vanished_file_is_dropped(make_agent, watch_dir):
    path = watch_dir / "a.racecheck"
    path.write_bytes(racecheck("Carrera", ten_k_rows(2)))
    agent = make_agent()
    scan_directory(watch_dir, agent.state, ".racecheck")
    path.unlink()

    assert agent.run_once() == 0
    assert agent.state.files == {}


def test_main_once_uses_environment(monkeypatch, agent_config, watch_dir):
    sent = []

    def fake_run_once(self):
        sent.append(self.config.QTIMER_AGENT_EVENT_ID)
        return 0

    monkeypatch.setenv("QTIMER_AGENT_WATCH_DIR", agent_config.QTIMER_AGENT_WATCH_DIR)
    monkeypatch.setenv("QTIMER_AGENT_STATE_FILE", agent_config.QTIMER_AGENT_STATE_FILE)
    monkeypatch.setattr(Agent, "run_once", fake_run_once)
    monkeypatch.setattr("qtimer.agent.configure_logging", lambda *a, **k: None)

    assert main(["--once", "--event-id", "7"]) == 0
    assert sent == [7]
