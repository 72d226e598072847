import time

import pytest
from fastapi.testclient import TestClient

from codesandbox.api import create_app

BASE = "/api/code-execution"


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


def test_health(client):
    for path in ("/health", f"{BASE}/health"):
        body = client.get(path).json()
        assert body["status"] == "healthy"
        assert "python" in body["supportedLanguages"]
        assert body["activeExecutions"] == 0
        assert "timestamp" in body


def test_execute_batch(client):
    r = client.post(f"{BASE}/execute", json={"code": "print('ok')", "language": "python"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["executionId"]
    data = body["data"]
    assert data["stdout"] == "ok\n"
    assert data["exitCode"] == 0
    assert data["timedOut"] is False
    assert "isWaitingForInput" not in data


def test_execute_errors(client):
    r = client.post(f"{BASE}/execute", json={"code": "puts 1", "language": "ruby"})
    assert r.status_code == 400
    assert r.json() == {
        "success": False,
        "message": "Language 'ruby' is not supported",
        "error": "UnsupportedLanguage",
    }
    r = client.post(f"{BASE}/execute", json={"language": "python"})
    assert r.status_code == 400
    assert r.json()["success"] is False


def test_unknown_execution(client):
    r = client.post(f"{BASE}/send-input", json={"executionId": "nope", "input": "1"})
    assert r.status_code == 404
    assert r.json()["message"] == "Execution not found or already completed"
    assert client.post(f"{BASE}/stop", json={"executionId": "nope"}).status_code == 404
    assert client.get(f"{BASE}/executions/nope").status_code == 404
    # input is required, even if empty
    assert client.post(f"{BASE}/send-input", json={"executionId": "nope"}).status_code == 400


def test_interactive_lifecycle(client):
    code = 'n = input("Number: ")\nprint(int(n) * 2)\ninput("More? ")\n'
    body = client.post(f"{BASE}/execute", json={"code": code, "language": "python"}).json()
    eid = body["executionId"]
    assert body["data"]["isWaitingForInput"] is True
    assert body["data"]["waitingPrompt"] == "Number: "

    st = client.get(f"{BASE}/executions/{eid}").json()
    assert st["status"] == "waiting_input"
    assert st["isRunning"] is True

    step = client.post(f"{BASE}/send-input", json={"executionId": eid, "input": "21"}).json()
    assert step["success"] is True
    assert "42" in step["data"]["stdout"]
    assert step["data"]["fullStdout"].startswith("Number: ")
    assert step["data"]["waitingPrompt"] == "More? "

    stopped = client.post(f"{BASE}/stop", json={"executionId": eid}).json()
    assert stopped["success"] is True
    assert "42" in stopped["data"]["stdout"]
    assert client.get(f"{BASE}/executions/{eid}").status_code == 404


def test_execute_tests(client):
    payload = {
        "code": "print(int(input()) ** 2)",
        "language": "python",
        # the legacy "output" key is still accepted
        "testCases": [
            {"input": "3", "expectedOutput": "9"},
            {"input": "4", "output": "16"},
            {"input": "5", "expected_output": "24"},
        ],
    }
    body = client.post(f"{BASE}/execute-tests", json=payload).json()
    assert body["success"] is True
    assert body["data"]["passedCount"] == 2
    assert body["data"]["totalCount"] == 3
    first = body["data"]["results"][0]
    assert first["passed"] is True
    # every result carries the full field set, null where not applicable
    assert "diffInfo" in first and first["diffInfo"] is None
    assert first["exitCode"] == 0
    last = body["data"]["results"][2]
    assert last["passed"] is False
    assert last["actualOutput"] == "25\n"
    assert last["diffInfo"]["type"] == "content_mismatch"
    assert last["diffInfo"]["expectedContext"] == "24"

    # /execute with testCases runs the same battery
    body = client.post(f"{BASE}/execute", json=payload).json()
    assert body["data"]["passedCount"] == 2


def test_shutdown_drains(settings):
    code = 'input("x? ")\n'
    with TestClient(create_app(settings)) as c:
        c.post(f"{BASE}/execute", json={"code": code, "language": "python"})
        assert c.get("/health").json()["activeExecutions"] == 1
    deadline = time.monotonic() + 2
    while time.monotonic() < deadline and any(settings.temp_root.iterdir()):
        time.sleep(0.05)
    assert list(settings.temp_root.iterdir()) == []
