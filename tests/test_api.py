from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from main import app, build_services
from services.provider_factory import ProviderRegistry
from storage.db import Database
from tests.fakes import FakeLLM, FakeProvider
from utils.errors import unauthorized
from utils.sse import iter_sse_content

ALICE = {"X-User-Email": "alice@example.com"}
ANON = {"X-Anonymous-Id": "visitor-1"}


@pytest.fixture
def github():
    return FakeProvider("github", files={"README.md": "# Demo", "src/app.py": "print('app')"})


@pytest.fixture
def llm():
    return FakeLLM(deltas=["Hello", " there"])


@pytest.fixture
def client(tmp_path, github, llm):
    providers = ProviderRegistry({"github": github, "gitlab": FakeProvider("gitlab")})
    build_services(app, db=Database(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"), providers=providers, llm=llm)
    with TestClient(app) as c:
        yield c


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_providers(client):
    body = client.get("/providers").json()
    assert body["supported"] == ["github", "gitlab"]
    by_name = {p["name"]: p for p in body["providers"]}
    assert by_name["azure"] == {"name": "azure", "displayName": "Azure", "implemented": False}
    assert by_name["github"]["implemented"] is True


def test_tree_records_history_for_signed_in_users(client):
    resp = client.get("/repos/github/o/r/tree", headers=ALICE)
    assert resp.status_code == 200
    tree = resp.json()
    assert [n["name"] for n in tree] == ["src", "README.md"]
    assert tree[0]["children"][0]["path"] == "src/app.py"
    assert tree[0]["children"][0]["level"] == 1

    history = client.get("/history", headers=ALICE).json()
    assert [(h["provider"], h["owner"], h["repo"]) for h in history] == [("github", "o", "r")]


def test_history_requires_sign_in(client):
    resp = client.get("/history", headers=ANON)
    assert resp.status_code == 401
    assert resp.json() == {"status": "error", "message": "Unauthorized"}


def test_contents_branch_and_file(client):
    assert client.get("/repos/github/o/r/branch").json() == {"branch": "main"}
    names = [i["name"] for i in client.get("/repos/github/o/r/contents").json()]
    assert names == ["app.py", "README.md"]

    resp = client.get("/repos/github/o/r/file", params={"path": "src/app.py"})
    assert resp.json() == {"path": "src/app.py", "branch": None, "content": "print('app')"}


def test_missing_file_error_shape(client):
    resp = client.get("/repos/github/o/r/file", params={"path": "nope.py"})
    assert resp.status_code == 404
    assert resp.json() == {"status": "error", "message": "File not found: nope.py"}


def test_placeholder_and_unknown_providers(client):
    resp = client.get("/repos/azure/o/r/tree")
    assert resp.status_code == 501
    assert resp.json()["message"] == "azure provider integration is not yet fully implemented"

    resp = client.get("/repos/sourceforge/o/r/tree")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Unknown provider type: sourceforge"


def test_chat_streams_server_sent_events(client):
    body = {"message": "What is this?", "owner": "o", "repo": "r", "taggedFiles": {"README.md": ""}}
    resp = client.post("/chat", json=body, headers=ALICE)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    assert resp.text.endswith("data: [DONE]\n\n")

    text = "".join(iter_sse_content([resp.text]))
    assert text == "Hello there\n\n---\n**Files analyzed:** README.md"

    messages = client.get("/chat-messages", params={"owner": "o", "repo": "r"}, headers=ALICE).json()["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[0]["selectedFiles"] == ["README.md"]


def test_chat_without_streaming(client):
    resp = client.post("/chat", json={"message": "Q", "stream": False, "anonymousId": "visitor-2"})
    assert resp.status_code == 200
    assert resp.json() == {"message": "Plain answer"}


def test_chat_validation_errors(client):
    resp = client.post("/chat", json={"message": "  "})
    assert resp.status_code == 400
    assert resp.json() == {"status": "error", "message": "A message or prompt is required"}

    resp = client.post("/chat", json={"message": "hi", "stream": "sometimes"})
    assert resp.status_code == 400
    assert resp.json() == {"status": "error", "message": "Invalid request body"}

    resp = client.post("/chat", json={"message": "hi", "owner": "o", "repo": "r", "provider": "sourceforge", "taggedFiles": {"a.py": ""}})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Unknown provider type: sourceforge"


def test_chat_messages_crud_for_anonymous_visitors(client):
    assert client.get("/chat-messages", params={"owner": "o", "repo": "r"}).status_code == 401

    payload = {
        "owner": "o",
        "repo": "r",
        "message": {"id": "m1", "role": "user", "content": "Hi", "timestamp": 1_700_000_000_000, "selectedFiles": []},
    }
    resp = client.post("/chat-messages", json=payload, headers=ANON)
    assert resp.json()["success"] is True

    messages = client.get("/chat-messages", params={"owner": "o", "repo": "r"}, headers=ANON).json()["messages"]
    assert [m["id"] for m in messages] == ["m1"]
    # another visitor sees nothing
    other = client.get("/chat-messages", params={"owner": "o", "repo": "r"}, headers={"X-Anonymous-Id": "visitor-9"})
    assert other.json()["messages"] == []

    resp = client.delete("/chat-messages", params={"owner": "o", "repo": "r"}, headers=ANON)
    assert resp.status_code == 400

    resp = client.delete("/chat-messages", params={"owner": "o", "repo": "r", "messageId": "m1"}, headers=ANON)
    assert resp.json() == {"success": True}
    resp = client.delete("/chat-messages", params={"owner": "o", "repo": "r", "clearAll": "true"}, headers=ANON)
    assert resp.json() == {"success": True}


def test_conversations_and_feedback(client):
    client.post("/chat", json={"message": "Explain the layout", "owner": "o", "repo": "r"}, headers=ALICE)
    [conv] = client.get("/conversations", headers=ALICE).json()
    assert conv["title"] == "Explain the layout"
    assert "createdAt" in conv and "updatedAt" in conv

    resp = client.post("/feedback", json={"conversationId": conv["id"], "feedback": "like"}, headers=ALICE)
    assert resp.json() == {"success": True, "conversationId": conv["id"], "feedback": "like"}
    assert client.get("/feedback", params={"conversationId": conv["id"]}, headers=ALICE).json()["feedback"] == "like"

    resp = client.post("/feedback", json={"conversationId": conv["id"], "feedback": "like"}, headers=ANON)
    assert resp.status_code == 403
    resp = client.post("/feedback", json={"conversationId": conv["id"], "feedback": "meh"}, headers=ALICE)
    assert resp.status_code == 400


def test_token_endpoints(client):
    assert client.get("/auth/token").status_code == 401

    resp = client.put("/auth/token", json={"provider": "github", "token": "gho_1", "username": "alice"}, headers=ALICE)
    assert resp.json() == {"success": True, "message": "github token saved successfully"}

    tokens = client.get("/auth/token", headers=ALICE).json()["tokens"]
    assert tokens["github"]["token"] == "gho_1"
    assert client.get("/auth/token/current", params={"provider": "github"}, headers=ALICE).json() == {
        "provider": "github", "token": "gho_1",
    }

    assert client.post("/auth/token/refresh", json={"provider": "github"}, headers=ALICE).json()["token"] == "gho_1"

    assert client.delete("/auth/token", params={"provider": "github"}, headers=ALICE).json() == {"success": True}
    assert client.delete("/auth/token", params={"provider": "github"}, headers=ALICE).status_code == 404
    assert client.get("/auth/token/current", params={"provider": "github"}, headers=ALICE).status_code == 404


def test_validate_endpoint(client, github):
    resp = client.post("/auth/token/validate", json={"provider": "github", "token": "gho_1"}, headers=ALICE)
    assert resp.json() == {"isValid": True, "needsRefresh": False, "username": "octocat"}

    github.user_error = unauthorized("github token is unauthorized")
    resp = client.post("/auth/token/validate", json={"provider": "github", "token": "bad"}, headers=ALICE)
    assert resp.json()["isValid"] is False
    assert resp.json()["needsRefresh"] is True


def test_oauth_flow(client):
    url = client.get("/auth/github/authorize", headers=ALICE).json()["url"]
    state = parse_qs(urlparse(url).query)["state"][0]

    resp = client.get("/auth/github/callback", params={"code": "abc", "state": state})
    assert resp.json() == {"success": True, "provider": "github", "username": "octocat"}
    assert client.get("/auth/token", headers=ALICE).json()["tokens"]["github"]["token"] == "tok-abc"

    resp = client.get("/auth/github/callback", params={"code": "abc", "state": state})
    assert resp.status_code == 400
