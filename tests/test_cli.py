"""Tests for the chatledger CLI (local backend in a temp config dir)."""

import json

import pytest
from typer.testing import CliRunner

from chatledger.api import ChatLedger
from chatledger.cli import app

from tests.conftest import USER, FakeCompletion

runner = CliRunner()


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.delenv("CHATLEDGER_API_KEY", raising=False)
    monkeypatch.delenv("CHATLEDGER_OWNER_ADDRESS", raising=False)
    return {
        "CHATLEDGER_CONFIG_DIR": str(tmp_path / "cfg"),
        "CHATLEDGER_USER_ADDRESS": USER,
    }


@pytest.fixture
def fake_completion(monkeypatch):
    completion = FakeCompletion()
    monkeypatch.setattr(ChatLedger, "_get_completion", lambda self: completion)
    return completion


class TestChats:
    def test_empty(self, env):
        result = runner.invoke(app, ["chats"], env=env)
        assert result.exit_code == 0
        assert "No chats" in result.stdout

    def test_send_then_list(self, env, fake_completion):
        fake_completion.replies = ["Hello back", "Again"]
        result = runner.invoke(app, ["--json", "send", "Hello"], env=env)
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["outcome"] == "completed"
        assert data["content"] == "Hello back"
        assert data["saveStatus"] == "saved"
        assert data["recordId"]

        result = runner.invoke(app, ["--json", "chats"], env=env)
        chats = json.loads(result.stdout)
        assert chats[0]["id"] == data["chatId"]
        assert chats[0]["messageCount"] == 2

        result = runner.invoke(app, ["--json", "send", "-c", data["chatId"], "More"], env=env)
        assert json.loads(result.stdout)["chatId"] == data["chatId"]

    def test_failed_turn_exits_1(self, env, fake_completion):
        fake_completion.replies = [RuntimeError("provider down")]
        result = runner.invoke(app, ["--json", "send", "Hello"], env=env)
        assert result.exit_code == 1
        assert json.loads(result.stdout)["outcome"] == "failed"

    def test_show_unknown_chat(self, env):
        result = runner.invoke(app, ["show", "chat-nope"], env=env)
        assert result.exit_code == 1
        assert "Error:" in result.output


class TestAgents:
    def test_create_and_list(self, env):
        result = runner.invoke(
            app, ["agent-create", "Reviewer", "-p", "Review code.", "-d", "Code reviews"], env=env
        )
        assert result.exit_code == 0, result.output
        agent_id = result.stdout.strip()
        assert agent_id.startswith("agent-")

        result = runner.invoke(app, ["--json", "agents"], env=env)
        agents = json.loads(result.stdout)
        assert agents == [{
            "id": agent_id,
            "name": "Reviewer",
            "description": "Code reviews",
            "files": [],
            "updatedAt": agents[0]["updatedAt"],
        }]

    def test_attach(self, env, tmp_path):
        agent_id = runner.invoke(app, ["agent-create", "R", "-p", "p"], env=env).stdout.strip()
        notes = tmp_path / "notes.md"
        notes.write_text("# Notes")
        result = runner.invoke(app, ["--json", "attach", agent_id, str(notes)], env=env)
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["type"] == "text/markdown"

    def test_attach_missing_file(self, env, tmp_path):
        result = runner.invoke(app, ["attach", "agent-1", str(tmp_path / "nope.txt")], env=env)
        assert result.exit_code == 1


class TestConfig:
    def test_file_path(self, env, tmp_path):
        result = runner.invoke(app, ["config", "file"], env=env)
        assert result.exit_code == 0
        assert result.stdout.strip() == str(tmp_path / "cfg" / "chatledger.toml")

    def test_user_from_env(self, env):
        result = runner.invoke(app, ["config", "user"], env=env)
        assert result.stdout.strip() == USER

    def test_unknown_path(self, env):
        result = runner.invoke(app, ["config", "nope"], env=env)
        assert result.exit_code == 1
