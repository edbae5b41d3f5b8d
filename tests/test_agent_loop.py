"""Tests for the agent loop, the REPL and the entry point."""

import io
import json

import pytest

import agent_main
from agent_core import (
    AgentSession, FunctionCall, INITIAL_REMINDER, Message, Spinner, ToolCall,
)
from agent_llm import LLMError, ModelReply
from agent_main import repl, run_agent


def _quiet_spinner():
    return Spinner(stream=io.StringIO())


def _tool_reply(call_id, name, args):
    return ModelReply(
        message=Message(role="assistant", content="", tool_calls=[
            ToolCall(id=call_id, function=FunctionCall(name, json.dumps(args)))]),
        finish_reason="tool_calls")


def _text_reply(text):
    return ModelReply(message=Message(role="assistant", content=text), finish_reason="stop")


class ScriptedClient:
    """Returns canned replies in order; an exception in the script is raised."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls  = []

    def call(self, messages, on_token=None):
        self.calls.append(list(messages))
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


class TestRunAgent:
    def test_tool_rounds_then_stop(self, workspace, config, session):
        client = ScriptedClient(
            _tool_reply("c1", "write_file", {"path": "notes.txt", "content": "v1"}),
            _tool_reply("c2", "read_file", {"path": "notes.txt"}),
            _text_reply("done"),
        )
        history = [Message(role="user", content="make notes")]
        result  = run_agent(history, config, session, client, _quiet_spinner)

        assert result.ok
        assert result.iterations == 3
        assert len(result.messages) == 1 + 2 * 2 + 1
        assert [m.role for m in result.messages] == [
            "user", "assistant", "tool", "assistant", "tool", "assistant"]
        assert result.messages[2].tool_call_id == "c1"
        assert result.messages[4].content == "v1"
        assert result.messages[-1].content == "done"
        assert (workspace / "notes.txt").read_text() == "v1"
        assert len(history) == 1

    def test_system_prompt_prepended_each_call(self, config, session):
        client = ScriptedClient(_tool_reply("c1", "nope", {}), _text_reply("ok"))
        run_agent([Message(role="user", content="x")], config, session, client, _quiet_spinner)
        assert all(call[0].role == "system" for call in client.calls)
        assert [len(call) for call in client.calls] == [2, 4]

    def test_transport_error_keeps_prior_messages(self, config, session):
        client = ScriptedClient(_tool_reply("c1", "nope", {}), LLMError("boom"))
        result = run_agent([Message(role="user", content="x")], config, session,
                           client, _quiet_spinner)
        assert result.status == "error"
        assert result.error == "boom"
        assert [m.role for m in result.messages] == ["user", "assistant", "tool"]

    def test_no_choices_is_error(self, config, session):
        result = run_agent([Message(role="user", content="x")], config, session,
                           ScriptedClient(ModelReply(message=None)), _quiet_spinner)
        assert result.status == "error"
        assert result.error == "no choices in response"

    def test_iteration_cap(self, config, session):
        client = ScriptedClient(*[_tool_reply(f"c{i}", "nope", {}) for i in range(25)])
        result = run_agent([Message(role="user", content="x")], config, session,
                           client, _quiet_spinner)
        assert result.status == "max_iterations"
        assert result.error == "agent max iterations reached"
        assert len(client.calls) == 20
        assert len(result.messages) == 1 + 20 * 2

    def test_tool_calls_ignored_without_tool_calls_finish(self, config, session):
        reply = _tool_reply("c1", "nope", {})
        reply.finish_reason = "stop"
        result = run_agent([Message(role="user", content="x")], config, session,
                           ScriptedClient(reply), _quiet_spinner)
        assert result.ok
        assert len(result.messages) == 2

    def test_completed_turn_counts_toward_nag(self, config, session):
        run_agent([Message(role="user", content="x")], config, session,
                  ScriptedClient(_text_reply("hi")), _quiet_spinner)
        assert session.rounds_without_todo == 1

    def test_streamed_text_not_printed_twice(self, config, session, capsys):
        config.stream = True

        class Streaming(ScriptedClient):
            def call(self, messages, on_token=None):
                on_token("Hel")
                on_token("lo")
                return _text_reply("Hello")

        run_agent([Message(role="user", content="x")], config, session,
                  Streaming(), _quiet_spinner)
        assert capsys.readouterr().out.count("Hello") == 1


def _lines(*items):
    it = iter(items)
    return lambda prompt: next(it, None)


class TestRepl:
    def test_conversation_accumulates(self, config, session):
        client  = ScriptedClient(_text_reply("one"), _text_reply("two"))
        history = repl(config, session, client, _lines("first", "   ", "second", "exit", "never"))
        assert [m.text for m in history] == ["first", "one", "second", "two"]
        assert len(client.calls) == 2

    def test_error_keeps_user_message(self, config, session):
        client  = ScriptedClient(LLMError("down"), _text_reply("back"))
        history = repl(config, session, client, _lines("hello", "retry"))
        assert [(m.role, m.text) for m in history] == [
            ("user", "hello"), ("user", "retry"), ("assistant", "back")]

    def test_pending_reminders_ride_on_user_turn(self, config):
        session = AgentSession()
        client  = ScriptedClient(_text_reply("ok"), _text_reply("ok"))
        history = repl(config, session, client, _lines("go", "again", "quit"))
        first = history[0].content
        assert [b.text for b in first] == [INITIAL_REMINDER, "go"]
        assert history[2].content == "again"

    def test_end_of_input_stops(self, config, session):
        assert repl(config, session, ScriptedClient(), _lines()) == []


class TestMain:
    def test_missing_key_exits_nonzero(self, monkeypatch, tmp_path):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.chdir(tmp_path)
        assert agent_main.main() == 1

    def test_starts_repl(self, monkeypatch, tmp_path):
        monkeypatch.setenv("OPENAI_API_KEY", "k")
        monkeypatch.setenv("OPENAI_MODEL", "local-model")
        monkeypatch.chdir(tmp_path)
        seen = {}

        def fake_repl(config, session):
            seen["config"] = config
            return []

        monkeypatch.setattr(agent_main, "repl", fake_repl)
        assert agent_main.main() == 0
        assert seen["config"].model == "local-model"
        assert seen["config"].workdir == tmp_path
