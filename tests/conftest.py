"""Shared fixtures: a scratch workspace, a Config pointed at it, a session."""

import pytest

from agent_core import AgentSession, Config, Log


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "work"
    ws.mkdir()
    return ws


@pytest.fixture
def config(workspace) -> Config:
    return Config(api_key="test-key", base_url="http://llm.test", model="test-model",
                  workdir=workspace, stream=False, max_retries=1, retry_delay=0.0)


@pytest.fixture
def session() -> AgentSession:
    return AgentSession(queue_initial_reminder=False)


@pytest.fixture(autouse=True)
def quiet_log():
    Log.set_silent(True)
    Log.set_debug(False)
    yield
    Log.set_silent(False)
