"""Unit tests for DroidAcpAgent."""

import asyncio
import json

import pytest
from acp import text_block
from acp.exceptions import RequestError
from acp.schema import AgentMessageChunk, ToolCallProgress, ToolCallStart

from droid_acp.agent import AUTH_METHOD_ID, DroidAcpAgent
from droid_acp.config import BridgeSettings
from droid_acp.errors import (
    ConfigurationError,
    DroidInitTimeoutError,
    DroidProcessError,
    PromptInProgressError,
    SessionCancelledError,
    SessionNotFoundError,
)
from droid_acp.mcp_config import config_path
from droid_acp.session import Session


def chunk_texts(client):
    return [u.content.text for u in client.updates_of(AgentMessageChunk)]


async def wait_for_pending_prompt(session: Session, timeout=5.0):
    async def _poll():
        while session.pending_prompt is None:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def agent(fake_settings, recording_client):
    agent = DroidAcpAgent(settings=fake_settings)
    agent.on_connect(recording_client)
    return agent


class TestDroidAcpAgent:
    """Tests that need no droid process."""

    def test_agent_initialization(self):
        """Test agent initialization."""
        agent = DroidAcpAgent(settings=BridgeSettings())

        assert agent._conn is None
        assert agent._sessions == {}
        assert agent.droid_exit_code is None

    def test_convert_prompt_to_text_simple(self):
        agent = DroidAcpAgent(settings=BridgeSettings())

        result = agent._convert_prompt_to_text([{"type": "text", "text": "Hello, world!"}])

        assert result == "Hello, world!"

    def test_convert_prompt_to_text_ignores_non_text(self):
        agent = DroidAcpAgent(settings=BridgeSettings())

        prompt = [
            text_block("First line"),
            {"type": "image", "data": "AAAA", "mimeType": "image/png"},
            {"type": "text", "text": "Second line"},
        ]

        assert agent._convert_prompt_to_text(prompt) == "First line\nSecond line"

    @pytest.mark.asyncio
    async def test_initialize(self):
        agent = DroidAcpAgent(settings=BridgeSettings())

        response = await agent.initialize(protocol_version=1)

        assert response.protocol_version == 1
        assert response.agent_info.name == "droid-acp"
        assert response.agent_capabilities.prompt_capabilities.image is False
        assert response.agent_capabilities.prompt_capabilities.embedded_context is True
        assert [m.id for m in response.auth_methods] == [AUTH_METHOD_ID]

    @pytest.mark.asyncio
    async def test_authenticate_with_key(self, monkeypatch):
        monkeypatch.setenv("FACTORY_API_KEY", "fk-test")
        agent = DroidAcpAgent(settings=BridgeSettings())

        assert await agent.authenticate(method_id=AUTH_METHOD_ID) is not None

    @pytest.mark.asyncio
    async def test_authenticate_without_key(self, monkeypatch):
        monkeypatch.delenv("FACTORY_API_KEY", raising=False)
        agent = DroidAcpAgent(settings=BridgeSettings())

        with pytest.raises(ConfigurationError, match="FACTORY_API_KEY"):
            await agent.authenticate(method_id=AUTH_METHOD_ID)

    @pytest.mark.asyncio
    async def test_authenticate_unknown_method(self, monkeypatch):
        monkeypatch.setenv("FACTORY_API_KEY", "fk-test")
        agent = DroidAcpAgent(settings=BridgeSettings())

        with pytest.raises(RequestError):
            await agent.authenticate(method_id="oauth")

    @pytest.mark.asyncio
    async def test_unknown_session_is_rejected(self):
        agent = DroidAcpAgent(settings=BridgeSettings())

        with pytest.raises(SessionNotFoundError, match="Session not found: nope"):
            await agent.prompt(prompt=[text_block("hi")], session_id="nope")
        with pytest.raises(SessionNotFoundError):
            await agent.set_session_mode(mode_id="high", session_id="nope")
        with pytest.raises(SessionNotFoundError):
            await agent.set_session_model(model_id="gpt-5", session_id="nope")

    @pytest.mark.asyncio
    async def test_cancel_unknown_session_is_noop(self):
        agent = DroidAcpAgent(settings=BridgeSettings())

        await agent.cancel(session_id="nope")

    @pytest.mark.asyncio
    async def test_cancel_resolves_pending_prompt_once(self):
        agent = DroidAcpAgent(settings=BridgeSettings())
        session = Session(session_id="s1", cwd="/tmp")
        agent._sessions["s1"] = session
        done = session.begin_prompt(timeout=60)

        await agent.cancel(session_id="s1")
        await agent.cancel(session_id="s1")

        assert await done == "cancelled"
        assert session.cancelled is True
        assert "s1" not in agent._sessions
        with pytest.raises(SessionCancelledError):
            await agent.prompt(prompt=[text_block("hi")], session_id="s1")

    @pytest.mark.asyncio
    async def test_prompt_without_droid_is_rejected(self):
        agent = DroidAcpAgent(settings=BridgeSettings())
        session = Session(session_id="s1", cwd="/tmp")
        agent._sessions["s1"] = session

        with pytest.raises(DroidProcessError):
            await agent.prompt(prompt=[text_block("hi")], session_id="s1")
        assert session.pending_prompt is None

    @pytest.mark.asyncio
    async def test_set_mode_and_model(self):
        agent = DroidAcpAgent(settings=BridgeSettings())
        session = Session(session_id="s1", cwd="/tmp")
        agent._sessions["s1"] = session

        await agent.set_session_mode(mode_id="high", session_id="s1")
        await agent.set_session_model(model_id="gpt-5", session_id="s1")

        assert session.autonomy == "full"
        assert session.mode == "high"
        assert session.model == "gpt-5"

    @pytest.mark.asyncio
    async def test_set_invalid_mode(self):
        agent = DroidAcpAgent(settings=BridgeSettings())
        session = Session(session_id="s1", cwd="/tmp")
        agent._sessions["s1"] = session

        with pytest.raises(ValueError, match="Invalid mode: turbo"):
            await agent.set_session_mode(mode_id="turbo", session_id="s1")
        assert session.autonomy == "normal"


class TestAgentWithDroid:
    """End-to-end tests against the fake droid."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_hello_turn(self, agent, recording_client, scenario):
        try:
            response = await agent.new_session(cwd="/tmp")

            assert response.session_id
            assert response.models.current_model_id == "claude-sonnet-4"
            assert [m.model_id for m in response.models.available_models] == [
                "claude-sonnet-4",
                "gpt-5",
            ]
            assert response.modes.current_mode_id == "medium"
            assert [m.id for m in response.modes.available_modes] == ["low", "medium", "high"]

            result = await agent.prompt(prompt=[text_block("hi")], session_id=response.session_id)
        finally:
            await agent.cleanup()

        assert result.stop_reason == "end_turn"
        assert chunk_texts(recording_client) == ["hello"]
        assert all(sid == response.session_id for sid, _ in recording_client.updates)

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_idle_before_message_still_delivers_text(self, agent, recording_client, scenario):
        scenario("idle_first")
        try:
            session_id = (await agent.new_session(cwd="/tmp")).session_id
            result = await agent.prompt(prompt=[text_block("hi")], session_id=session_id)
        finally:
            await agent.cleanup()

        assert result.stop_reason == "end_turn"
        assert chunk_texts(recording_client) == ["hello"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_sequential_prompts(self, agent, recording_client, scenario):
        try:
            session_id = (await agent.new_session(cwd="/tmp")).session_id
            first = await agent.prompt(prompt=[text_block("hi")], session_id=session_id)
            second = await agent.prompt(prompt=[text_block("again")], session_id=session_id)
        finally:
            await agent.cleanup()

        assert first.stop_reason == second.stop_reason == "end_turn"
        assert chunk_texts(recording_client) == ["hello", "hello"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_droid_error_is_shown(self, agent, recording_client, scenario):
        scenario("error")
        try:
            session_id = (await agent.new_session(cwd="/tmp")).session_id
            result = await agent.prompt(prompt=[text_block("hi")], session_id=session_id)
        finally:
            await agent.cleanup()

        assert result.stop_reason == "end_turn"
        assert chunk_texts(recording_client) == ["Error: boom"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    @pytest.mark.parametrize(
        "mode,risk,expected",
        [
            ("low", "low", "cancel"),
            ("medium", "medium", "proceed_once"),
            ("medium", "high", "cancel"),
            ("high", "high", "proceed_always"),
        ],
    )
    async def test_tool_permission_by_mode(
        self, agent, recording_client, scenario, monkeypatch, mode, risk, expected
    ):
        scenario("tool")
        monkeypatch.setenv("FAKE_DROID_RISK", risk)
        try:
            session_id = (await agent.new_session(cwd="/tmp")).session_id
            await agent.set_session_mode(mode_id=mode, session_id=session_id)
            result = await agent.prompt(prompt=[text_block("list files")], session_id=session_id)
        finally:
            await agent.cleanup()

        assert result.stop_reason == "end_turn"

        [start] = recording_client.updates_of(ToolCallStart)
        assert start.tool_call_id == "tool-1"
        assert start.kind == "execute"

        progress = recording_client.updates_of(ToolCallProgress)
        [content] = [u for u in progress if u.content]
        assert content.content[0].content.text == f"selected:{expected}"
        assert progress[-1].status == "completed"
        if expected == "cancel":
            assert progress[0].status == "completed"
            assert len(progress) == 3
        else:
            assert len(progress) == 2
        assert chunk_texts(recording_client) == ["done"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_prompt_timeout_ends_turn(self, agent, scenario):
        scenario("silent")
        agent.settings.prompt_timeout = 0.5
        try:
            session_id = (await agent.new_session(cwd="/tmp")).session_id
            result = await agent.prompt(prompt=[text_block("hi")], session_id=session_id)

            assert agent._sessions[session_id].pending_prompt is None
        finally:
            await agent.cleanup()

        assert result.stop_reason == "end_turn"

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_second_prompt_while_pending(self, agent, scenario):
        scenario("silent")
        try:
            session_id = (await agent.new_session(cwd="/tmp")).session_id
            first = asyncio.create_task(
                agent.prompt(prompt=[text_block("hi")], session_id=session_id)
            )
            await wait_for_pending_prompt(agent._sessions[session_id])

            with pytest.raises(PromptInProgressError):
                await agent.prompt(prompt=[text_block("again")], session_id=session_id)

            await agent.cancel(session_id=session_id)
            result = await first
        finally:
            await agent.cleanup()

        assert result.stop_reason == "cancelled"

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_cancel_stops_droid(self, agent, scenario):
        scenario("silent")
        try:
            session_id = (await agent.new_session(cwd="/tmp")).session_id
            session = agent._sessions[session_id]
            task = asyncio.create_task(
                agent.prompt(prompt=[text_block("hi")], session_id=session_id)
            )
            await wait_for_pending_prompt(session)

            await agent.cancel(session_id=session_id)
            result = await task

            assert result.stop_reason == "cancelled"
            assert session.droid.is_running() is False
            assert agent.droid_exited.is_set() is False
            with pytest.raises(SessionCancelledError):
                await agent.prompt(prompt=[text_block("hi")], session_id=session_id)
        finally:
            await agent.cleanup()

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_droid_exit_mid_prompt(self, agent, recording_client, scenario):
        scenario("exit_on_message")
        try:
            session_id = (await agent.new_session(cwd="/tmp")).session_id
            result = await agent.prompt(prompt=[text_block("hi")], session_id=session_id)
            await asyncio.wait_for(agent.droid_exited.wait(), 10)
        finally:
            await agent.cleanup()

        assert result.stop_reason == "end_turn"
        assert chunk_texts(recording_client) == ["Error: droid exited with code 5"]
        assert session_id not in agent._sessions
        assert agent.droid_exit_code == 5

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_mcp_config_lifecycle(self, agent, scenario, temp_dir, sample_mcp_servers):
        try:
            session_id = (
                await agent.new_session(cwd=str(temp_dir), mcp_servers=sample_mcp_servers)
            ).session_id

            path = config_path(temp_dir)
            registry = json.loads(path.read_text())["mcpServers"]
            assert set(registry) == {f"files-{session_id}", f"docs-{session_id}"}

            await agent.cancel(session_id=session_id)
        finally:
            await agent.cleanup()

        assert not path.exists()
        assert not (temp_dir / ".factory").exists()

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_failed_start_releases_mcp_config(
        self, agent, scenario, temp_dir, sample_mcp_servers
    ):
        scenario("no_init")
        agent.settings.init_timeout = 0.5

        with pytest.raises(DroidInitTimeoutError):
            await agent.new_session(cwd=str(temp_dir), mcp_servers=sample_mcp_servers)

        assert agent._sessions == {}
        assert not config_path(temp_dir).exists()

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_debug_echoes_raw_events(self, agent, recording_client, scenario):
        agent.settings.debug = True
        try:
            session_id = (await agent.new_session(cwd="/tmp")).session_id
            await agent.prompt(prompt=[text_block("hi")], session_id=session_id)
        finally:
            await agent.cleanup()

        texts = chunk_texts(recording_client)
        assert "hello" in texts
        assert any(t.startswith("\n```json\n") for t in texts)

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_droid_exit_after_other_session_cancelled(self, agent, recording_client, scenario):
        scenario("exit_on_message")
        try:
            cancelled_id = (await agent.new_session(cwd="/tmp")).session_id
            live_id = (await agent.new_session(cwd="/tmp")).session_id
            await agent.cancel(session_id=cancelled_id)

            result = await agent.prompt(prompt=[text_block("hi")], session_id=live_id)
            await asyncio.wait_for(agent.droid_exited.wait(), 10)
        finally:
            await agent.cleanup()

        assert result.stop_reason == "end_turn"
        assert agent._sessions == {}
        assert agent.droid_exit_code == 5
        with pytest.raises(SessionCancelledError):
            await agent.prompt(prompt=[text_block("hi")], session_id=cancelled_id)

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_cancelled_prompt_task_releases_slot(self, agent, scenario):
        scenario("silent")
        try:
            session_id = (await agent.new_session(cwd="/tmp")).session_id
            session = agent._sessions[session_id]
            task = asyncio.create_task(
                agent.prompt(prompt=[text_block("hi")], session_id=session_id)
            )
            await wait_for_pending_prompt(session)

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            assert session.pending_prompt is None
            agent.settings.prompt_timeout = 0.5
            result = await agent.prompt(prompt=[text_block("again")], session_id=session_id)
        finally:
            await agent.cleanup()

        assert result.stop_reason == "end_turn"
