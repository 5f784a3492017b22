"""
Droid ACP Agent - Bridges the Factory Droid CLI with the ACP protocol.

This module implements the ACP Agent interface. Each ACP session owns one
``droid exec`` subprocess; droid notifications are converted into ACP session
updates and droid permission requests are answered from the session's
autonomy level.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
from typing import Any
from uuid import uuid4

from acp import (
    Agent,
    InitializeResponse,
    NewSessionResponse,
    PromptResponse,
    SetSessionModeResponse,
    text_block,
    update_agent_message,
)
from acp.exceptions import RequestError
from acp.interfaces import Client
from acp.schema import (
    AgentCapabilities,
    AudioContentBlock,
    AuthenticateResponse,
    AuthMethod,
    ClientCapabilities,
    EmbeddedResourceContentBlock,
    HttpMcpServer,
    ImageContentBlock,
    Implementation,
    McpServerStdio,
    ModelInfo,
    PromptCapabilities,
    ResourceContentBlock,
    SessionModelState,
    SessionModeState,
    SetSessionModelResponse,
    SseMcpServer,
    TextContentBlock,
)

from .config import BridgeSettings
from .droid_client import METHOD_REQUEST_PERMISSION, DroidClient
from .errors import (
    ConfigurationError,
    DroidProcessError,
    PromptInProgressError,
    SessionCancelledError,
    SessionNotFoundError,
)
from .mcp_config import add_session_servers, remove_session_servers
from .notifications import Complete, DroidNotification
from .permissions import evaluate_permission
from .session import (
    ACP_TO_AUTONOMY,
    AVAILABLE_MODES,
    DEFAULT_MODE,
    Session,
    notification_updates,
)

logger = logging.getLogger(__name__)

AUTH_METHOD_ID = "factory-api-key"

PromptBlock = (
    TextContentBlock
    | ImageContentBlock
    | AudioContentBlock
    | ResourceContentBlock
    | EmbeddedResourceContentBlock
)


class DroidAcpAgent(Agent):
    """
    ACP Agent implementation that bridges the droid CLI with ACP.

    This agent:
    1. Receives ACP requests from clients (Zed, Neovim, etc.)
    2. Runs one droid subprocess per session
    3. Streams droid notifications back as ACP session updates
    4. Answers droid permission requests from the session's autonomy level
    """

    def __init__(self, settings: BridgeSettings | None = None) -> None:
        self.settings = settings or BridgeSettings.from_env()
        self._conn: Client | None = None
        self._sessions: dict[str, Session] = {}
        self._cancelled_ids: set[str] = set()
        # Set when a droid exits on its own and leaves no live session behind.
        self.droid_exit_code: int | None = None
        self.droid_exited = asyncio.Event()

    def on_connect(self, conn: Client) -> None:
        """Called when an ACP client connects."""
        self._conn = conn
        logger.info("ACP client connected")

    # --- ACP methods ---

    async def initialize(
        self,
        protocol_version: int,
        client_capabilities: ClientCapabilities | None = None,
        client_info: Implementation | None = None,
        **kwargs: Any,
    ) -> InitializeResponse:
        """Handle ACP initialize request."""
        logger.info(f"Initialize request from {client_info}")

        return InitializeResponse(
            protocol_version=protocol_version,
            agent_capabilities=AgentCapabilities(
                prompt_capabilities=PromptCapabilities(
                    image=False,
                    embedded_context=True,
                ),
            ),
            agent_info=Implementation(
                name="droid-acp",
                title="Factory Droid",
                version="0.1.0",
            ),
            auth_methods=[
                AuthMethod(
                    id=AUTH_METHOD_ID,
                    name="Factory API Key",
                    description=f"Set {self.settings.api_key_env} environment variable",
                )
            ],
        )

    async def authenticate(self, method_id: str, **kwargs: Any) -> AuthenticateResponse:
        """Validate the API key required by the droid."""
        logger.info(f"Authentication requested: {method_id}")

        if method_id != AUTH_METHOD_ID:
            raise RequestError.method_not_found(f"authenticate/{method_id}")
        if not self.settings.api_key():
            raise ConfigurationError(f"{self.settings.api_key_env} environment variable is not set")

        return AuthenticateResponse()

    async def new_session(
        self,
        cwd: str,
        mcp_servers: list[HttpMcpServer | SseMcpServer | McpServerStdio] | None = None,
        **kwargs: Any,
    ) -> NewSessionResponse:
        """Create a new session backed by a fresh droid process."""
        session_id = str(uuid4())
        session = Session(session_id=session_id, cwd=cwd)

        session.mcp_config_path = add_session_servers(cwd, session_id, list(mcp_servers or []))

        droid = self._create_droid(cwd)
        session.droid = droid
        self._register_droid_handlers(session, droid)
        try:
            init = await droid.start()
        except Exception:
            self._release_mcp_config(session)
            raise

        session.droid_session_id = init.session_id
        session.model = init.model_id
        self._sessions[session_id] = session

        logger.info(f"New session created: {session_id} in {cwd} (droid session {init.session_id})")

        return NewSessionResponse(
            session_id=session_id,
            models=SessionModelState(
                available_models=[
                    ModelInfo(
                        model_id=str(m.get("id", "")),
                        name=str(m.get("displayName") or m.get("id", "")),
                    )
                    for m in init.available_models
                    if isinstance(m, dict)
                ],
                current_model_id=init.model_id,
            ),
            modes=SessionModeState(
                available_modes=AVAILABLE_MODES,
                current_mode_id=DEFAULT_MODE,
            ),
        )

    async def prompt(
        self,
        prompt: list[PromptBlock],
        session_id: str,
        **kwargs: Any,
    ) -> PromptResponse:
        """
        Handle a prompt from the ACP client.

        Text blocks are joined and sent as one droid message; the call returns
        when the droid reports the turn complete, the session is cancelled, or
        the prompt timeout elapses.
        """
        if session_id in self._cancelled_ids:
            raise SessionCancelledError(session_id)
        session = self._get_session(session_id)
        if session.droid is None:
            raise DroidProcessError(f"Session {session_id} has no droid process")
        if session.pending_prompt is not None:
            raise PromptInProgressError(session_id)

        prompt_text = self._convert_prompt_to_text(prompt)
        logger.info(f"Prompt for session {session_id}: {prompt_text[:100]}...")

        done = session.begin_prompt(self.settings.prompt_timeout)
        try:
            await session.droid.send_message(prompt_text)
        except Exception:
            session.resolve_prompt("end_turn")
            raise

        try:
            stop_reason = await done
        except asyncio.CancelledError:
            if session.pending_prompt is done:
                session.resolve_prompt("cancelled")
            raise
        return PromptResponse(stop_reason=stop_reason)

    async def cancel(self, session_id: str, **kwargs: Any) -> None:
        """Cancel a session and stop its droid. Repeated calls are no-ops."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return

        self._cancelled_ids.add(session_id)
        session.cancelled = True
        session.resolve_prompt("cancelled")
        logger.info(f"Session {session_id} cancelled")

        if session.droid is not None:
            await session.droid.stop()
        self._release_mcp_config(session)

    async def set_session_mode(
        self, mode_id: str, session_id: str, **kwargs: Any
    ) -> SetSessionModeResponse | None:
        """Change the autonomy level for a session."""
        session = self._get_session(session_id)

        autonomy = ACP_TO_AUTONOMY.get(mode_id)
        if autonomy is None:
            raise ValueError(f"Invalid mode: {mode_id}")

        session.autonomy = autonomy
        logger.info(f"Session {session_id} mode changed to {mode_id} ({autonomy})")
        if session.droid is not None:
            await session.droid.set_mode(autonomy)

        return SetSessionModeResponse()

    async def set_session_model(
        self,
        model_id: str,
        session_id: str,
        **kwargs: Any,
    ) -> SetSessionModelResponse | None:
        """Record the model selected for a session."""
        session = self._get_session(session_id)
        session.model = model_id
        logger.info(f"Session {session_id} model set to {model_id}")
        return SetSessionModelResponse()

    async def cleanup(self) -> None:
        """Stop every droid and release all session resources."""
        sessions = list(self._sessions.values())
        self._sessions.clear()

        for session in sessions:
            session.resolve_prompt("cancelled")
            if session.droid is not None:
                try:
                    await session.droid.stop()
                except Exception:
                    logger.exception(f"Failed to stop droid for session {session.session_id}")
            self._release_mcp_config(session)

        logger.info(f"Cleaned up {len(sessions)} session(s)")

    # --- Droid wiring ---

    def _create_droid(self, cwd: str) -> DroidClient:
        executable, *executable_args = shlex.split(self.settings.droid_executable)
        return DroidClient(
            cwd=cwd,
            executable=executable,
            executable_args=executable_args,
            init_timeout=self.settings.init_timeout,
        )

    def _register_droid_handlers(self, session: Session, droid: DroidClient) -> None:
        @droid.on_notification
        async def handle_notification(notification: DroidNotification) -> None:
            await self._handle_notification(session, notification)

        @droid.on_request
        async def handle_request(method: str, params: dict[str, Any]) -> Any:
            if method == METHOD_REQUEST_PERMISSION:
                return await self._handle_permission(session, params)
            raise ValueError(f"Method not supported: {method}")

        @droid.on_exit
        async def handle_exit(returncode: int | None) -> None:
            await self._handle_droid_exit(session, returncode)

        if self.settings.debug:

            @droid.on_raw_event
            async def echo_raw_event(event: dict[str, Any]) -> None:
                await self._send_update(
                    session,
                    update_agent_message(
                        text_block(f"\n```json\n{json.dumps(event, indent=2)}\n```\n")
                    ),
                )

    async def _handle_notification(self, session: Session, notification: DroidNotification) -> None:
        logger.debug(f"Session {session.session_id} notification: {type(notification).__name__}")

        for update in notification_updates(session, notification):
            await self._send_update(session, update)

        if isinstance(notification, Complete):
            session.resolve_prompt("end_turn")

    async def _handle_permission(self, session: Session, params: dict[str, Any]) -> dict[str, Any]:
        updates, response = evaluate_permission(session, params)
        for update in updates:
            await self._send_update(session, update)
        return response

    async def _handle_droid_exit(self, session: Session, returncode: int | None) -> None:
        if session.cancelled or self._sessions.get(session.session_id) is not session:
            return

        logger.warning(f"Droid for session {session.session_id} exited with code {returncode}")
        del self._sessions[session.session_id]

        if session.pending_prompt is not None:
            await self._send_update(
                session,
                update_agent_message(text_block(f"Error: droid exited with code {returncode}")),
            )
            session.resolve_prompt("end_turn")
        self._release_mcp_config(session)

        if not self._sessions:
            self.droid_exit_code = returncode
            self.droid_exited.set()

    async def _send_update(self, session: Session, update: Any) -> None:
        if self._conn is None:
            return
        await self._conn.session_update(session_id=session.session_id, update=update)

    # --- Helpers ---

    def _get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _release_mcp_config(self, session: Session) -> None:
        if session.mcp_config_path is None:
            return
        try:
            remove_session_servers(session.mcp_config_path, session.session_id)
        except OSError as e:
            logger.warning(f"Failed to clean MCP config for session {session.session_id}: {e}")
        session.mcp_config_path = None

    def _convert_prompt_to_text(self, prompt: list[PromptBlock]) -> str:
        """Join the text blocks of an ACP prompt; other block types are ignored."""
        parts = []

        for block in prompt:
            if isinstance(block, dict):
                if block.get("type") == "text":
                    parts.append(block.get("text", ""))
            elif getattr(block, "type", None) == "text":
                parts.append(block.text)

        return "\n".join(parts)


__all__ = ["AUTH_METHOD_ID", "DroidAcpAgent"]
