"""
Droid subprocess client.

Spawns ``droid exec`` in stream-jsonrpc mode and speaks the Factory API
message format over its stdio. Inbound lines are handled strictly in order;
each one, including delivery to every registered handler, completes before the
next line is read.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from uuid import uuid4

from .errors import DroidInitTimeoutError, DroidProcessError
from .notifications import DroidNotification, TurnTracker
from .transport import STREAM_LIMIT, LineTransport

logger = logging.getLogger(__name__)

FACTORY_API_VERSION = "1.0.0"

METHOD_INITIALIZE_SESSION = "droid.initialize_session"
METHOD_ADD_USER_MESSAGE = "droid.add_user_message"
METHOD_UPDATE_SESSION_SETTINGS = "droid.update_session_settings"
METHOD_SESSION_NOTIFICATION = "droid.session_notification"
METHOD_REQUEST_PERMISSION = "droid.request_permission"

INTERNAL_ERROR = -32603
METHOD_NOT_FOUND = -32601

NotificationHandler = Callable[[DroidNotification], Awaitable[None]]
RawEventHandler = Callable[[dict[str, Any]], Awaitable[None]]
RequestHandler = Callable[[str, dict[str, Any]], Awaitable[Any]]
ExitHandler = Callable[[int | None], Awaitable[None]]


@dataclass
class DroidInitResult:
    """Result of ``droid.initialize_session``."""

    session_id: str
    model_id: str
    available_models: list[dict[str, Any]] = field(default_factory=list)


def _message_kind(message: dict[str, Any]) -> str | None:
    kind = message.get("type")
    if kind in ("request", "response", "notification"):
        return kind
    if "method" in message:
        return "request" if "id" in message else "notification"
    if "result" in message or "error" in message:
        return "response"
    return None


class DroidClient:
    """
    Client for one ``droid exec`` process.

    Example:
        ```python
        droid = DroidClient(cwd="/path/to/project")

        @droid.on_notification
        async def handle(notification):
            print(notification)

        init = await droid.start()
        await droid.send_message("Hello!")
        ```
    """

    def __init__(
        self,
        cwd: str,
        executable: str = "droid",
        executable_args: list[str] | None = None,
        init_timeout: float = 60.0,
        env: dict[str, str] | None = None,
    ):
        """
        Initialize the droid client.

        Args:
            cwd: Working directory handed to the droid.
            executable: The droid command to run.
            executable_args: Arguments placed before the ``exec`` subcommand.
            init_timeout: Seconds to wait for the initialize response.
            env: Environment for the child (defaults to this process's).
        """
        self.cwd = cwd
        self.executable = executable
        self.executable_args = executable_args or []
        self.init_timeout = init_timeout
        self.env = env

        self.machine_id = str(uuid4())
        self.session_id: str | None = None

        self._process: asyncio.subprocess.Process | None = None
        self._transport: LineTransport | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._init_request_id: str | None = None
        self._init_future: asyncio.Future[DroidInitResult] | None = None
        self._tracker = TurnTracker()
        self._stopped = False
        self._exited = False

        self._notification_handlers: list[NotificationHandler] = []
        self._raw_event_handlers: list[RawEventHandler] = []
        self._exit_handlers: list[ExitHandler] = []
        self._request_handler: RequestHandler | None = None

    # --- Handler registration ---

    def on_notification(self, func: NotificationHandler) -> NotificationHandler:
        """Register a handler for normalized notifications."""
        self._notification_handlers.append(func)
        return func

    def on_raw_event(self, func: RawEventHandler) -> RawEventHandler:
        """Register a handler that sees every decoded inbound message."""
        self._raw_event_handlers.append(func)
        return func

    def on_request(self, func: RequestHandler) -> RequestHandler:
        """
        Register the handler for requests sent by the droid.

        The handler receives (method, params); its return value is sent back as
        the result, and a raised exception as an error response.
        """
        self._request_handler = func
        return func

    def on_exit(self, func: ExitHandler) -> ExitHandler:
        """Register a handler called once with the exit code when the process ends."""
        self._exit_handlers.append(func)
        return func

    # --- Lifecycle ---

    @property
    def command(self) -> list[str]:
        return [
            self.executable,
            *self.executable_args,
            "exec",
            "--input-format",
            "stream-jsonrpc",
            "--output-format",
            "stream-jsonrpc",
            "--cwd",
            self.cwd,
        ]

    def is_running(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and not self._stopped
        )

    async def start(self) -> DroidInitResult:
        """
        Spawn the droid and initialize its session.

        Raises:
            DroidProcessError: If the process cannot be spawned, rejects the
                initialize request, or exits before answering.
            DroidInitTimeoutError: If no answer arrives within ``init_timeout``.
        """
        if self._process is not None:
            raise DroidProcessError("Droid process already started")

        logger.info(f"Starting droid: {self.command}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env if self.env is not None else dict(os.environ),
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise DroidProcessError(f"Failed to spawn {self.executable}: {e}") from e

        if self._process.stdin is None or self._process.stdout is None:
            raise DroidProcessError("Failed to create subprocess pipes")

        self._transport = LineTransport(self._process.stdout, self._process.stdin)
        self._init_future = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.create_task(self._read_stdout())
        if self._process.stderr is not None:
            self._stderr_task = asyncio.create_task(self._read_stderr(self._process.stderr))

        self._init_request_id = str(uuid4())
        try:
            await self._send_request(
                METHOD_INITIALIZE_SESSION,
                {"machineId": self.machine_id, "cwd": self.cwd},
                request_id=self._init_request_id,
            )
            result = await asyncio.wait_for(
                asyncio.shield(self._init_future), timeout=self.init_timeout
            )
        except asyncio.TimeoutError:
            await self.stop()
            raise DroidInitTimeoutError(
                f"Droid init timeout after {self.init_timeout:g}s"
            ) from None
        except BaseException:
            await self.stop()
            raise
        finally:
            self._init_request_id = None

        logger.info(f"Droid session initialized: {result.session_id} (model {result.model_id})")
        return result

    async def stop(self) -> None:
        """Close stdin and terminate the process. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True

        if self._transport is not None:
            self._transport.close()

        process = self._process
        if process is None or process.returncode is not None:
            return

        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=3.0)
        except asyncio.TimeoutError:
            logger.warning("Droid terminate timed out, killing")
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            try:
                await asyncio.wait_for(process.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                logger.warning("Droid kill timed out")

    # --- Outbound ---

    async def send_message(self, text: str) -> None:
        """Send a user message; no-op before the droid session exists."""
        if not self.session_id:
            return
        await self._send_request(
            METHOD_ADD_USER_MESSAGE, {"sessionId": self.session_id, "text": text}
        )

    async def set_mode(self, level: str) -> None:
        """Change the droid's autonomy level; no-op before the session exists."""
        if not self.session_id:
            return
        await self._send_request(
            METHOD_UPDATE_SESSION_SETTINGS,
            {"sessionId": self.session_id, "settings": {"autonomyLevel": level}},
        )

    async def _send_request(
        self, method: str, params: dict[str, Any], request_id: str | None = None
    ) -> str | None:
        if self._transport is None or not self._transport.writable:
            logger.debug(f"Droid not writable, dropping {method}")
            return None

        request_id = request_id or str(uuid4())
        await self._transport.send(
            {
                "jsonrpc": "2.0",
                "factoryApiVersion": FACTORY_API_VERSION,
                "type": "request",
                "method": method,
                "params": params,
                "id": request_id,
            }
        )
        logger.debug(f"Sent: {method}")
        return request_id

    async def _send_response(self, request_id: Any, payload: dict[str, Any]) -> None:
        if self._transport is None or not self._transport.writable:
            logger.debug(f"Droid not writable, dropping response to {request_id}")
            return
        await self._transport.send(
            {
                "jsonrpc": "2.0",
                "factoryApiVersion": FACTORY_API_VERSION,
                "type": "response",
                "id": request_id,
                **payload,
            }
        )

    # --- Inbound ---

    async def _read_stdout(self) -> None:
        assert self._transport is not None and self._process is not None
        process = self._process

        try:
            async for message in self._transport.messages():
                await self._handle_message(message)
        finally:
            returncode = await process.wait()
            logger.info(f"Droid exit: {returncode}")
            self._fail_init(DroidProcessError(f"Droid exited with code {returncode} before initializing"))
            await self._notify_exit(returncode)

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            logger.debug(f"[droid] {line.decode('utf-8', errors='replace').rstrip()}")

    async def _handle_message(self, message: dict[str, Any]) -> None:
        for raw_handler in self._raw_event_handlers:
            try:
                await raw_handler(message)
            except Exception:
                logger.exception("Raw event handler failed")

        try:
            kind = _message_kind(message)
            if kind == "response":
                self._handle_response(message)
            elif kind == "notification":
                await self._handle_notification(message)
            elif kind == "request":
                await self._handle_request(message)
            else:
                logger.debug(f"Ignoring unexpected message: {message}")
        except Exception:
            logger.exception("Failed to handle droid message")

    def _handle_response(self, message: dict[str, Any]) -> None:
        future = self._init_future
        result = message.get("result")
        error = message.get("error")
        is_init = self._init_request_id is not None and message.get("id") == self._init_request_id

        has_session = isinstance(result, dict) and bool(result.get("sessionId"))

        if future is not None and not future.done() and (is_init or has_session):
            if error:
                message_text = error.get("message") if isinstance(error, dict) else str(error)
                future.set_exception(DroidProcessError(message_text or "Droid initialization failed"))
            elif has_session:
                self.session_id = str(result["sessionId"])
                settings = result.get("settings") or {}
                future.set_result(
                    DroidInitResult(
                        session_id=self.session_id,
                        model_id=settings.get("modelId") or "unknown",
                        available_models=list(result.get("availableModels") or []),
                    )
                )
            else:
                future.set_exception(DroidProcessError("initialize_session response carried no sessionId"))
            return

        if error:
            logger.warning(f"Droid error response to {message.get('id')}: {error}")
        else:
            logger.debug(f"Droid response to {message.get('id')}")

    async def _handle_notification(self, message: dict[str, Any]) -> None:
        if message.get("method") != METHOD_SESSION_NOTIFICATION:
            logger.debug(f"Ignoring notification: {message.get('method')}")
            return

        payload = (message.get("params") or {}).get("notification")
        if not isinstance(payload, dict):
            return

        for notification in self._tracker.feed(payload):
            await self._emit(notification)

    async def _emit(self, notification: DroidNotification) -> None:
        for handler in self._notification_handlers:
            await handler(notification)

    async def _handle_request(self, message: dict[str, Any]) -> None:
        method = str(message.get("method"))
        params = message.get("params") or {}
        request_id = message.get("id")

        if self._request_handler is None:
            if method == METHOD_REQUEST_PERMISSION:
                logger.info(f"Auto-approved permission request (no handler): {request_id}")
                await self._send_response(request_id, {"result": {"selectedOption": "proceed_once"}})
            else:
                await self._send_response(
                    request_id,
                    {"error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"}},
                )
            return

        try:
            result = await self._request_handler(method, params)
        except Exception as e:
            logger.warning(f"Request handler failed for {method}: {e}")
            await self._send_response(
                request_id,
                {"error": {"code": INTERNAL_ERROR, "message": str(e) or "Internal error"}},
            )
            return

        await self._send_response(request_id, {"result": result})

    def _fail_init(self, error: Exception) -> None:
        future = self._init_future
        if future is not None and not future.done():
            future.set_exception(error)

    async def _notify_exit(self, returncode: int | None) -> None:
        if self._exited:
            return
        self._exited = True
        self._tracker.reset()
        for handler in self._exit_handlers:
            try:
                await handler(returncode)
            except Exception:
                logger.exception("Exit handler failed")


__all__ = [
    "DroidClient",
    "DroidInitResult",
    "METHOD_REQUEST_PERMISSION",
]
