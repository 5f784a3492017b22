"""
Droid ACP - ACP-compatible agent for the Factory Droid CLI.

This package bridges the droid CLI's stream-jsonrpc protocol with the Agent
Client Protocol (ACP), allowing droid to work with any ACP-compatible client
like Zed, Neovim, etc.
"""

import asyncio
import contextlib
import logging
import signal

from .agent import DroidAcpAgent
from .config import BridgeSettings
from .droid_client import DroidClient, DroidInitResult

__version__ = "0.1.0"

__all__ = [
    "BridgeSettings",
    "DroidAcpAgent",
    "DroidClient",
    "DroidInitResult",
    "main",
    "run",
]

logger = logging.getLogger(__name__)


def _exit_status(returncode: int | None) -> int:
    if returncode is None:
        return 1
    if returncode < 0:
        return 128 - returncode
    return returncode


async def run(settings: BridgeSettings | None = None) -> int:
    """
    Serve ACP on stdio until the client disconnects or a signal arrives.

    Returns the process exit status: 0 on a normal shutdown, or the droid's own
    exit code when a droid exits on its own and no session is left.
    """
    from acp import run_agent

    agent = DroidAcpAgent(settings)
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, shutdown.set)

    # Enable unstable protocol to support set_session_model
    serve = asyncio.create_task(run_agent(agent, use_unstable_protocol=True))
    stop = asyncio.create_task(shutdown.wait())
    exited = asyncio.create_task(agent.droid_exited.wait())

    try:
        done, pending = await asyncio.wait(
            {serve, stop, exited}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
    finally:
        logger.info("Shutting down, cleaning up sessions")
        await agent.cleanup()

    if serve in done:
        serve.result()
    if exited in done and stop not in done:
        return _exit_status(agent.droid_exit_code)
    return 0


def main() -> None:
    """Entry point for the droid-acp command."""
    from .cli import main as cli_main

    cli_main()


if __name__ == "__main__":
    main()
