"""
Receiver process entrypoint.

Resolves configuration, initialises logging, builds the aiortc-backed
orchestrator and runs it until the session fails or the process is
interrupted.  When a status port is configured the read-only diagnostics API
is served alongside it.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Optional

from .config import ReceiverConfig, load_config
from .display import FrameSourceDisplay
from .rtc.aiortc_adapter import AiortcPeerConnection
from .rtc.orchestrator import NegotiationOrchestrator
from .rtc.session import NegotiationState
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


def build_orchestrator(config: ReceiverConfig) -> NegotiationOrchestrator:
    adapter = AiortcPeerConnection(ice_servers=config.ice_servers)
    display = FrameSourceDisplay(config.video_width, config.video_height)
    return NegotiationOrchestrator(adapter, display, config)


async def serve_status(orchestrator: NegotiationOrchestrator, host: str, port: int) -> None:
    """
    Serve the diagnostics API with uvicorn until cancelled.
    """

    import uvicorn

    from .api.server import create_app

    app = create_app(orchestrator)
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)
    # The receiver owns signal handling.
    server.install_signal_handlers = lambda: None
    await server.serve()


async def serve(config: ReceiverConfig) -> NegotiationState:
    orchestrator = build_orchestrator(config)
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _handle_signal(signum: int) -> None:
        LOG.info("Received signal %s, tearing down session...", signum)
        stop_event.set()

    for signame in ("SIGINT", "SIGTERM"):
        try:
            loop.add_signal_handler(getattr(signal, signame), _handle_signal, getattr(signal, signame))
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
            LOG.debug("Signal handlers unavailable for %s", signame)

    status_task: Optional[asyncio.Task] = None
    if config.status_port:
        status_task = asyncio.create_task(serve_status(orchestrator, config.status_host, config.status_port))
        LOG.info("Diagnostics API on http://%s:%d/status", config.status_host, config.status_port)

    run_task = asyncio.create_task(orchestrator.run())
    stop_task = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        await orchestrator.teardown()
        stop_task.cancel()
        if not run_task.done():
            await run_task
        if status_task is not None:
            status_task.cancel()
            await asyncio.gather(status_task, return_exceptions=True)

    for error in orchestrator.session.errors:
        LOG.info("Session error: %s (%s)", error.message, error.kind.value)
    return run_task.result()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Receive-only WebRTC video receiver")
    parser.add_argument("--profile", default="default", help="configuration profile to load")
    parser.add_argument("--url", dest="signaling_url", help="signaling WebSocket URL")
    parser.add_argument("--timeout", dest="connect_timeout", type=float, help="channel connect timeout (s)")
    parser.add_argument("--max-attempts", dest="acquisition_max_attempts", type=int, help="frame source polls")
    parser.add_argument("--interval", dest="acquisition_interval", type=float, help="seconds between polls")
    parser.add_argument("--ice-server", dest="ice_servers", action="append", help="STUN/TURN URL (repeatable)")
    parser.add_argument("--require-codec", dest="required_codec", help="fail early if codec is unavailable")
    parser.add_argument("--status-port", dest="status_port", type=int, help="serve diagnostics on this port")
    parser.add_argument("--debug", dest="debug_logs", action="store_true", default=None, help="verbose logging")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    overrides = {key: value for key, value in vars(args).items() if key != "profile"}
    config = load_config(args.profile, overrides=overrides)
    configure_logging(logging.DEBUG if config.debug_logs else logging.INFO)

    try:
        final_state = asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOG.info("Receiver interrupted by user.")
        return 130
    return 1 if final_state is NegotiationState.FAILED else 0


if __name__ == "__main__":
    raise SystemExit(run())
