"""
Mobile Coder Relay: signaling service and command-line entry point.

`serve` runs the FastAPI rendezvous service. `agent` runs the desktop side of
a pairing in a terminal, `mcp` runs it as an MCP stdio server for a local
assistant. `init` prints a fresh pairing code and registers the MCP server with
the editors; `reset` removes that registration.
"""

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from agent.desktop import DesktopAgent
from api.limiter import limiter
from api.routes import init_routes, router
from assistant import editor_config
from assistant.mcp_server import serve_stdio
from bridge.tools import ToolBridge
from config import (
    MCP_CONNECTION_CODE,
    POLICY_FILE,
    PROJECT_ROOT,
    SECURITY_LOG_PATH,
    SIGNALING_HOST,
    SIGNALING_PORT,
    SIGNALING_URL,
)
from peer.models import Role
from peer.session import PeerSession
from peer.signaling_client import SignalingClient
from security.audit import SecurityLogger
from security.policy import load_policy
from security.rate_limit import RateLimits
from security.validators import SecurityGate
from signaling.models import generate_pairing_code, normalize_pairing_code
from signaling.store import RendezvousStore

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
store = RendezvousStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop the rendezvous sweep."""
    logger.info("Starting signaling service...")
    await store.start()
    try:
        yield
    finally:
        logger.info("Shutting down signaling service...")
        await store.stop()


# --- FastAPI app ---
app = FastAPI(
    title="Mobile Coder Relay Signaling",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info(f"Rejected malformed request to {request.url.path}: {len(exc.errors())} error(s)")
    return JSONResponse(status_code=400, content={"detail": "Malformed request"})


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak internals to the client
    logger.exception(f"Unhandled exception on {request.url.path}: {type(exc).__name__}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Inject the store into routes
init_routes(store)
app.include_router(router)


# --- Desktop agent ---

async def run_agent(code: str, signaling_url: str, project_root: str, mcp: bool = False) -> None:
    """
    Pair with a phone under `code` and serve its requests.

    In MCP mode the local assistant drains commands over stdio and the agent
    runs until the MCP client goes away. Otherwise commands are printed as
    they arrive and the agent runs until the phone leaves.
    """
    security_logger = SecurityLogger(SECURITY_LOG_PATH)
    gate = SecurityGate(project_root, load_policy(POLICY_FILE or None), security_logger)
    bridge = ToolBridge(gate, RateLimits(), security_logger)

    async with SignalingClient(signaling_url) as signaling:
        session = PeerSession(code, Role.ANSWERER, signaling)
        agent = DesktopAgent(session, bridge)
        if not mcp:
            agent.on_command = _command_printer(agent)
        await agent.start()
        try:
            if mcp:
                await serve_stdio(agent)
            else:
                await session.wait_closed()
            if session.last_error:
                logger.error(f"Session ended: {session.last_error}")
        finally:
            await agent.stop()


def _command_printer(agent: DesktopAgent):
    def show(_text: str) -> None:
        command = agent.next_command()
        while command is not None:
            print(f"> {command}", flush=True)
            command = agent.next_command()
    return show


# --- Command line ---

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mobile-coder-relay",
        description="Relay coding commands from a phone to a desktop assistant.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the signaling service")
    serve.add_argument("--host", default=SIGNALING_HOST)
    serve.add_argument("--port", type=int, default=SIGNALING_PORT)

    agent = sub.add_parser("agent", help="Run the desktop agent, printing phone commands")
    agent.add_argument("--code", help="Pairing code (generated if omitted)")
    agent.add_argument("--signaling", default=SIGNALING_URL, help="Signaling service URL")
    agent.add_argument("--root", default=PROJECT_ROOT, help="Project root exposed to the phone")

    mcp = sub.add_parser("mcp", help="Run the desktop agent as an MCP stdio server for a local assistant")
    mcp.add_argument("--code", default=MCP_CONNECTION_CODE or None, help="Pairing code")
    mcp.add_argument("--signaling", default=SIGNALING_URL, help="Signaling service URL")
    mcp.add_argument("--root", default=PROJECT_ROOT, help="Project root exposed to the phone")

    init = sub.add_parser("init", help="Print a new pairing code and register the MCP server with editors")
    init.add_argument("--code", help="Use this pairing code instead of generating one")
    init.add_argument("--length", type=int, default=6, choices=range(6, 9))
    init.add_argument("--signaling", default=SIGNALING_URL, help="Signaling service URL")
    init.add_argument("--home", type=Path, default=None, help="Home directory holding editor configs")
    init.add_argument("--no-config", action="store_true", help="Only print the code")

    reset = sub.add_parser("reset", help="Remove the MCP server from editor configs")
    reset.add_argument("--home", type=Path, default=None, help="Home directory holding editor configs")

    return parser


def run(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        import uvicorn

        uvicorn.run(app, host=args.host, port=args.port, log_level="info")
        return 0

    if args.command == "init":
        try:
            code = normalize_pairing_code(args.code) if args.code else generate_pairing_code(args.length)
        except ValueError as e:
            logger.error(str(e))
            return 1
        if not args.no_config:
            editor_config.install(code, args.signaling, args.home)
        print(code)
        return 0

    if args.command == "reset":
        changed = editor_config.uninstall(args.home)
        logger.info(f"Configuration reset ({len(changed)} file(s) changed)")
        return 0

    if args.command == "mcp":
        if not args.code:
            logger.error("A pairing code is required (--code or MCP_CONNECTION_CODE)")
            return 1
        code = args.code
    else:
        code = args.code or generate_pairing_code()
        print(f"Pairing code: {code}")

    try:
        asyncio.run(run_agent(code, args.signaling, args.root, mcp=args.command == "mcp"))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except ValueError as e:
        logger.error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(run())
