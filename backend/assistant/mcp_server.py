"""
MCP server exposing the phone's command stream to a local coding assistant.

The assistant (Cursor, Windsurf, or any MCP client) launches the relay over
stdio and calls two tools:

- get_next_command: pop the oldest command the phone sent
- send_message:     push a status update or answer back to the phone
"""

import logging

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from agent.desktop import DesktopAgent
from config import MCP_SERVER_NAME

logger = logging.getLogger(__name__)

NO_PENDING_COMMANDS = "No pending commands."


class AssistantToolError(Exception):
    """A tool call from the local assistant could not be served."""


TOOLS = [
    Tool(
        name="get_next_command",
        description="Get the next pending command from the mobile device",
        inputSchema={"type": "object", "properties": {}},
    ),
    Tool(
        name="send_message",
        description="Send a message or status update to the mobile device",
        inputSchema={
            "type": "object",
            "properties": {
                "message": {
                    "type": "string",
                    "description": "The message to send to the user",
                },
            },
            "required": ["message"],
        },
    ),
]


class AssistantTools:
    """The tool implementations, kept apart from the MCP plumbing."""

    def __init__(self, agent: DesktopAgent) -> None:
        self.agent = agent

    async def call(self, name: str, arguments: dict | None) -> str:
        """
        Run one tool and return its text result.

        Raises:
            AssistantToolError: unknown tool, bad arguments or phone unreachable
        """
        arguments = arguments or {}

        if name == "get_next_command":
            command = self.agent.next_command()
            if command is None:
                return NO_PENDING_COMMANDS
            logger.info(f"Handing command to assistant ({self.agent.pending_commands} left)")
            return command

        if name == "send_message":
            message = arguments.get("message")
            if not isinstance(message, str) or not message.strip():
                raise AssistantToolError("Message is required")
            if not await self.agent.send_result(message):
                raise AssistantToolError("Phone is not connected")
            return f"Message sent to mobile: {message}"

        raise AssistantToolError(f"Unknown tool: {name}")


def build_server(agent: DesktopAgent) -> Server:
    """Create the MCP server with get_next_command and send_message registered."""
    server = Server(MCP_SERVER_NAME)
    tools = AssistantTools(agent)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        # Errors raised here come back to the client as isError results
        text = await tools.call(name, arguments)
        return [TextContent(type="text", text=text)]

    return server


async def serve_stdio(agent: DesktopAgent) -> None:
    """Serve MCP over stdin/stdout until the client goes away."""
    server = build_server(agent)
    async with stdio_server() as (read_stream, write_stream):
        logger.info("MCP server ready on stdio")
        await server.run(read_stream, write_stream, server.create_initialization_options())
