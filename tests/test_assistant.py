"""Tests for the MCP tools offered to the local assistant and the editor config writer."""

import json

import pytest
import pytest_asyncio
from mcp.types import CallToolRequest, CallToolRequestParams, ListToolsRequest

from agent.desktop import DesktopAgent
from agent.mobile import MobileClient
from assistant import editor_config
from assistant.mcp_server import NO_PENDING_COMMANDS, AssistantToolError, AssistantTools, build_server
from helpers import make_session, wait_until
from offline.command_queue import OfflineQueue
from peer.models import Role
from protocol.models import MessageType


@pytest_asyncio.fixture
async def pair(signaling_http, bridge, tmp_path):
    desktop = DesktopAgent(make_session(signaling_http, Role.ANSWERER), bridge, detect=False)
    mobile = MobileClient(
        make_session(signaling_http, Role.INITIATOR),
        OfflineQueue(tmp_path / "queue.json"),
    )
    yield desktop, mobile
    await mobile.stop()
    await desktop.stop()


@pytest.fixture
def idle_agent(signaling_http, bridge):
    return DesktopAgent(make_session(signaling_http, Role.ANSWERER), bridge, detect=False)


class TestAssistantTools:

    @pytest.mark.asyncio
    async def test_no_pending_commands(self, idle_agent):
        tools = AssistantTools(idle_agent)
        assert await tools.call("get_next_command", {}) == NO_PENDING_COMMANDS

    @pytest.mark.asyncio
    async def test_phone_command_reaches_assistant_and_reply_reaches_phone(self, pair):
        desktop, mobile = pair
        received = []
        mobile.on_message = received.append
        await desktop.start()
        await mobile.start()
        assert await desktop.session.wait_connected(timeout=5)
        tools = AssistantTools(desktop)

        await mobile.send_command("explain main.py")
        await wait_until(lambda: desktop.pending_commands == 1)
        assert await tools.call("get_next_command", None) == "explain main.py"
        assert await tools.call("get_next_command", {}) == NO_PENDING_COMMANDS

        reply = await tools.call("send_message", {"message": "main.py starts the server"})
        assert reply == "Message sent to mobile: main.py starts the server"
        await wait_until(lambda: any(m.type == MessageType.RESULT for m in received))
        result = next(m for m in received if m.type == MessageType.RESULT)
        assert result.data == "main.py starts the server"

    @pytest.mark.asyncio
    async def test_send_message_without_phone(self, idle_agent):
        tools = AssistantTools(idle_agent)
        with pytest.raises(AssistantToolError, match="not connected"):
            await tools.call("send_message", {"message": "done"})

    @pytest.mark.asyncio
    async def test_send_message_requires_text(self, idle_agent):
        tools = AssistantTools(idle_agent)
        with pytest.raises(AssistantToolError, match="required"):
            await tools.call("send_message", {"message": "  "})
        with pytest.raises(AssistantToolError, match="required"):
            await tools.call("send_message", {})

    @pytest.mark.asyncio
    async def test_unknown_tool(self, idle_agent):
        with pytest.raises(AssistantToolError, match="Unknown tool"):
            await AssistantTools(idle_agent).call("delete_everything", {})


class TestServer:

    @pytest.mark.asyncio
    async def test_lists_both_tools(self, idle_agent):
        server = build_server(idle_agent)
        result = await server.request_handlers[ListToolsRequest](ListToolsRequest(method="tools/list"))
        assert [tool.name for tool in result.root.tools] == ["get_next_command", "send_message"]

    @pytest.mark.asyncio
    async def test_call_returns_text_content(self, idle_agent):
        server = build_server(idle_agent)
        request = CallToolRequest(
            method="tools/call",
            params=CallToolRequestParams(name="get_next_command", arguments={}),
        )
        result = await server.request_handlers[CallToolRequest](request)
        assert not result.root.isError
        assert result.root.content[0].text == NO_PENDING_COMMANDS


class TestEditorConfig:

    def test_install_writes_both_editors(self, tmp_path):
        written = editor_config.install("K7Q2ZD", "http://relay.local", home=tmp_path)

        assert sorted(p.relative_to(tmp_path).as_posix() for p in written) == [
            ".codeium/windsurf/mcp_config.json",
            ".cursor/mcp.json",
        ]
        entry = json.loads((tmp_path / ".cursor" / "mcp.json").read_text())["mcpServers"]["mobile-coder"]
        assert entry["env"] == {"MCP_CONNECTION_CODE": "K7Q2ZD", "MCP_SIGNALING_URL": "http://relay.local"}
        assert entry["args"][-4:] == ["--code", "K7Q2ZD", "--signaling", "http://relay.local"]

    def test_install_keeps_other_servers(self, tmp_path):
        path = tmp_path / ".cursor" / "mcp.json"
        path.parent.mkdir()
        path.write_text(json.dumps({"mcpServers": {"other": {"command": "x"}}, "theme": "dark"}))

        editor_config.install("K7Q2ZD", "http://relay.local", home=tmp_path)

        config = json.loads(path.read_text())
        assert config["theme"] == "dark"
        assert set(config["mcpServers"]) == {"other", "mobile-coder"}

    def test_corrupt_config_is_replaced(self, tmp_path):
        path = tmp_path / ".cursor" / "mcp.json"
        path.parent.mkdir()
        path.write_text("{not json")

        editor_config.install("K7Q2ZD", "http://relay.local", home=tmp_path)

        assert "mobile-coder" in json.loads(path.read_text())["mcpServers"]

    def test_uninstall_removes_only_our_entry(self, tmp_path):
        path = tmp_path / ".cursor" / "mcp.json"
        path.parent.mkdir()
        path.write_text(json.dumps({"mcpServers": {"other": {"command": "x"}}}))
        editor_config.install("K7Q2ZD", "http://relay.local", home=tmp_path)

        changed = editor_config.uninstall(home=tmp_path)

        assert len(changed) == 2
        assert json.loads(path.read_text())["mcpServers"] == {"other": {"command": "x"}}

    def test_uninstall_without_configs(self, tmp_path):
        assert editor_config.uninstall(home=tmp_path) == []
        assert not (tmp_path / ".cursor").exists()
