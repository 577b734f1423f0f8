"""
Tool bridge: turns validated tool calls into filesystem and shell operations.

Every operation consumes one unit from its rate-limit class, passes the
SecurityGate, and leaves an entry in the security log. Failures are raised
as exceptions; handle_tool_call converts them into wire results that carry
only a short reason.
"""

import asyncio
import codecs
import logging
import os
import signal
import sys
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError

from config import COMMAND_TIMEOUT, MAX_OUTPUT_SIZE
from protocol.channel import maybe_await
from protocol.models import DirectoryEntry, ErrorCode, ToolResultData
from security.audit import SecurityLogger
from security.rate_limit import OperationClass, RateLimitExceeded, RateLimits
from security.validators import SecurityError, SecurityGate

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
TRUNCATION_MARKER = "\n... (output truncated)"


def _kill_tree(process: asyncio.subprocess.Process) -> None:
    """Kill the shell and everything it started."""
    if sys.platform == "win32":
        process.kill()
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class CommandResult(BaseModel):
    """Outcome of one execute_command call."""
    success: bool
    output: str
    exit_code: int
    timed_out: bool = False
    truncated: bool = False


class PathArgs(BaseModel):
    path: str = "."


class CommandArgs(BaseModel):
    command: str


class ToolBridge:
    """Desktop-side executor for list_directory, read_file and execute_command."""

    def __init__(
        self,
        gate: SecurityGate,
        rate_limits: RateLimits,
        security_logger: SecurityLogger,
        command_timeout: float = COMMAND_TIMEOUT,
        max_output_size: int = MAX_OUTPUT_SIZE,
    ):
        self.gate = gate
        self.rate_limits = rate_limits
        self.security_logger = security_logger
        self.command_timeout = command_timeout
        self.max_output_size = max_output_size

        self._tools: dict[str, Callable] = {
            "list_directory": self._call_list_directory,
            "read_file": self._call_read_file,
            "execute_command": self._call_execute_command,
        }

    @property
    def tool_names(self) -> list[str]:
        return sorted(self._tools)

    def _consume(self, operation: OperationClass, identifier: str) -> None:
        try:
            self.rate_limits.consume(operation, identifier)
        except RateLimitExceeded:
            self.security_logger.log_rate_limit_exceeded(identifier, operation.value)
            raise

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def list_directory(self, path: str = ".", identifier: str = "local") -> list[DirectoryEntry]:
        """
        List a project directory, directories first then by name.

        Entries that the path policy would refuse are left out.

        Raises:
            RateLimitExceeded, SecurityError, FileNotFoundError
        """
        self._consume(OperationClass.FILE, identifier)
        target = self.gate.validate_path(path, identifier)
        if not target.is_dir():
            raise FileNotFoundError("Directory not found")

        entries = []
        for child in target.iterdir():
            relative = self.gate.relative_posix(child)
            if self.gate.is_hidden_by_policy(relative):
                continue
            entries.append(DirectoryEntry(name=child.name, is_directory=child.is_dir(), path=relative))

        entries.sort(key=lambda e: (not e.is_directory, e.name))
        self.security_logger.log_success("list_directory", self.gate.relative_posix(target), identifier)
        return entries

    def read_file(self, path: str, identifier: str = "local") -> str:
        """
        Read a project file as text.

        Size and extension are checked before the file is opened.

        Raises:
            RateLimitExceeded, SecurityError, FileNotFoundError
        """
        self._consume(OperationClass.FILE, identifier)
        target = self.gate.validate_file(path, identifier)
        if not target.is_file():
            raise FileNotFoundError("File not found")

        content = target.read_text(encoding="utf-8", errors="replace")
        self.security_logger.log_success("read_file", self.gate.relative_posix(target), identifier)
        return content

    async def execute_command(
        self,
        command: str,
        identifier: str = "local",
        on_output: Optional[Callable[[str], Any]] = None,
    ) -> CommandResult:
        """
        Run a shell command in the project root.

        The command is checked against a deny-list of destructive patterns.
        That reduces risk but is not a sandbox: anything not on the list runs
        with the agent's privileges. Output (stdout and stderr merged) is
        streamed to `on_output` chunk by chunk and capped at max_output_size
        in the returned result.

        Raises:
            RateLimitExceeded, ForbiddenCommandError
        """
        self._consume(OperationClass.COMMAND, identifier)
        command = self.gate.validate_command(command, identifier)
        logger.info(f"Executing: {command}")

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.gate.project_root),
            env=self.gate.get_safe_env(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=sys.platform != "win32",
        )

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        collected: list[str] = []
        size = 0
        truncated = False

        async def pump() -> int:
            nonlocal size, truncated
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                text = decoder.decode(chunk, final=not chunk)
                if text:
                    if size < self.max_output_size:
                        kept = text[: self.max_output_size - size]
                        collected.append(kept)
                        size += len(kept)
                        truncated = truncated or len(kept) < len(text)
                    else:
                        truncated = True
                    if on_output is not None:
                        await maybe_await(on_output(text))
                if not chunk:
                    break
            return await process.wait()

        timed_out = False
        try:
            exit_code = await asyncio.wait_for(pump(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Command timed out: {command}")
            _kill_tree(process)
            await process.wait()
            exit_code = -1
            timed_out = True
        except asyncio.CancelledError:
            logger.warning(f"Command cancelled: {command}")
            _kill_tree(process)
            await asyncio.shield(process.wait())
            raise

        output = "".join(collected)
        if truncated:
            output += TRUNCATION_MARKER
        if timed_out:
            output += f"\nCommand timed out after {self.command_timeout:g} seconds"

        self.security_logger.log_success("execute_command", command, identifier)
        return CommandResult(
            success=exit_code == 0 and not timed_out,
            output=output,
            exit_code=exit_code,
            timed_out=timed_out,
            truncated=truncated,
        )

    # ------------------------------------------------------------------
    # Wire dispatch
    # ------------------------------------------------------------------

    async def handle_tool_call(
        self,
        name: str,
        args: Optional[dict] = None,
        identifier: str = "remote",
        on_output: Optional[Callable[[str], Any]] = None,
    ) -> ToolResultData:
        """Run a named tool and wrap the outcome (or failure) as a tool_result payload."""
        handler = self._tools.get(name)
        if handler is None:
            return ToolResultData(ok=False, error=f"Unknown tool: {name}", code=ErrorCode.NOT_FOUND)

        try:
            result = await handler(args or {}, identifier, on_output)
        except ValidationError:
            return ToolResultData(ok=False, error=f"Invalid arguments for {name}", code=ErrorCode.VALIDATION_ERROR)
        except RateLimitExceeded as e:
            return ToolResultData(ok=False, error=str(e), code=ErrorCode.RATE_LIMITED)
        except SecurityError as e:
            return ToolResultData(ok=False, error=str(e), code=ErrorCode.VALIDATION_ERROR)
        except FileNotFoundError as e:
            return ToolResultData(ok=False, error=str(e) or "Not found", code=ErrorCode.NOT_FOUND)
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}", exc_info=True)
            return ToolResultData(ok=False, error="Internal error", code=ErrorCode.INTERNAL_ERROR)

        return ToolResultData(ok=True, result=result)

    async def _call_list_directory(self, args: dict, identifier: str, on_output) -> list[dict]:
        params = PathArgs.model_validate(args)
        entries = self.list_directory(params.path, identifier)
        return [entry.model_dump(by_alias=True) for entry in entries]

    async def _call_read_file(self, args: dict, identifier: str, on_output) -> str:
        params = PathArgs.model_validate(args)
        return self.read_file(params.path, identifier)

    async def _call_execute_command(self, args: dict, identifier: str, on_output) -> dict:
        params = CommandArgs.model_validate(args)
        result = await self.execute_command(params.command, identifier, on_output)
        return result.model_dump()
