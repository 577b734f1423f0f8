"""
Path and command validation for the tool bridge.

Implements the checks every bridge operation passes before touching the
filesystem or a shell:
- Path sanitizing and project-root jail (path traversal prevention)
- Blocked directory segments and sensitive filename patterns
- File extension allow-list and size ceiling
- Destructive command deny-list

Error messages carry only the policy-violation reason. They never contain
absolute paths because they are relayed to the remote peer verbatim.
"""

import os
import re
import logging
from pathlib import Path, PurePosixPath

from security.audit import SecurityLogger
from security.policy import SecurityPolicy

logger = logging.getLogger(__name__)

_INVALID_PATH_CHARS = re.compile(r'[<>:"|?*\x00]')
_SEGMENT_SPLIT = re.compile(r"[\\/]+")


class SecurityError(Exception):
    """Raised when a security policy violation is detected."""


class PathTraversalError(SecurityError):
    """Raised when a path tries to escape the project root."""


class BlockedPathError(SecurityError):
    """Raised when a path hits a blocked directory or sensitive file pattern."""


class FileTypeNotAllowedError(SecurityError):
    """Raised when a file extension is not on the allow-list."""


class FileTooLargeError(SecurityError):
    """Raised when a file exceeds the configured size ceiling."""


class ForbiddenCommandError(SecurityError):
    """Raised when a command matches the destructive-operation deny-list."""


def sanitize_path(raw: str) -> str:
    """Strip parent references, leading/trailing slashes and invalid characters."""
    cleaned = raw.replace("\\", "/")
    cleaned = cleaned.replace("..", "")
    cleaned = _INVALID_PATH_CHARS.sub("", cleaned)
    cleaned = re.sub(r"/{2,}", "/", cleaned)
    return cleaned.strip().strip("/").strip()


def has_parent_reference(raw: str) -> bool:
    """True if any segment of the raw path is '..'."""
    return any(part.strip() == ".." for part in _SEGMENT_SPLIT.split(raw))


class SecurityGate:
    """
    Enforces the path and command policy for one project root.

    Denials are written to the injected SecurityLogger before the
    corresponding SecurityError is raised.
    """

    def __init__(
        self,
        project_root: str | Path,
        policy: SecurityPolicy,
        security_logger: SecurityLogger,
    ):
        self.project_root = Path(project_root).resolve()
        self.policy = policy
        self.security_logger = security_logger

        if not self.project_root.is_dir():
            raise ValueError(f"Project root does not exist: {self.project_root}")

        logger.info(f"SecurityGate initialized. project_root={self.project_root}")

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def validate_path(self, raw_path: str, identifier: str = "local") -> Path:
        """
        Validate that a path stays inside the project root and is not blocked.

        Returns:
            The resolved absolute Path.

        Raises:
            PathTraversalError: '..' segments or an escape through symlinks
            BlockedPathError: blocked segment or sensitive filename
        """
        if has_parent_reference(raw_path):
            self.security_logger.log_path_traversal(raw_path, identifier)
            raise PathTraversalError("Path traversal detected")

        target = (self.project_root / sanitize_path(raw_path)).resolve()

        try:
            common = Path(os.path.commonpath([self.project_root, target]))
        except ValueError:
            # Different drives on Windows
            common = None
        if common != self.project_root:
            self.security_logger.log_path_traversal(raw_path, identifier)
            raise PathTraversalError("Path traversal detected")

        relative = self.relative_posix(target)
        for part in PurePosixPath(relative).parts:
            if part in self.policy.paths.blocked_segments:
                self.security_logger.log_blocked_path(raw_path, f"segment {part}", identifier)
                raise BlockedPathError(f"Access to {part} is not allowed")

        if self.is_sensitive(relative):
            self.security_logger.log_blocked_path(raw_path, "sensitive file pattern", identifier)
            raise BlockedPathError("Access to sensitive files is not allowed")

        return target

    def validate_file(self, raw_path: str, identifier: str = "local") -> Path:
        """validate_path plus extension allow-list and size ceiling."""
        target = self.validate_path(raw_path, identifier)

        ext = target.suffix.lower()
        if ext not in self.policy.paths.allowed_extensions:
            self.security_logger.log_blocked_path(raw_path, f"extension {ext or '(none)'}", identifier)
            raise FileTypeNotAllowedError(f"File type {ext or '(none)'} is not allowed")

        try:
            size = target.stat().st_size
        except OSError:
            # Missing files are reported by the caller that opens them
            return target

        if size > self.policy.paths.max_file_size:
            self.security_logger.log_blocked_path(raw_path, f"size {size}", identifier)
            raise FileTooLargeError("File too large")

        return target

    def relative_posix(self, target: Path) -> str:
        """Project-relative POSIX path; '.' for the root itself."""
        relative = target.relative_to(self.project_root).as_posix()
        return relative or "."

    def is_sensitive(self, relative_path: str) -> bool:
        return any(p.search(relative_path) for p in self.policy.paths.compiled_file_patterns)

    def is_hidden_by_policy(self, relative_path: str) -> bool:
        """True if a listing entry should be omitted (no audit entry)."""
        parts = PurePosixPath(relative_path).parts
        if any(part in self.policy.paths.blocked_segments for part in parts):
            return True
        return self.is_sensitive(relative_path)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def validate_command(self, command: str, identifier: str = "local") -> str:
        """
        Check a shell command against the destructive-operation deny-list.

        This is a deny-list, not a sandbox.

        Raises:
            ForbiddenCommandError: if any blocked pattern matches
        """
        if not command or not command.strip():
            raise ForbiddenCommandError("Empty command")

        for pattern in self.policy.commands.compiled_patterns:
            if pattern.search(command):
                self.security_logger.log_blocked_command(command, pattern.pattern, identifier)
                raise ForbiddenCommandError("Dangerous command detected")

        return command.strip()

    @staticmethod
    def get_safe_env() -> dict:
        """
        Environment for child processes.

        Only allow-listed variables are passed so tokens and keys in the
        agent's environment never reach commands sent from the phone.
        """
        allowed_vars = [
            "PATH", "PATHEXT", "SYSTEMROOT", "WINDIR", "COMSPEC",
            "TEMP", "TMP", "HOME", "USER", "USERNAME", "SHELL",
            "LANG", "LC_ALL", "LC_CTYPE", "TERM", "COLORTERM",
            "XDG_RUNTIME_DIR", "XDG_CONFIG_HOME", "XDG_DATA_HOME",
            "HOMEDRIVE", "HOMEPATH", "USERPROFILE", "APPDATA",
            "LOCALAPPDATA", "PROGRAMFILES", "OS", "COMPUTERNAME",
            "GIT_AUTHOR_NAME", "GIT_AUTHOR_EMAIL",
            "GIT_COMMITTER_NAME", "GIT_COMMITTER_EMAIL",
        ]
        return {var: os.environ[var] for var in allowed_vars if var in os.environ}
