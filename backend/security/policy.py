"""
Static path and command security policy.

Loaded once at startup (optionally from a JSON file) and immutable afterwards.
"""

import json
import logging
import re
from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator

logger = logging.getLogger(__name__)


def _check_patterns(patterns: tuple[str, ...]) -> tuple[str, ...]:
    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            raise ValueError(f"Invalid pattern {pattern!r}: {e}")
    return patterns


class PathPolicy(BaseModel):
    """Which files and directories the bridge may touch under the project root."""

    model_config = ConfigDict(frozen=True)

    max_file_size: int = 10 * 1024 * 1024  # 10 MB
    allowed_extensions: tuple[str, ...] = (
        ".ts", ".js", ".jsx", ".tsx", ".json", ".md", ".txt", ".yml", ".yaml",
        ".py", ".toml", ".cfg", ".ini", ".css", ".html", ".sh", ".example",
    )
    blocked_segments: tuple[str, ...] = (
        ".git",
        "node_modules",
        ".env",
        ".env.local",
        ".env.development",
        ".env.production",
        "dist",
        "build",
        ".next",
        ".nuxt",
        ".cache",
        "tmp",
        "temp",
        ".ssh",
        "__pycache__",
        ".venv",
    )
    blocked_file_patterns: tuple[str, ...] = (
        r"\.key$",
        r"\.pem$",
        r"\.crt$",
        r"\.p12$",
        r"private",
        r"secret",
        r"password",
        r"token",
        r"credentials",
        r"id_rsa",
        r"id_ed25519",
        r"(^|/)\.env(\.(?!example$)[^/]*)?$",
        r"\.log$",
        r"\.pid$",
        r"\.lock$",
    )

    @field_validator("blocked_file_patterns")
    @classmethod
    def patterns_compile(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return _check_patterns(v)

    @cached_property
    def compiled_file_patterns(self) -> tuple[re.Pattern, ...]:
        return tuple(re.compile(p, re.IGNORECASE) for p in self.blocked_file_patterns)


class CommandPolicy(BaseModel):
    """
    Deny-list of destructive shell patterns.

    This reduces risk but is NOT a sandbox: any command that does not match a
    pattern runs with the desktop user's privileges.
    """

    model_config = ConfigDict(frozen=True)

    blocked_patterns: tuple[str, ...] = (
        r"\brm\s+-[a-z]*r[a-z]*f|\brm\s+-[a-z]*f[a-z]*r",  # recursive forced delete
        r"\brm\s+-r\b",
        r"\bsudo\b",
        r"\bsu\b(\s|$)",
        r"\bdoas\b",
        r"\bchmod\s+(-R\s+)?777\b",
        r"\bchown\s+-R\b",
        r"\bwget\b|\bcurl\b",
        r"\bnc\s|\bnetcat\b|\bncat\b",
        r"\bssh\b",
        r"\bscp\b",
        r"\brsync\b",
        r"\bdd\s+if=",
        r"\bmkfs(\.\w+)?\b",
        r"\bfdisk\b",
        r"\bparted\b",
        r"\bmount\b",
        r"\bumount\b",
        r"\bpasswd\b",
        r"\bshadow\b",
        r"\buseradd\b|\buserdel\b|\busermod\b",
        r"\bcrontab\b",
        r"\bsystemctl\b",
        r"\bservice\s",
        r"\bshutdown\b|\breboot\b|\bhalt\b",
        r"\bkill\s+-9\b",
        r"\bkillall\b",
        r">\s*/dev/(null|zero|random|urandom|sd\w*|nvme\w*)",
        r":\(\)\s*\{",  # fork bomb
    )

    @field_validator("blocked_patterns")
    @classmethod
    def patterns_compile(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return _check_patterns(v)

    @cached_property
    def compiled_patterns(self) -> tuple[re.Pattern, ...]:
        return tuple(re.compile(p, re.IGNORECASE) for p in self.blocked_patterns)


class SecurityPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    paths: PathPolicy = PathPolicy()
    commands: CommandPolicy = CommandPolicy()


def load_policy(policy_file: str | Path | None = None) -> SecurityPolicy:
    """
    Load the security policy.

    Without a file the built-in defaults are used. A JSON file may override
    any field, e.g. {"paths": {"max_file_size": 1048576}}.
    """
    if not policy_file:
        return SecurityPolicy()

    path = Path(policy_file)
    data = json.loads(path.read_text(encoding="utf-8"))
    policy = SecurityPolicy.model_validate(data)
    logger.info(f"Loaded security policy from {path}")
    return policy
