"""Pydantic models for the signaling service."""

import re
import secrets
import string
from enum import Enum
from typing import Any

from pydantic import BaseModel, field_validator

PAIRING_CODE_PATTERN = re.compile(r"^[A-Za-z0-9]{6,8}$")
PAIRING_CODE_ALPHABET = string.ascii_uppercase + string.digits


class Slot(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"


def generate_pairing_code(length: int = 6) -> str:
    """A fresh human-typeable pairing code, e.g. 'K7Q2ZD'."""
    if not 6 <= length <= 8:
        raise ValueError("Pairing codes are 6 to 8 characters long")
    return "".join(secrets.choice(PAIRING_CODE_ALPHABET) for _ in range(length))


def normalize_pairing_code(code: str) -> str:
    """Validate and upper-case a pairing code. Raises ValueError if malformed."""
    code = code.strip()
    if not PAIRING_CODE_PATTERN.match(code):
        raise ValueError("Pairing code must be 6-8 letters or digits")
    return code.upper()


class SignalEnvelope(BaseModel):
    """One stored descriptor in a code's offer or answer slot."""
    code: str
    signal: Any
    stored_at: float  # monotonic seconds


class SignalPost(BaseModel):
    """Body of POST /offer and POST /answer."""
    code: str
    signal: Any

    @field_validator("code")
    @classmethod
    def code_format(cls, v: str) -> str:
        return normalize_pairing_code(v)

    @field_validator("signal")
    @classmethod
    def signal_present(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("signal cannot be null")
        return v


class SignalResponse(BaseModel):
    signal: Any = None


class StatusResponse(BaseModel):
    status: str


class HealthResponse(BaseModel):
    status: str
    signals: int
