"""Connection descriptors exchanged through the signaling service."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from config import APP_ID


class SessionState(str, Enum):
    IDLE = "idle"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    CLOSED = "closed"


class Role(str, Enum):
    INITIATOR = "initiator"  # mobile
    ANSWERER = "answerer"  # desktop


class Candidate(BaseModel):
    """One address the answerer is reachable on."""
    host: str
    port: int = Field(ge=1, le=65535)


class OfferDescriptor(BaseModel):
    """Initiator's half of the handshake."""

    model_config = ConfigDict(populate_by_name=True)

    kind: str = "offer"
    version: str = APP_ID
    public_key: str = Field(alias="publicKey")  # base64 X25519 public key
    nonce: str  # base64 session nonce, HKDF salt


class AnswerDescriptor(BaseModel):
    """Answerer's half of the handshake, listing where to connect."""

    model_config = ConfigDict(populate_by_name=True)

    kind: str = "answer"
    version: str = APP_ID
    public_key: str = Field(alias="publicKey")
    nonce: str  # echo of the offer nonce this answer belongs to
    candidates: list[Candidate] = Field(min_length=1)
