"""Data models for wabot."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, Protocol

# Stub type the transport attaches to messages it could not decrypt.
STUB_DECRYPT_FAILURE = "decrypt_failure"


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class CloseReason:
    status_code: int | None = None
    detail: str = ""


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass
class Credential:
    """Contents of the master credentials record."""

    creds: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def fresh(cls) -> Credential:
        """Empty first-run credential; the transport performs device linking."""
        return cls(creds={"registered": False})


class KeyReader(Protocol):
    def get_keys(self, kind: str, ids: list[str]) -> dict[str, Any]: ...


@dataclass
class AuthState:
    """What a transport needs to resume a session without a fresh device link."""

    creds: dict[str, Any]
    keys: KeyReader


# ---------------------------------------------------------------------------
# Transport events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MessageKey:
    remote_jid: str | None
    from_me: bool = False
    id: str = ""
    participant: str | None = None  # sender inside a group


@dataclass(frozen=True)
class RawMessage:
    """Inbound event as delivered by the transport, before normalization."""

    key: MessageKey
    message: dict[str, Any] | None = None
    stub_type: str | None = None
    timestamp: float = 0.0
    push_name: str | None = None


@dataclass(frozen=True)
class ConnectionUpdate:
    state: Literal["connecting", "open", "close"]
    reason: CloseReason | None = None


@dataclass(frozen=True)
class CredsUpdate:
    """Credential rotation: partial creds to merge plus key writes (None deletes)."""

    creds: dict[str, Any] = field(default_factory=dict)
    keys: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class MessagesUpsert:
    messages: list[RawMessage]


TransportEvent = ConnectionUpdate | CredsUpdate | MessagesUpsert


# ---------------------------------------------------------------------------
# Normalized messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InboundMessage:
    chat_id: str
    sender_id: str
    is_group: bool
    text: str
    raw_kind: str  # payload key the text came from, e.g. "conversation"
    timestamp: float
    message_id: str = ""
    push_name: str | None = None


class DropReason(StrEnum):
    NO_PAYLOAD = "no_payload"
    MALFORMED = "malformed"
    SELF_SENT = "self_sent"
    BROADCAST = "broadcast"
    DECRYPT_FAILURE = "decrypt_failure"
    NOT_TEXT = "not_text"


@dataclass(frozen=True)
class Drop:
    reason: DropReason
    chat_id: str | None = None
    desync_detected: bool = False  # decrypt-failure loop crossed the threshold


# ---------------------------------------------------------------------------
# Command handling
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Reply:
    text: str
    mentions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CooldownDecision:
    allowed: bool
    remaining_seconds: float = 0.0


class TaskErrorKind(StrEnum):
    TIMEOUT = "timeout"
    EXTERNAL_FAILURE = "external_failure"


@dataclass(frozen=True)
class TaskOutcome:
    succeeded: bool
    text: str
    elapsed_seconds: float
    error_kind: TaskErrorKind | None = None


@dataclass
class RepairReport:
    deleted_count: int = 0
    details: list[str] = field(default_factory=list)

    def add(self, name: str, problem: str) -> None:
        self.deleted_count += 1
        self.details.append(f"{name}: {problem}")

    def merge(self, other: RepairReport) -> None:
        self.deleted_count += other.deleted_count
        self.details.extend(other.details)
