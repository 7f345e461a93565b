"""
node.py – The implementation-agnostic view of one running network node.

A NodeHandle exposes the operations the scenarios drive (identity,
connect, content, records, pubsub).  Which concrete implementation sits
behind it is only a `kind` tag; nothing outside the daemon factory
branches on it.
"""

import base64
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

import base58
import trio

from .config import (
    DEFAULT_CONFIG,
    NAMESYS_PUBSUB_ARG,
    RECORD_TOPIC_PREFIX,
    SUBSCRIPTION_BUFFER,
)
from .errors import NodeStateError
from .logs import setup_logging

logger = setup_logging("node")

Topic = str | bytes


class NodeKind(str, Enum):
    GO = "go"
    JS = "js"
    PROC = "proc"


class NodeState(Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    STOPPED = "stopped"


# ── Data model ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class NodeIdentity:
    id: str
    addresses: tuple[str, ...] = ()
    agent_version: str = ""

    def dial_address(self) -> str:
        """A loopback TCP address if the node advertises one, else the first."""
        if not self.addresses:
            raise ValueError(f"node {self.id} advertises no addresses")
        for addr in self.addresses:
            if addr.startswith("/ip4/127.0.0.1/tcp/") and "/ws" not in addr:
                return addr
        return self.addresses[0]


@dataclass(frozen=True)
class ContentDescriptor:
    hash: str
    name: str = ""
    size: int = 0


@dataclass(frozen=True)
class ObjectLink:
    name: str
    hash: str
    size: int = 0


@dataclass(frozen=True)
class ObjectGraph:
    hash: str
    links: tuple[ObjectLink, ...] = ()
    data_size: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.links and self.data_size == 0


@dataclass(frozen=True)
class RecordReceipt:
    name: str
    value: str


@dataclass(frozen=True)
class RecordValue:
    path: str


@dataclass(frozen=True)
class PubsubMessage:
    topic: Topic
    data: bytes
    sender: str = ""
    seqno: str = ""


@dataclass
class NodeSpec:
    """What to ask the daemon factory for."""

    kind: NodeKind
    disposable: bool = True
    bits: int | None = None
    args: tuple[str, ...] = ()
    config: dict = field(default_factory=lambda: copy.deepcopy(DEFAULT_CONFIG))
    repo_path: str | None = None
    label: str = ""

    @classmethod
    def name_pubsub(cls, kind: NodeKind, **kwargs) -> "NodeSpec":
        """A node with pubsub and name-over-pubsub switched on."""
        config = kwargs.pop("config", None) or copy.deepcopy(DEFAULT_CONFIG)
        config.setdefault("Pubsub", {})["Enabled"] = True
        return cls(kind=kind, args=(NAMESYS_PUBSUB_ARG,), config=config, **kwargs)


# ── Record names and topics ──────────────────────────────────────────────

def peer_key(name: str) -> bytes:
    """Multihash bytes behind a peer id or IPNS name in any common encoding."""
    name = name.removeprefix("/ipns/")
    if name.startswith(("Qm", "12D3", "1")):
        return base58.b58decode(name)
    if name.startswith("k"):
        value = int(name[1:], 36)
        cid = value.to_bytes((value.bit_length() + 7) // 8, "big")
        return cid[2:]  # version + libp2p-key codec
    if name.startswith("b"):
        raw = name[1:].upper()
        cid = base64.b32decode(raw + "=" * (-len(raw) % 8))
        return cid[2:]
    return base58.b58decode(name)


def same_peer(name: str, peer_id: str) -> bool:
    if name.removeprefix("/ipns/") == peer_id:
        return True
    try:
        return peer_key(name) == peer_key(peer_id)
    except ValueError:
        return False


def record_topic(peer_id: str) -> bytes:
    """The pubsub topic a node publishes its name record on."""
    return RECORD_TOPIC_PREFIX + peer_key(peer_id)


# ── Subscriptions ────────────────────────────────────────────────────────

class Subscription:
    """
    Handle for one pubsub subscription.

    Delivered messages go to a single-consumer memory channel
    (`messages`); `received` counts every delivery so a wait condition
    can observe arrival without consuming anything.
    """

    def __init__(self, topic: Topic, buffer: int = SUBSCRIPTION_BUFFER):
        self.topic = topic
        self.received = 0
        self.cancel_scope = trio.CancelScope()
        self._send_channel, self.messages = trio.open_memory_channel(buffer)

    def deliver(self, message: PubsubMessage) -> None:
        if self.cancelled:
            return
        self.received += 1
        try:
            self._send_channel.send_nowait(message)
        except trio.WouldBlock:
            logger.warning(f"Subscription buffer full on {self.topic!r}, dropping message")
        except trio.ClosedResourceError:
            pass

    @property
    def cancelled(self) -> bool:
        return self.cancel_scope.cancel_called

    def cancel(self) -> None:
        self.cancel_scope.cancel()
        self._send_channel.close()


# ── Handle ───────────────────────────────────────────────────────────────

class NodeHandle(ABC):
    """One running node.  Must be stopped exactly once."""

    def __init__(self, kind: NodeKind, label: str = ""):
        self.kind = kind
        self.label = label or kind.value
        self.state = NodeState.SPAWNING
        self._identity: NodeIdentity | None = None

    def __repr__(self) -> str:
        ident = self._identity.id[:12] if self._identity else "?"
        return f"<{type(self).__name__} {self.label} {ident} {self.state.value}>"

    @property
    def identity(self) -> NodeIdentity | None:
        return self._identity

    def mark_running(self) -> None:
        self.state = NodeState.RUNNING

    def _check_open(self) -> None:
        if self.state is NodeState.STOPPED:
            raise NodeStateError(f"{self.label} is stopped")

    async def id(self) -> NodeIdentity:
        """Identity of the node; fetched once, then cached."""
        self._check_open()
        if self._identity is None:
            self._identity = await self._fetch_identity()
        return self._identity

    async def stop(self) -> None:
        if self.state is NodeState.STOPPED:
            logger.warning(f"{self.label} already stopped")
            return
        self.state = NodeState.STOPPED
        await self._shutdown()
        logger.info(f"Stopped {self.label}")

    # ── Implementation hooks ─────────────────────────────────────────────

    @abstractmethod
    async def _fetch_identity(self) -> NodeIdentity: ...

    @abstractmethod
    async def _shutdown(self) -> None: ...

    # ── Operations ───────────────────────────────────────────────────────

    @abstractmethod
    async def connect(self, address: str) -> None: ...

    @abstractmethod
    async def list_peers(self, topic: Topic | None = None) -> list[str]: ...

    @abstractmethod
    async def add_content(self, data: bytes) -> ContentDescriptor: ...

    @abstractmethod
    async def fetch_content(self, content_hash: str) -> bytes: ...

    @abstractmethod
    async def add_directory(self, path: str, recursive: bool = True) -> list[ContentDescriptor]: ...

    @abstractmethod
    async def fetch_object_graph(self, content_hash: str) -> ObjectGraph: ...

    @abstractmethod
    async def publish_record(self, path: str, resolve: bool = False) -> RecordReceipt: ...

    @abstractmethod
    async def resolve_record(self, name: str) -> RecordValue: ...

    @abstractmethod
    async def subscribe(self, topic: Topic) -> Subscription: ...

    @abstractmethod
    async def name_pubsub_state(self) -> bool: ...

    @abstractmethod
    async def name_pubsub_subs(self) -> list[str]: ...
