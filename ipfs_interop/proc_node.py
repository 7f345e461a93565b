"""
proc_node.py – In-process NodeHandle built on py-libp2p.

A real libp2p host (gossipsub pubsub, mplex muxer) running as a task in the
test process.  Content and name records are kept in memory:

  • blocks are keyed by a base58 sha2-256 multihash of their bytes and are
    pulled from connected peers over /interop/blocks/1.0.0 when missing
  • directories are stored as JSON link manifests
  • name records travel as JSON over the publisher's record topic and are
    cached by every subscriber
"""

import hashlib
import json
import struct
from pathlib import Path
from typing import Iterator

import base58
import trio
from multiaddr import Multiaddr

from libp2p import new_host
from libp2p.peer.id import ID
from libp2p.peer.peerinfo import info_from_p2p_addr
from libp2p.pubsub.gossipsub import GossipSub
from libp2p.pubsub.pubsub import Pubsub
from libp2p.stream_muxer.mplex.mplex import MPLEX_PROTOCOL_ID, Mplex
from libp2p.tools.async_service.trio_service import background_trio_service
from libp2p.utils.address_validation import find_free_port

from .config import (
    BLOCK_PROTOCOL_ID,
    FETCH_TIMEOUT,
    GOSSIPSUB_DEGREE,
    GOSSIPSUB_DEGREE_HIGH,
    GOSSIPSUB_DEGREE_LOW,
    GOSSIPSUB_GOSSIP_HISTORY,
    GOSSIPSUB_GOSSIP_WINDOW,
    GOSSIPSUB_HEARTBEAT_INITIAL_DELAY,
    GOSSIPSUB_HEARTBEAT_INTERVAL,
    GOSSIPSUB_PROTOCOL_ID,
    GOSSIPSUB_TIME_TO_LIVE,
    PROC_LISTEN_IP,
    RECORD_TOPIC_PREFIX,
    STREAM_WRITE_LIMIT,
)
from .errors import ConnectError, NodeAPIError, NotFoundError
from .logs import setup_logging
from .node import (
    ContentDescriptor,
    NodeHandle,
    NodeIdentity,
    NodeKind,
    ObjectGraph,
    ObjectLink,
    PubsubMessage,
    RecordReceipt,
    RecordValue,
    Subscription,
    Topic,
    peer_key,
    record_topic,
)

logger = setup_logging("proc-node")

LENGTH_PREFIX = struct.Struct(">Q")
MANIFEST_TYPE = "interop/directory"


def block_hash(data: bytes) -> str:
    """base58 sha2-256 multihash, i.e. a CIDv0-shaped identifier."""
    return base58.b58encode(b"\x12\x20" + hashlib.sha256(data).digest()).decode()


def topic_key(topic: Topic) -> str:
    """py-libp2p topics are str; binary topics map byte-for-byte via latin-1."""
    return topic.decode("latin-1") if isinstance(topic, bytes) else topic


def block_frames(data: bytes, limit: int = STREAM_WRITE_LIMIT) -> Iterator[bytes]:
    """The length prefix, then *data* in writes of at most *limit* bytes."""
    yield LENGTH_PREFIX.pack(len(data))
    for start in range(0, len(data), limit):
        yield data[start:start + limit]


def encode_manifest(links: list[ObjectLink]) -> bytes:
    body = {
        "type": MANIFEST_TYPE,
        "links": [{"name": l.name, "hash": l.hash, "size": l.size} for l in links],
    }
    return json.dumps(body, sort_keys=True).encode()


def decode_manifest(data: bytes) -> list[ObjectLink] | None:
    try:
        body = json.loads(data)
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(body, dict) or body.get("type") != MANIFEST_TYPE:
        return None
    return [ObjectLink(name=l["name"], hash=l["hash"], size=l["size"]) for l in body["links"]]


class ProcNode(NodeHandle):
    def __init__(self, label: str = "", port: int | None = None):
        super().__init__(NodeKind.PROC, label)
        self.port = port or find_free_port()
        self.host = new_host(muxer_opt={MPLEX_PROTOCOL_ID: Mplex})
        self.gossipsub = GossipSub(
            protocols=[GOSSIPSUB_PROTOCOL_ID],
            degree=GOSSIPSUB_DEGREE,
            degree_low=GOSSIPSUB_DEGREE_LOW,
            degree_high=GOSSIPSUB_DEGREE_HIGH,
            time_to_live=GOSSIPSUB_TIME_TO_LIVE,
            gossip_window=GOSSIPSUB_GOSSIP_WINDOW,
            gossip_history=GOSSIPSUB_GOSSIP_HISTORY,
            heartbeat_initial_delay=GOSSIPSUB_HEARTBEAT_INITIAL_DELAY,
            heartbeat_interval=GOSSIPSUB_HEARTBEAT_INTERVAL,
        )
        self.pubsub = Pubsub(self.host, self.gossipsub)

        self.blocks: dict[str, bytes] = {}
        self.records: dict[str, dict] = {}
        self.record_seq = 0

        self._topics: dict[str, list[Subscription]] = {}
        self._nursery: trio.Nursery | None = None
        self._stop_requested = trio.Event()
        self._finished = trio.Event()

    @property
    def peer_id(self) -> str:
        return str(self.host.get_id())

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def run(self, task_status=trio.TASK_STATUS_IGNORED) -> None:
        """Run the host until stop(); reports readiness through *task_status*."""
        listen_addr = Multiaddr(f"/ip4/{PROC_LISTEN_IP}/tcp/{self.port}")
        try:
            async with (
                self.host.run(listen_addrs=[listen_addr]),
                trio.open_nursery() as nursery,
            ):
                self.host.set_stream_handler(BLOCK_PROTOCOL_ID, self._handle_block_stream)

                async with background_trio_service(self.pubsub):
                    async with background_trio_service(self.gossipsub):
                        await self.pubsub.wait_until_ready()
                        self._nursery = nursery
                        logger.info(f"{self.label} listening on {listen_addr} as {self.peer_id}")
                        task_status.started()

                        await self._stop_requested.wait()
                        nursery.cancel_scope.cancel()
        finally:
            self._finished.set()

    async def _fetch_identity(self) -> NodeIdentity:
        addrs = []
        for addr in self.host.get_addrs():
            text = str(addr)
            if "/p2p/" not in text:
                text = f"{text}/p2p/{self.peer_id}"
            addrs.append(text)
        return NodeIdentity(id=self.peer_id, addresses=tuple(addrs), agent_version="py-libp2p")

    async def _shutdown(self) -> None:
        for subs in self._topics.values():
            for sub in subs:
                sub.cancel()
        self._stop_requested.set()
        await self._finished.wait()

    # ── Swarm ────────────────────────────────────────────────────────────

    async def connect(self, address: str) -> None:
        self._check_open()
        try:
            info = info_from_p2p_addr(Multiaddr(address))
            await self.host.connect(info)
        except Exception as e:
            raise ConnectError(f"{self.label}: could not dial {address}: {e}") from e
        logger.debug(f"{self.label} connected to {info.peer_id}")

    async def list_peers(self, topic: Topic | None = None) -> list[str]:
        self._check_open()
        if topic is None:
            return [str(p) for p in self.host.get_network().connections.keys()]
        return [str(p) for p in self.pubsub.peer_topics.get(topic_key(topic), ())]

    # ── Content ──────────────────────────────────────────────────────────

    def _put(self, data: bytes) -> str:
        key = block_hash(data)
        self.blocks[key] = data
        return key

    async def add_content(self, data: bytes) -> ContentDescriptor:
        self._check_open()
        return ContentDescriptor(hash=self._put(data), name=block_hash(data), size=len(data))

    async def fetch_content(self, content_hash: str) -> bytes:
        self._check_open()
        data = await self._get_block(content_hash)
        links = decode_manifest(data)
        if links is not None:
            raise NodeAPIError(f"{content_hash} is a directory")
        return data

    async def add_directory(self, path: str, recursive: bool = True) -> list[ContentDescriptor]:
        self._check_open()
        out: list[ContentDescriptor] = []
        await self._add_tree(Path(path), Path(path).name, recursive, out)
        return out

    async def _add_tree(self, directory: Path, name: str, recursive: bool,
                        out: list[ContentDescriptor]) -> ObjectLink:
        links = []
        for entry in sorted(directory.iterdir()):
            entry_name = f"{name}/{entry.name}"
            if entry.is_dir():
                if recursive:
                    links.append(await self._add_tree(entry, entry_name, recursive, out))
                continue
            data = await trio.to_thread.run_sync(entry.read_bytes)
            key = self._put(data)
            out.append(ContentDescriptor(hash=key, name=entry_name, size=len(data)))
            links.append(ObjectLink(name=entry.name, hash=key, size=len(data)))

        manifest = encode_manifest(links)
        key = self._put(manifest)
        size = len(manifest) + sum(l.size for l in links)
        out.append(ContentDescriptor(hash=key, name=name, size=size))
        return ObjectLink(name=directory.name, hash=key, size=size)

    async def fetch_object_graph(self, content_hash: str) -> ObjectGraph:
        self._check_open()
        data = await self._get_block(content_hash)
        links = decode_manifest(data)
        if links is None:
            return ObjectGraph(hash=content_hash, data_size=len(data))
        return ObjectGraph(hash=content_hash, links=tuple(links))

    async def _get_block(self, content_hash: str) -> bytes:
        if content_hash in self.blocks:
            return self.blocks[content_hash]

        with trio.move_on_after(FETCH_TIMEOUT):
            for peer in list(self.host.get_network().connections.keys()):
                data = await self._request_block(peer, content_hash)
                if data is not None:
                    self.blocks[content_hash] = data
                    return data
        raise NotFoundError(f"{self.label}: block {content_hash} not found")

    async def _request_block(self, peer: ID, content_hash: str) -> bytes | None:
        try:
            stream = await self.host.new_stream(peer, [BLOCK_PROTOCOL_ID])
            await stream.write(content_hash.encode())
            buf = b""
            while len(buf) < LENGTH_PREFIX.size:
                chunk = await stream.read(LENGTH_PREFIX.size - len(buf))
                if not chunk:
                    break
                buf += chunk
            if len(buf) < LENGTH_PREFIX.size:
                await stream.close()
                return None

            (length,) = LENGTH_PREFIX.unpack(buf)
            chunks, received = [], 0
            while received < length:
                chunk = await stream.read(min(length - received, 65536))
                if not chunk:
                    break
                chunks.append(chunk)
                received += len(chunk)
            await stream.close()
        except Exception as e:
            logger.debug(f"{self.label}: block request to {peer} failed: {e}")
            return None

        data = b"".join(chunks)
        if block_hash(data) != content_hash:
            logger.warning(f"{self.label}: peer {peer} sent a corrupt block for {content_hash}")
            return None
        return data

    async def _handle_block_stream(self, stream) -> None:
        try:
            request = await stream.read(256)
            data = self.blocks.get(request.decode().strip())
            if data is not None:
                for frame in block_frames(data):
                    await stream.write(frame)
        except Exception as e:
            logger.error(f"{self.label}: block stream error: {e}")
        finally:
            await stream.close()

    # ── Records ──────────────────────────────────────────────────────────

    async def publish_record(self, path: str, resolve: bool = False) -> RecordReceipt:
        self._check_open()
        if resolve:
            await self._get_block(path.removeprefix("/ipfs/"))

        self.record_seq += 1
        record = {"name": self.peer_id, "value": path, "seq": self.record_seq}
        self.records[self.peer_id] = record

        topic = topic_key(record_topic(self.peer_id))
        if self.pubsub.peer_topics.get(topic):
            await self.pubsub.publish(topic, json.dumps(record).encode())
        else:
            logger.debug(f"{self.label}: no subscribers for its record yet")
        return RecordReceipt(name=self.peer_id, value=path)

    async def resolve_record(self, name: str) -> RecordValue:
        self._check_open()
        name = name.removeprefix("/ipns/")
        try:
            wanted = peer_key(name)
        except ValueError as e:
            raise NodeAPIError(f"{self.label}: invalid name {name}: {e}") from e
        for record in self.records.values():
            if peer_key(record["name"]) == wanted:
                return RecordValue(path=record["value"])

        # Follow the name from now on, as name-over-pubsub daemons do.
        await self._ensure_topic(topic_key(record_topic(name)))
        raise NotFoundError(f"{self.label}: could not resolve name {name}")

    async def name_pubsub_state(self) -> bool:
        self._check_open()
        return True

    async def name_pubsub_subs(self) -> list[str]:
        self._check_open()
        prefix = topic_key(RECORD_TOPIC_PREFIX)
        return [
            "/ipns/" + base58.b58encode(topic[len(prefix):].encode("latin-1")).decode()
            for topic in self._topics
            if topic.startswith(prefix)
        ]

    def _cache_record(self, data: bytes) -> None:
        try:
            record = json.loads(data)
            name, seq = record["name"], int(record["seq"])
        except (ValueError, KeyError, TypeError):
            logger.debug(f"{self.label}: ignoring malformed record")
            return
        current = self.records.get(name)
        if current is None or seq > current["seq"]:
            self.records[name] = record
            logger.debug(f"{self.label}: cached record {name} -> {record['value']}")

    # ── Pubsub ───────────────────────────────────────────────────────────

    async def subscribe(self, topic: Topic) -> Subscription:
        self._check_open()
        sub = Subscription(topic)
        await self._ensure_topic(topic_key(topic))
        self._topics[topic_key(topic)].append(sub)
        return sub

    async def _ensure_topic(self, topic: str) -> None:
        if topic in self._topics:
            return
        self._topics[topic] = []
        subscription = await self.pubsub.subscribe(topic)
        self._nursery.start_soon(self._receive_loop, topic, subscription)

    async def _receive_loop(self, topic: str, subscription) -> None:
        is_record_topic = topic.startswith(topic_key(RECORD_TOPIC_PREFIX))
        while True:
            msg = await subscription.get()
            if msg is None:
                break

            sender = msg.from_id
            sender_str = str(ID(sender)) if isinstance(sender, bytes) else str(sender)
            if sender_str == self.peer_id:
                continue

            if is_record_topic:
                self._cache_record(msg.data)

            message = PubsubMessage(topic=topic, data=msg.data, sender=sender_str,
                                    seqno=msg.seqno.hex() if msg.seqno else "")
            for sub in self._topics.get(topic, ()):
                if not sub.cancelled:
                    sub.deliver(message)
