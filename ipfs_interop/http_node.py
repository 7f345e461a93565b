"""
http_node.py – NodeHandle for a daemon reached over its HTTP RPC API.

Both daemon implementations (go and js) speak the same `/api/v0` API, so a
single class serves them; the factory passes in the per-implementation
quirks (topic encoding) when it builds the handle.

Every request is a blocking `requests` call pushed onto a worker thread
with trio.to_thread so the trio scheduler keeps running.
"""

import base64
import json
import os
import shutil
from functools import partial
from pathlib import Path
from urllib.parse import quote

import requests
import trio

from .config import API_TIMEOUT, STOP_TIMEOUT
from .errors import NodeAPIError, NodeNotReadyError, NotFoundError
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
)

logger = setup_logging("http-node")

NOT_FOUND_MARKERS = (
    "not found",
    "could not resolve",
    "no link named",
    "routing: not found",
    "record not found",
)


# ── Multibase (base64url, prefix "u") ───────────────────────────────────

def multibase_encode(value: Topic) -> str:
    raw = value.encode() if isinstance(value, str) else value
    return "u" + base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def multibase_decode(value: str) -> bytes:
    if value.startswith("u"):
        body = value[1:]
        return base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
    return base64.b64decode(value)


def api_error(command: str, status: int, body: str) -> NodeAPIError:
    """Translate an API error response into the harness taxonomy."""
    message, code = body.strip(), None
    try:
        payload = json.loads(body)
        message = payload.get("Message", message)
        code = payload.get("Code")
    except (ValueError, AttributeError):
        pass

    text = f"{command}: {message}"
    if any(marker in message.lower() for marker in NOT_FOUND_MARKERS):
        return NotFoundError(text, code=code, status=status)
    return NodeAPIError(text, code=code, status=status)


class HttpNode(NodeHandle):
    def __init__(
        self,
        api_url: str,
        kind: NodeKind,
        nursery: trio.Nursery,
        process: trio.Process | None = None,
        repo_path: str | None = None,
        disposable: bool = False,
        multibase_topics: bool = True,
        label: str = "",
    ):
        super().__init__(kind, label)
        self.api_url = api_url.rstrip("/")
        self.process = process
        self.repo_path = repo_path
        self.disposable = disposable
        self.multibase_topics = multibase_topics
        self.session = requests.Session()
        self._nursery = nursery
        self._subscriptions: list[Subscription] = []

    # ── Transport ────────────────────────────────────────────────────────

    def _request(self, command: str, params=None, files=None, stream: bool = False,
                 timeout: float | None = API_TIMEOUT) -> requests.Response:
        url = f"{self.api_url}/api/v0/{command}"
        try:
            resp = self.session.post(url, params=params, files=files,
                                     stream=stream, timeout=timeout)
        except requests.ConnectionError as e:
            raise NodeNotReadyError(f"{self.label}: {command}: {e}") from e

        if resp.status_code >= 400:
            body = resp.text
            resp.close()
            raise api_error(command, resp.status_code, body)
        return resp

    async def _call(self, command: str, **kwargs) -> requests.Response:
        self._check_open()
        return await trio.to_thread.run_sync(partial(self._request, command, **kwargs))

    async def _json(self, command: str, **kwargs) -> dict:
        resp = await self._call(command, **kwargs)
        return resp.json()

    async def _json_lines(self, command: str, **kwargs) -> list[dict]:
        resp = await self._call(command, **kwargs)
        return [json.loads(line) for line in resp.text.splitlines() if line.strip()]

    def _topic_arg(self, topic: Topic) -> str:
        if self.multibase_topics:
            return multibase_encode(topic)
        return topic.decode("latin-1") if isinstance(topic, bytes) else topic

    # ── Identity / lifecycle ─────────────────────────────────────────────

    async def _fetch_identity(self) -> NodeIdentity:
        data = await self._json("id")
        return NodeIdentity(
            id=data["ID"],
            addresses=tuple(data.get("Addresses") or ()),
            agent_version=data.get("AgentVersion", ""),
        )

    async def _shutdown(self) -> None:
        for sub in self._subscriptions:
            sub.cancel()

        try:
            await trio.to_thread.run_sync(partial(self._request, "shutdown", timeout=STOP_TIMEOUT))
        except (NodeAPIError, NodeNotReadyError, requests.RequestException) as e:
            logger.warning(f"{self.label}: shutdown request failed: {e}")

        if self.process is not None:
            with trio.move_on_after(STOP_TIMEOUT) as scope:
                await self.process.wait()
            if scope.cancelled_caught:
                logger.warning(f"{self.label}: daemon ignored shutdown, killing it")
                self.process.kill()
                await self.process.wait()

        self.session.close()
        if self.disposable and self.repo_path:
            shutil.rmtree(self.repo_path, ignore_errors=True)

    # ── Swarm ────────────────────────────────────────────────────────────

    async def connect(self, address: str) -> None:
        await self._json("swarm/connect", params={"arg": address})
        logger.debug(f"{self.label} dialled {address}")

    async def list_peers(self, topic: Topic | None = None) -> list[str]:
        if topic is None:
            data = await self._json("swarm/peers")
            return [p["Peer"] for p in data.get("Peers") or []]
        data = await self._json("pubsub/peers", params={"arg": self._topic_arg(topic)})
        return list(data.get("Strings") or [])

    # ── Content ──────────────────────────────────────────────────────────

    async def add_content(self, data: bytes) -> ContentDescriptor:
        entries = await self._json_lines("add", files={"file": ("data", data)})
        last = entries[-1]
        return ContentDescriptor(hash=last["Hash"], name=last.get("Name", ""),
                                 size=int(last.get("Size", 0)))

    async def fetch_content(self, content_hash: str) -> bytes:
        resp = await self._call("cat", params={"arg": content_hash})
        return resp.content

    async def add_directory(self, path: str, recursive: bool = True) -> list[ContentDescriptor]:
        root = Path(path)
        parts = await trio.to_thread.run_sync(directory_parts, root, recursive)
        entries = await self._json_lines("add", files=parts)

        descriptors = [
            ContentDescriptor(hash=e["Hash"], name=e.get("Name", ""), size=int(e.get("Size", 0)))
            for e in entries
            if "Hash" in e
        ]
        # The root directory entry always comes last.
        descriptors.sort(key=lambda d: d.name == root.name)
        return descriptors

    async def fetch_object_graph(self, content_hash: str) -> ObjectGraph:
        data = await self._json("dag/get", params={"arg": content_hash})
        links = tuple(
            ObjectLink(
                name=link.get("Name", ""),
                hash=link["Hash"]["/"] if isinstance(link.get("Hash"), dict) else link.get("Hash", ""),
                size=int(link.get("Tsize", 0)),
            )
            for link in data.get("Links") or []
        )
        raw = data.get("Data")
        data_size = len(json.dumps(raw)) if raw else 0
        return ObjectGraph(hash=content_hash, links=links, data_size=data_size)

    # ── Records ──────────────────────────────────────────────────────────

    async def publish_record(self, path: str, resolve: bool = False) -> RecordReceipt:
        data = await self._json(
            "name/publish",
            params={"arg": path, "resolve": str(resolve).lower()},
        )
        return RecordReceipt(name=data["Name"], value=data["Value"])

    async def resolve_record(self, name: str) -> RecordValue:
        data = await self._json("name/resolve", params={"arg": name})
        return RecordValue(path=data["Path"])

    async def name_pubsub_state(self) -> bool:
        data = await self._json("name/pubsub/state")
        return bool(data.get("Enabled"))

    async def name_pubsub_subs(self) -> list[str]:
        data = await self._json("name/pubsub/subs")
        return list(data.get("Strings") or [])

    # ── Pubsub ───────────────────────────────────────────────────────────

    async def subscribe(self, topic: Topic) -> Subscription:
        self._check_open()
        sub = Subscription(topic)
        self._subscriptions.append(sub)
        self._nursery.start_soon(self._pump, sub)
        return sub

    async def _pump(self, sub: Subscription) -> None:
        params = {"arg": self._topic_arg(sub.topic)}
        with sub.cancel_scope:
            try:
                resp = await trio.to_thread.run_sync(
                    partial(self._request, "pubsub/sub", params=params, stream=True, timeout=None),
                    abandon_on_cancel=True,
                )
            except (NodeAPIError, NodeNotReadyError) as e:
                logger.error(f"{self.label}: subscribe to {sub.topic!r} failed: {e}")
                return

            try:
                await trio.to_thread.run_sync(self._read_messages, resp, sub,
                                              abandon_on_cancel=True)
            finally:
                resp.close()
        logger.debug(f"{self.label}: subscription to {sub.topic!r} closed")

    def _read_messages(self, resp: requests.Response, sub: Subscription) -> None:
        """Worker-thread loop: one JSON message per line of the response."""
        try:
            for line in resp.iter_lines():
                if not line:
                    continue
                try:
                    message = self.decode_message(sub.topic, json.loads(line))
                except (ValueError, AttributeError) as e:
                    logger.warning(f"{self.label}: skipping malformed message on {sub.topic!r}: {e}")
                    continue
                trio.from_thread.run_sync(sub.deliver, message)
        except (requests.RequestException, trio.RunFinishedError):
            return

    def decode_message(self, topic: Topic, raw: dict) -> PubsubMessage:
        data = raw.get("data", "")
        payload = multibase_decode(data) if data else b""
        return PubsubMessage(
            topic=topic,
            data=payload,
            sender=raw.get("from", ""),
            seqno=raw.get("seqno", ""),
        )


def directory_parts(root: Path, recursive: bool = True) -> list[tuple]:
    """Multipart body for `add` describing the tree under *root*."""
    parts = [("file", (quote(root.name), b"", "application/x-directory"))]
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        current = Path(dirpath)
        rel = current.relative_to(root.parent)
        for name in sorted(filenames):
            data = (current / name).read_bytes()
            parts.append(("file", (quote(str(rel / name)), data, "application/octet-stream")))
        if not recursive:
            break
        for name in dirnames:
            parts.append(("file", (quote(str(rel / name)), b"", "application/x-directory")))
    return parts
