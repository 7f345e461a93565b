"""
Tests for the HTTP RPC node handle.

No daemon is needed: the blocking request function is replaced with one
that records the call and answers from a table of canned responses.
"""

import json

import pytest
import requests
import trio

from ipfs_interop.errors import NodeAPIError, NodeNotReadyError, NodeStateError, NotFoundError
from ipfs_interop.http_node import (
    HttpNode,
    api_error,
    directory_parts,
    multibase_decode,
    multibase_encode,
)
from ipfs_interop.node import NodeKind, NodeState


class FakeResponse:
    def __init__(self, payload=None, text=None, content=b"", lines=(), status_code=200):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)
        self.content = content
        self._lines = lines
        self.closed = False

    def json(self):
        return self._payload

    def iter_lines(self):
        return iter(self._lines)

    def close(self):
        self.closed = True


class CannedNode(HttpNode):
    """HttpNode whose transport answers from `responses` and records `calls`."""

    def __init__(self, responses: dict, **kwargs):
        super().__init__("http://127.0.0.1:5001/", NodeKind.GO, nursery=None, label="go-test", **kwargs)
        self.responses = responses
        self.calls = []
        self.mark_running()

    def _request(self, command, params=None, files=None, stream=False, timeout=None):
        self.calls.append((command, params, files))
        response = self.responses[command]
        if isinstance(response, Exception):
            raise response
        return response


# ═══════════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestHelpers:

    def test_multibase_encoding(self):
        assert multibase_encode("hello") == "uaGVsbG8"
        assert multibase_encode(b"hello") == "uaGVsbG8"
        assert multibase_decode("uaGVsbG8") == b"hello"

    def test_multibase_topic_is_url_safe(self):
        encoded = multibase_encode(b"/ipns/\xff\xfe")
        assert "=" not in encoded
        assert "+" not in encoded and "/" not in encoded[1:]

    def test_api_error_not_found(self):
        body = json.dumps({"Message": "could not resolve name", "Code": 0, "Type": "error"})
        error = api_error("name/resolve", 500, body)
        assert isinstance(error, NotFoundError)
        assert error.code == 0
        assert error.status == 500
        assert "name/resolve" in str(error)

    def test_api_error_generic(self):
        error = api_error("swarm/connect", 500, json.dumps({"Message": "dial backoff", "Code": 0}))
        assert type(error) is NodeAPIError

    def test_api_error_plain_text_body(self):
        error = api_error("cat", 404, "404 page not found\n")
        assert isinstance(error, NotFoundError)
        assert error.code is None
        assert error.message == "cat: 404 page not found"

    def test_directory_parts(self, tmp_path):
        root = tmp_path / "tree"
        (root / "sub").mkdir(parents=True)
        (root / "a.txt").write_bytes(b"a")
        (root / "sub" / "b.txt").write_bytes(b"bb")

        parts = directory_parts(root)
        names = [p[1][0] for p in parts]
        types = {p[1][0]: p[1][2] for p in parts}

        assert names == ["tree", "tree/a.txt", "tree/sub", "tree/sub/b.txt"]
        assert types["tree"] == "application/x-directory"
        assert types["tree/sub"] == "application/x-directory"
        assert types["tree/sub/b.txt"] == "application/octet-stream"
        assert all(p[0] == "file" for p in parts)

    def test_directory_parts_not_recursive(self, tmp_path):
        root = tmp_path / "tree"
        (root / "sub").mkdir(parents=True)
        (root / "a.txt").write_bytes(b"a")
        (root / "sub" / "b.txt").write_bytes(b"bb")

        names = [p[1][0] for p in directory_parts(root, recursive=False)]
        assert names == ["tree", "tree/a.txt"]


# ═══════════════════════════════════════════════════════════════════════════
#  Operations
# ═══════════════════════════════════════════════════════════════════════════

class TestHttpNode:

    def test_id(self):
        node = CannedNode({"id": FakeResponse({
            "ID": "12D3KooWExample",
            "Addresses": ["/ip4/127.0.0.1/tcp/4001/p2p/12D3KooWExample"],
            "AgentVersion": "kubo/0.30.0",
        })})
        ident = trio.run(node.id)

        assert ident.id == "12D3KooWExample"
        assert ident.addresses == ("/ip4/127.0.0.1/tcp/4001/p2p/12D3KooWExample",)
        assert ident.agent_version == "kubo/0.30.0"
        trio.run(node.id)
        assert len(node.calls) == 1

    def test_swarm_peers(self):
        node = CannedNode({"swarm/peers": FakeResponse({"Peers": [{"Peer": "QmA"}, {"Peer": "QmB"}]})})
        assert trio.run(node.list_peers) == ["QmA", "QmB"]

    def test_swarm_peers_empty(self):
        node = CannedNode({"swarm/peers": FakeResponse({"Peers": None})})
        assert trio.run(node.list_peers) == []

    def test_pubsub_peers_encodes_topic(self):
        node = CannedNode({"pubsub/peers": FakeResponse({"Strings": ["QmB"]})})
        assert trio.run(node.list_peers, "hello") == ["QmB"]
        assert node.calls[0][1] == {"arg": "uaGVsbG8"}

    def test_raw_topics_when_not_multibase(self):
        node = CannedNode({"pubsub/peers": FakeResponse({"Strings": []})}, multibase_topics=False)
        trio.run(node.list_peers, b"/ipns/x")
        assert node.calls[0][1] == {"arg": "/ipns/x"}

    def test_add_content_takes_last_entry(self):
        lines = "\n".join([
            json.dumps({"Name": "data", "Bytes": 1024}),
            json.dumps({"Name": "QmHash", "Hash": "QmHash", "Size": "1035"}),
        ])
        node = CannedNode({"add": FakeResponse(text=lines)})
        desc = trio.run(node.add_content, b"x" * 1024)

        assert desc.hash == "QmHash"
        assert desc.size == 1035
        command, _, files = node.calls[0]
        assert command == "add"
        assert files == {"file": ("data", b"x" * 1024)}

    def test_add_directory_root_last(self, tmp_path):
        root = tmp_path / "tree"
        root.mkdir()
        (root / "a.txt").write_bytes(b"a")
        lines = "\n".join([
            json.dumps({"Name": "tree", "Hash": "QmRoot", "Size": "60"}),
            json.dumps({"Name": "tree/a.txt", "Hash": "QmA", "Size": "9"}),
        ])
        node = CannedNode({"add": FakeResponse(text=lines)})
        descs = trio.run(node.add_directory, str(root))

        assert [d.hash for d in descs] == ["QmA", "QmRoot"]

    def test_fetch_content(self):
        node = CannedNode({"cat": FakeResponse(content=b"payload")})
        assert trio.run(node.fetch_content, "QmHash") == b"payload"
        assert node.calls[0][1] == {"arg": "QmHash"}

    def test_fetch_object_graph(self):
        node = CannedNode({"dag/get": FakeResponse({
            "Data": {"/": {"bytes": "CAE"}},
            "Links": [
                {"Name": "a.txt", "Hash": {"/": "QmA"}, "Tsize": 9},
                {"Name": "sub", "Hash": {"/": "QmSub"}, "Tsize": 120},
            ],
        })})
        graph = trio.run(node.fetch_object_graph, "QmRoot")

        assert [l.name for l in graph.links] == ["a.txt", "sub"]
        assert graph.links[1].hash == "QmSub"
        assert graph.links[1].size == 120
        assert not graph.is_empty

    def test_publish_does_not_resolve_by_default(self):
        node = CannedNode({"name/publish": FakeResponse({"Name": "k51qzi5", "Value": "/ipfs/QmX"})})
        receipt = trio.run(node.publish_record, "/ipfs/QmX")

        assert receipt.name == "k51qzi5"
        assert receipt.value == "/ipfs/QmX"
        assert node.calls[0][1] == {"arg": "/ipfs/QmX", "resolve": "false"}

    def test_resolve_not_found(self):
        node = CannedNode({"name/resolve": NotFoundError("name/resolve: could not resolve name")})
        with pytest.raises(NotFoundError):
            trio.run(node.resolve_record, "QmPeer")

    def test_resolve(self):
        node = CannedNode({"name/resolve": FakeResponse({"Path": "/ipfs/QmX"})})
        assert trio.run(node.resolve_record, "QmPeer").path == "/ipfs/QmX"

    def test_name_pubsub_endpoints(self):
        node = CannedNode({
            "name/pubsub/state": FakeResponse({"Enabled": True}),
            "name/pubsub/subs": FakeResponse({"Strings": ["/ipns/QmPeer"]}),
        })
        assert trio.run(node.name_pubsub_state) is True
        assert trio.run(node.name_pubsub_subs) == ["/ipns/QmPeer"]

    def test_decode_message(self):
        node = CannedNode({})
        message = node.decode_message(b"/ipns/x", {
            "from": "QmSender",
            "data": multibase_encode(b"record"),
            "seqno": "uAAE",
        })
        assert message.data == b"record"
        assert message.sender == "QmSender"
        assert message.topic == b"/ipns/x"

    def test_stopped_node_refuses_operations(self):
        node = CannedNode({"swarm/peers": FakeResponse({"Peers": []})})
        node.state = NodeState.STOPPED
        with pytest.raises(NodeStateError):
            trio.run(node.list_peers)
        assert node.calls == []


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    def close(self):
        pass


class TestTransport:

    def make_node(self, session):
        node = HttpNode("http://127.0.0.1:5001", NodeKind.JS, nursery=None, label="js-test")
        node.session = session
        return node

    def test_request_url(self):
        session = FakeSession(FakeResponse({"ID": "Qm"}))
        self.make_node(session)._request("id")
        assert session.posts[0][0] == "http://127.0.0.1:5001/api/v0/id"

    def test_error_status_maps_to_taxonomy(self):
        body = json.dumps({"Message": "routing: not found", "Code": 0})
        response = FakeResponse(text=body, status_code=500)
        node = self.make_node(FakeSession(response))

        with pytest.raises(NotFoundError) as info:
            node._request("name/resolve")
        assert info.value.status == 500
        assert response.closed

    def test_connection_refused_is_not_ready(self):
        node = self.make_node(FakeSession(error=requests.ConnectionError("refused")))
        with pytest.raises(NodeNotReadyError):
            node._request("id")


class TestPubsubStream:

    def test_malformed_lines_are_skipped(self):
        good = json.dumps({"from": "QmSender", "data": multibase_encode(b"record"), "seqno": "uAAE"})
        stream = FakeResponse(lines=[b"not json", b'{"data": "ua"}', b"[1, 2]", good.encode()])
        node = CannedNode({"pubsub/sub": stream})

        async def main():
            async with trio.open_nursery() as nursery:
                node._nursery = nursery
                sub = await node.subscribe(b"/ipns/x")
                with trio.fail_after(5):
                    message = await sub.messages.receive()
            return sub, message

        sub, message = trio.run(main)
        assert message.data == b"record"
        assert message.sender == "QmSender"
        assert sub.received == 1
        assert stream.closed
