"""
scenarios.py – The cross-implementation test cases.

Every builder takes already-running node handles and returns a Scenario;
nothing here knows which implementation sits behind a handle.

  • connect_scenario     dial both ways, each side lists the other
  • content_exchange     add on one node, fetch the same bytes on another
  • content_addressing   the same bytes get the same hash everywhere
  • directory_exchange   add a tree, fetch its root object on another node
  • name_pubsub_state    name-over-pubsub is switched on
  • record_propagation   publish a name record, watch it reach a subscriber
"""

from pathlib import Path

from .config import (
    CONNECT_ATTEMPTS,
    CONNECT_INTERVAL,
    IPFS_REF,
    PROPAGATION_TIMEOUT,
    SUBSCRIBE_ATTEMPTS,
    SUBSCRIBE_INTERVAL,
)
from .errors import AssertionMismatch, NodeAPIError, NotFoundError
from .logs import setup_logging
from .node import NodeHandle, Topic, record_topic, same_peer
from .polling import retry
from .scenario import Scenario
from .topology import run_parallel

logger = setup_logging("scenarios")


# ── Subscription confirmation ────────────────────────────────────────────

async def wait_for_peer_to_subscribe(topic: Topic, peer_id: str, node: NodeHandle,
                                     attempts: int = SUBSCRIBE_ATTEMPTS,
                                     interval: float = SUBSCRIBE_INTERVAL) -> list[str]:
    """Poll *node*'s pubsub peer list for *topic* until *peer_id* shows up."""

    async def check():
        peers = await node.list_peers(topic)
        if peer_id not in peers:
            raise AssertionMismatch(f"{node.label} subscribers of {topic!r}", peer_id, peers)
        return peers

    return await retry(check, attempts=attempts, interval=interval,
                       retry_on=(AssertionMismatch, NodeAPIError),
                       label=f"{peer_id[:12]} subscribed on {node.label}")


async def wait_for_name_subscription(node: NodeHandle, name: str | None = None,
                                     attempts: int = SUBSCRIBE_ATTEMPTS,
                                     interval: float = SUBSCRIBE_INTERVAL) -> list[str]:
    """
    Poll the names *node* follows over pubsub until there is at least one,
    or until *name* is among them when given.
    """

    async def check():
        subs = await node.name_pubsub_subs()
        if not subs:
            raise AssertionMismatch(f"{node.label} name subscriptions", "at least one", subs)
        if name is not None and not any(same_peer(s, name) for s in subs):
            raise AssertionMismatch(f"{node.label} name subscriptions", name, subs)
        return subs

    return await retry(check, attempts=attempts, interval=interval,
                       retry_on=(AssertionMismatch, NodeAPIError),
                       label=f"name subscription on {node.label}")


# ── Swarm ────────────────────────────────────────────────────────────────

def connect_scenario(a: NodeHandle, b: NodeHandle, both_ways: bool = True) -> Scenario:
    scenario = Scenario(f"connect {a.label} <-> {b.label}")
    scenario.step("ids", lambda obs: run_parallel(a.id, b.id))
    scenario.step(f"{a.label} dials {b.label}",
                  lambda obs: a.connect(obs["ids"][1].dial_address()))
    if both_ways:
        scenario.step(f"{b.label} dials {a.label}",
                      lambda obs: b.connect(obs["ids"][0].dial_address()))

    async def listed(obs):
        id_a, id_b = obs["ids"]
        peers_a, peers_b = await run_parallel(a.list_peers, b.list_peers)
        if id_b.id not in peers_a:
            raise AssertionMismatch(f"{a.label} peers", id_b.id, peers_a)
        if id_a.id not in peers_b:
            raise AssertionMismatch(f"{b.label} peers", id_a.id, peers_b)
        return peers_a, peers_b

    return scenario.retry("each side lists the other", listed,
                          attempts=CONNECT_ATTEMPTS, interval=CONNECT_INTERVAL,
                          retry_on=AssertionMismatch)


# ── Content ──────────────────────────────────────────────────────────────

def content_exchange(sender: NodeHandle, receiver: NodeHandle, data: bytes) -> Scenario:
    return (
        Scenario(f"{sender.label} -> {receiver.label}: {len(data)} bytes")
        .step("add", lambda obs: sender.add_content(data))
        .step("fetch", lambda obs: receiver.fetch_content(obs["add"].hash))
        .expect("fetched bytes", data, lambda obs: obs["fetch"])
    )


def content_addressing(a: NodeHandle, b: NodeHandle, data: bytes) -> Scenario:
    return (
        Scenario(f"same hash on {a.label} and {b.label}: {len(data)} bytes")
        .step("add first", lambda obs: a.add_content(data))
        .step("add second", lambda obs: b.add_content(data))
        .expect("hash", lambda obs: obs["add first"].hash, lambda obs: obs["add second"].hash)
    )


def directory_exchange(sender: NodeHandle, receiver: NodeHandle,
                       root: str | Path, entry_count: int) -> Scenario:
    """Add the tree at *root* (holding *entry_count* entries, root included)."""
    return (
        Scenario(f"{sender.label} -> {receiver.label}: directory of {entry_count} entries")
        .step("add", lambda obs: sender.add_directory(str(root), recursive=True))
        .expect("entry count", entry_count, lambda obs: len(obs["add"]))
        .step("fetch root", lambda obs: receiver.fetch_object_graph(obs["add"][-1].hash))
        .expect("root has links", True, lambda obs: bool(obs["fetch root"].links))
    )


# ── Records ──────────────────────────────────────────────────────────────

def name_pubsub_state(node: NodeHandle) -> Scenario:
    return (
        Scenario(f"name-over-pubsub enabled on {node.label}")
        .step("state", lambda obs: node.name_pubsub_state())
        .expect("enabled", True, lambda obs: obs["state"])
    )


def record_propagation(publisher: NodeHandle, subscriber: NodeHandle,
                       value: str = IPFS_REF,
                       timeout: float = PROPAGATION_TIMEOUT) -> Scenario:
    """
    Publish a record on *publisher* and resolve it on *subscriber*.

    The subscriber has to be seen on the publisher's side of the record
    topic before anything is published, otherwise the one message can be
    lost to the race between subscribing and publishing.  Both nodes are
    expected to be connected already.
    """

    def topic(obs) -> bytes:
        return record_topic(obs["ids"][0].id)

    scenario = (
        Scenario(f"record {publisher.label} -> {subscriber.label}")
        .step("ids", lambda obs: run_parallel(publisher.id, subscriber.id))
        .step("resolve before publish",
              lambda obs: subscriber.resolve_record(obs["ids"][0].id),
              expect_error=NotFoundError)
        .step("subscriber joined record topic",
              lambda obs: wait_for_peer_to_subscribe(topic(obs), obs["ids"][1].id, publisher))
        .step("subscribe", lambda obs: subscriber.subscribe(topic(obs)))
        .step("publish", lambda obs: publisher.publish_record(value))
        .step("self resolve", lambda obs: publisher.resolve_record(obs["ids"][0].id))
        .expect("self resolved value", value, lambda obs: obs["self resolve"].path)
        .wait_until("record delivered", lambda obs: obs["subscribe"].received > 0,
                    timeout=timeout)
        .step("resolve", lambda obs: subscriber.resolve_record(obs["ids"][0].id))
        .expect("resolved value", value, lambda obs: obs["resolve"].path)
        .expect("published under own name", True,
                lambda obs: same_peer(obs["publish"].name, obs["ids"][0].id))
    )

    def cancel_subscription(obs):
        if "subscribe" in obs:
            obs["subscribe"].cancel()

    return scenario.on_finish(cancel_subscription)
