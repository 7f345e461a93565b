"""
topology.py – Bringing up a set of nodes and wiring them together.

    async with TopologyBuilder().build([NodeSpec(NodeKind.GO), NodeSpec(NodeKind.JS)]) as topo:
        await topo.connect(0, 1)
        ...

All nodes are spawned concurrently.  Whatever happens inside the block,
every node that came up is stopped on exit, in parallel, and a failing
stop never prevents its siblings from stopping.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Sequence

import trio

from .config import CONNECT_ATTEMPTS, CONNECT_INTERVAL
from .errors import ConnectError, InteropError, SetupError
from .factory import DaemonFactory
from .logs import setup_logging
from .node import NodeHandle, NodeIdentity, NodeSpec
from .polling import retry

logger = setup_logging("topology")


def first_error(group: BaseExceptionGroup) -> Exception | None:
    """The first ordinary exception inside a (possibly nested) exception group."""
    for exc in group.exceptions:
        if isinstance(exc, BaseExceptionGroup):
            found = first_error(exc)
            if found is not None:
                return found
        elif isinstance(exc, Exception):
            return exc
    return None


async def run_parallel(*thunks: Callable[[], Awaitable]) -> list:
    """
    Run the given async callables concurrently and return their results in
    order.  If any of them fails the others are cancelled and the first
    failure is raised on its own.
    """
    results: list = [None] * len(thunks)

    async def run_one(i, thunk):
        results[i] = await thunk()

    try:
        async with trio.open_nursery() as nursery:
            for i, thunk in enumerate(thunks):
                nursery.start_soon(run_one, i, thunk)
    except BaseExceptionGroup as group:
        error = first_error(group)
        if error is None:
            raise
        raise error from None
    return results


async def teardown(nodes: Sequence[NodeHandle]) -> None:
    """Stop every node in parallel; failures are logged, never raised."""

    async def stop_one(node: NodeHandle):
        try:
            await node.stop()
        except Exception as e:
            logger.error(f"Teardown of {node.label} failed: {e}")

    with trio.CancelScope(shield=True):
        async with trio.open_nursery() as nursery:
            for node in nodes:
                nursery.start_soon(stop_one, node)


async def connect_pair(a: NodeHandle, b: NodeHandle,
                       attempts: int = CONNECT_ATTEMPTS,
                       interval: float = CONNECT_INTERVAL) -> tuple[NodeIdentity, NodeIdentity]:
    """Dial b from a and wait until at least one side lists the other as a peer."""
    id_a, id_b = await run_parallel(a.id, b.id)
    try:
        await a.connect(id_b.dial_address())
    except InteropError as e:
        raise ConnectError(f"{a.label} -> {b.label}: {e}") from e

    async def linked():
        peers_a, peers_b = await run_parallel(a.list_peers, b.list_peers)
        if id_b.id not in peers_a and id_a.id not in peers_b:
            raise ConnectError(f"{a.label} and {b.label} do not see each other yet")

    await retry(linked, attempts=attempts, interval=interval, label=f"connect {a.label}->{b.label}")
    logger.info(f"Connected {a.label} -> {b.label}")
    return id_a, id_b


class Topology:
    """The spawned nodes, in the order requested, plus the directed connections made so far."""

    def __init__(self, nodes: list[NodeHandle], nursery: trio.Nursery):
        self.nodes = nodes
        self.nursery = nursery
        self.connections: set[tuple[int, int]] = set()

    def __getitem__(self, index: int) -> NodeHandle:
        return self.nodes[index]

    def __iter__(self):
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def index(self, node: NodeHandle) -> int:
        for i, candidate in enumerate(self.nodes):
            if candidate is node:
                return i
        raise ValueError(f"{node!r} is not part of this topology")

    async def identities(self) -> list[NodeIdentity]:
        return await run_parallel(*(node.id for node in self.nodes))

    async def connect(self, a: int | NodeHandle, b: int | NodeHandle) -> None:
        i = a if isinstance(a, int) else self.index(a)
        j = b if isinstance(b, int) else self.index(b)
        if i == j:
            raise ValueError("a node cannot be connected to itself")
        await connect_pair(self.nodes[i], self.nodes[j])
        self.connections.add((i, j))

    async def connect_all(self) -> None:
        """Dial every later node from every earlier one."""
        for i in range(len(self.nodes)):
            for j in range(i + 1, len(self.nodes)):
                await self.connect(i, j)

    def is_connected(self, a: int, b: int) -> bool:
        return (a, b) in self.connections or (b, a) in self.connections


class TopologyBuilder:
    def __init__(self, factory: DaemonFactory | None = None):
        self.factory = factory or DaemonFactory()

    @asynccontextmanager
    async def build(self, specs: Sequence[NodeSpec]) -> AsyncIterator[Topology]:
        if not specs:
            raise ValueError("a topology needs at least one node")

        try:
            async with trio.open_nursery() as nursery:
                topology = await self._spawn_all(specs, nursery)
                try:
                    yield topology
                finally:
                    await teardown(topology.nodes)
                    nursery.cancel_scope.cancel()
        except BaseExceptionGroup as group:
            # Unwrap the nursery's group.
            error = first_error(group)
            if error is None:
                raise
            raise error from None

    async def _spawn_all(self, specs: Sequence[NodeSpec], nursery: trio.Nursery) -> Topology:
        spawned: list[NodeHandle | None] = [None] * len(specs)

        async def spawn_one(i: int, spec: NodeSpec):
            spawned[i] = await self.factory.spawn(spec, nursery)

        try:
            async with trio.open_nursery() as spawn_nursery:
                for i, spec in enumerate(specs):
                    spawn_nursery.start_soon(spawn_one, i, spec)
        except BaseException as e:
            survivors = [n for n in spawned if n is not None]
            logger.error(f"Topology setup failed, stopping {len(survivors)} spawned node(s)")
            await teardown(survivors)
            error = first_error(e) if isinstance(e, BaseExceptionGroup) else e
            if not isinstance(error, Exception):
                raise
            raise SetupError(f"could not spawn topology: {error}") from error

        logger.info(f"Topology up: {', '.join(n.label for n in spawned)}")
        return Topology(list(spawned), nursery)
