"""
runner.py – Command-line matrix runner.

Runs every suite over every ordered pairing of the requested
implementation kinds and prints one table of results.

Usage:
    ipfs-interop --kinds go js --suite all
    python -m ipfs_interop --kinds proc --suite exchange --max-size 1048576

Exit status: 0 all passed, 1 a scenario failed, 2 a topology could not be
brought up.
"""

import argparse
import itertools
import logging
import sys

import trio
from rich.console import Console
from rich.table import Table

from .config import CONTENT_SIZES, DIR_DEPTH, DIR_FILE_COUNTS, LOG_LEVEL, MB
from .errors import SetupError
from .factory import DaemonFactory
from .fixtures import random_bytes, staged_tree
from .logs import setup_logging
from .node import NodeKind, NodeSpec
from .scenario import ScenarioResult, ScenarioRunner
from .scenarios import (
    connect_scenario,
    content_addressing,
    content_exchange,
    directory_exchange,
    name_pubsub_state,
    record_propagation,
)
from .topology import TopologyBuilder

logger = setup_logging("runner")

SUITES = ("connect", "exchange", "directories", "name-pubsub")
DAEMON_KINDS = (NodeKind.GO, NodeKind.JS)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ipfs-interop",
        description="Cross-implementation interop checks for IPFS nodes",
    )
    parser.add_argument("--kinds", "-k", nargs="+", type=NodeKind,
                        choices=list(NodeKind), default=list(DAEMON_KINDS), metavar="KIND",
                        help="implementation kinds to pair up")
    parser.add_argument("--suite", "-s", choices=(*SUITES, "all"), default="all")
    parser.add_argument("--max-size", type=int, default=8 * MB,
                        help="largest buffer of the content size matrix, in bytes")
    parser.add_argument("--log-level", default=LOG_LEVEL)
    return parser.parse_args(argv)


def pairings(kinds: list[NodeKind]) -> list[tuple[NodeKind, NodeKind]]:
    """Every ordered (sender, receiver) pair, same-kind pairs included."""
    unique = list(dict.fromkeys(kinds))
    return list(itertools.product(unique, repeat=2))


def setup_failure(name: str, error: Exception) -> ScenarioResult:
    return ScenarioResult(name=name, success=False, error=f"setup: {error}",
                          failed_step="setup", exception=error)


class MatrixRunner:
    def __init__(self, kinds: list[NodeKind], suites: list[str], max_size: int,
                 factory: DaemonFactory | None = None):
        self.kinds = kinds
        self.suites = suites
        self.max_size = max_size
        self.builder = TopologyBuilder(factory)
        self.runner = ScenarioRunner()

    async def run(self) -> list[ScenarioResult]:
        results = []
        for suite in self.suites:
            for x, y in pairings(self.kinds):
                name = f"{suite} {x.value} -> {y.value}"
                logger.info(f"── {name} ──")
                try:
                    results.extend(await self.run_suite(suite, x, y))
                except SetupError as e:
                    logger.error(f"{name}: {e}")
                    results.append(setup_failure(name, e))
        return results

    async def run_suite(self, suite: str, x: NodeKind, y: NodeKind) -> list[ScenarioResult]:
        if suite == "connect":
            return await self._connect(x, y)
        if suite == "exchange":
            return await self._exchange(x, y)
        if suite == "directories":
            return await self._directories(x, y)
        if suite == "name-pubsub":
            return await self._name_pubsub(x, y)
        raise ValueError(f"unknown suite {suite!r}")

    # ── Suites ───────────────────────────────────────────────────────────

    async def _connect(self, x, y):
        async with self.builder.build([NodeSpec(x), NodeSpec(y)]) as topo:
            return [await self.runner.run(connect_scenario(topo[0], topo[1]))]

    async def _exchange(self, x, y):
        sizes = [size for size in CONTENT_SIZES if size <= self.max_size]
        async with self.builder.build([NodeSpec(x), NodeSpec(y)]) as topo:
            await topo.connect(0, 1)
            scenarios = [content_exchange(topo[0], topo[1], random_bytes(size)) for size in sizes]
            # In-process nodes do not use the daemons' chunking, so their hashes differ.
            if x != y and x in DAEMON_KINDS and y in DAEMON_KINDS:
                scenarios.append(content_addressing(topo[0], topo[1], random_bytes(sizes[-1] if sizes else 1)))
            return await self.runner.run_all(scenarios)

    async def _directories(self, x, y):
        results = []
        async with self.builder.build([NodeSpec(x), NodeSpec(y)]) as topo:
            await topo.connect(0, 1)
            for number in DIR_FILE_COUNTS:
                with staged_tree(DIR_DEPTH, number) as (root, count):
                    results.append(await self.runner.run(
                        directory_exchange(topo[0], topo[1], root, count)
                    ))
        return results

    async def _name_pubsub(self, x, y):
        specs = [NodeSpec.name_pubsub(x), NodeSpec.name_pubsub(y)]
        async with self.builder.build(specs) as topo:
            await topo.connect(0, 1)
            return await self.runner.run_all([
                name_pubsub_state(topo[0]),
                name_pubsub_state(topo[1]),
                record_propagation(topo[0], topo[1]),
            ])


# ── Report ───────────────────────────────────────────────────────────────

def render(results: list[ScenarioResult], console: Console | None = None) -> None:
    console = console or Console()
    table = Table(title="Interop results")
    table.add_column("Scenario")
    table.add_column("Result")
    table.add_column("Time", justify="right")
    table.add_column("Error", overflow="fold")
    for result in results:
        status = "[green]pass[/green]" if result.success else "[red]FAIL[/red]"
        table.add_row(result.name, status, f"{result.duration:.2f}s", result.error or "")
    console.print(table)

    failed = sum(not r.success for r in results)
    console.print(f"{len(results) - failed} passed, {failed} failed")


def exit_code(results: list[ScenarioResult]) -> int:
    if any(isinstance(r.exception, SetupError) for r in results):
        return 2
    if any(not r.success for r in results):
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.getLogger("interop").setLevel(args.log_level.upper())
    suites = list(SUITES) if args.suite == "all" else [args.suite]

    factory = DaemonFactory()
    missing = [k.value for k in args.kinds if not factory.available(k)]
    if missing:
        logger.critical(f"No binary for kind(s): {', '.join(missing)}")
        return 2

    matrix = MatrixRunner(args.kinds, suites, args.max_size, factory)
    try:
        results = trio.run(matrix.run)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130

    render(results)
    return exit_code(results)


if __name__ == "__main__":
    sys.exit(main())
