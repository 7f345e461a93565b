"""
factory.py – Spawning nodes of every implementation kind.

Daemon kinds (go, js) go through the same steps:

    init repo  →  apply config  →  start daemon  →  poll until the API answers

In-process nodes are started as a task in the caller's nursery.
"""

import json
import os
import shutil
import subprocess
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable

import trio
from multiaddr import Multiaddr

from .config import (
    GO_IPFS_BIN,
    GO_KEY_BITS,
    JS_IPFS_BIN,
    JS_KEY_BITS,
    SPAWN_ATTEMPTS,
    SPAWN_INTERVAL,
)
from .errors import BinaryNotFoundError, NodeNotReadyError, SpawnError
from .fixtures import temp_dir
from .http_node import HttpNode
from .logs import setup_logging
from .node import NodeHandle, NodeKind, NodeSpec
from .polling import retry
from .proc_node import ProcNode

logger = setup_logging("factory")


@dataclass(frozen=True)
class DaemonProfile:
    """How to drive one daemon implementation from the command line."""

    binary: str
    default_bits: int
    algorithm_flag: bool
    multibase_topics: bool

    def init_args(self, bits: int | None) -> list[str]:
        bits = bits or self.default_bits
        if self.algorithm_flag:
            return ["init", "--algorithm", "rsa", "--bits", str(bits)]
        return ["init", "--bits", str(bits)]


PROFILES = {
    NodeKind.GO: DaemonProfile(GO_IPFS_BIN, GO_KEY_BITS, algorithm_flag=True, multibase_topics=True),
    NodeKind.JS: DaemonProfile(JS_IPFS_BIN, JS_KEY_BITS, algorithm_flag=False, multibase_topics=True),
}


def flatten_config(config: dict, prefix: str = "") -> list[tuple[str, object]]:
    """{"Addresses": {"API": x}} -> [("Addresses.API", x)]; lists stay whole."""
    items = []
    for key, value in config.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict):
            items.extend(flatten_config(value, f"{path}."))
        else:
            items.append((path, value))
    return items


def api_url_from_file(repo_path: str) -> str:
    """Read the `api` file a running daemon writes into its repo."""
    api_file = Path(repo_path) / "api"
    if not api_file.exists():
        raise NodeNotReadyError(f"no api file in {repo_path} yet")
    maddr = Multiaddr(api_file.read_text().strip())
    host = maddr.value_for_protocol("ip4")
    if host == "0.0.0.0":
        host = "127.0.0.1"
    port = maddr.value_for_protocol("tcp")
    return f"http://{host}:{port}"


async def wait_until_ready(process: trio.Process, build_node: Callable[[], HttpNode],
                           label: str) -> HttpNode:
    """
    Poll a freshly started daemon until its API answers `id`.

    *build_node* raises NodeNotReadyError while the daemon has not written
    its api file; the handle is built once and reused for every later
    attempt.  If the daemon never comes up the handle's session is closed.
    """
    node = None

    async def ready() -> HttpNode:
        nonlocal node
        if process.returncode is not None:
            raise SpawnError(f"{label}: daemon exited with code {process.returncode}")
        if node is None:
            node = build_node()
        await node.id()
        return node

    try:
        return await retry(ready, attempts=SPAWN_ATTEMPTS, interval=SPAWN_INTERVAL,
                           retry_on=NodeNotReadyError, label=f"{label} readiness")
    except BaseException:
        if node is not None:
            node.session.close()
        raise


class DaemonFactory:
    def __init__(self, profiles: dict[NodeKind, DaemonProfile] | None = None):
        self.profiles = PROFILES if profiles is None else profiles
        self._counter = 0

    def available(self, kind: NodeKind) -> bool:
        if kind is NodeKind.PROC:
            return True
        profile = self.profiles.get(kind)
        return profile is not None and shutil.which(profile.binary) is not None

    async def spawn(self, spec: NodeSpec, nursery: trio.Nursery) -> NodeHandle:
        self._counter += 1
        label = spec.label or f"{spec.kind.value}-{self._counter}"
        if spec.kind is NodeKind.PROC:
            node = await self._spawn_proc(label, nursery)
        else:
            node = await self._spawn_daemon(spec, label, nursery)

        node.mark_running()
        ident = await node.id()
        logger.info(f"Spawned {label} ({ident.id})")
        return node

    # ── In-process ───────────────────────────────────────────────────────

    async def _spawn_proc(self, label: str, nursery: trio.Nursery) -> ProcNode:
        node = ProcNode(label=label)
        try:
            await nursery.start(node.run)
        except Exception as e:
            raise SpawnError(f"{label}: in-process node failed to start: {e}") from e
        return node

    # ── Daemons ──────────────────────────────────────────────────────────

    async def _spawn_daemon(self, spec: NodeSpec, label: str, nursery: trio.Nursery) -> HttpNode:
        profile = self.profiles[spec.kind]
        binary = shutil.which(profile.binary)
        if binary is None:
            raise BinaryNotFoundError(f"{profile.binary!r} for {spec.kind.value} nodes is not on PATH")

        repo_path = temp_dir() if spec.disposable else spec.repo_path
        if repo_path is None:
            raise SpawnError(f"{label}: a non-disposable node needs a repo_path")
        env = {**os.environ, "IPFS_PATH": repo_path}

        process = None
        try:
            if not (Path(repo_path) / "config").exists():
                await self._run(binary, profile.init_args(spec.bits), env, label)
            for key, value in flatten_config(spec.config):
                await self._run(binary, ["config", "--json", key, json.dumps(value)], env, label)

            process = await trio.lowlevel.open_process(
                [binary, "daemon", *spec.args],
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            logger.debug(f"{label}: daemon pid {process.pid}, repo {repo_path}")

            def build_node() -> HttpNode:
                return HttpNode(
                    api_url_from_file(repo_path),
                    spec.kind,
                    nursery,
                    process=process,
                    repo_path=repo_path,
                    disposable=spec.disposable,
                    multibase_topics=profile.multibase_topics,
                    label=label,
                )

            return await wait_until_ready(process, build_node, label)
        except Exception as e:
            await self._cleanup(process, repo_path if spec.disposable else None)
            if isinstance(e, SpawnError):
                raise
            raise SpawnError(f"{label}: {e}") from e
        except BaseException:
            await self._cleanup(process, repo_path if spec.disposable else None)
            raise

    async def _run(self, binary: str, args: list[str], env: dict, label: str) -> None:
        try:
            await trio.run_process([binary, *args], env=env, capture_stdout=True, capture_stderr=True)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode(errors="replace").strip()
            raise SpawnError(f"{label}: `{' '.join(args[:2])}` failed: {stderr}") from e

    async def _cleanup(self, process: trio.Process | None, repo_path: str | None) -> None:
        with trio.CancelScope(shield=True):
            if process is not None and process.returncode is None:
                process.kill()
                await process.wait()
            if repo_path:
                await trio.to_thread.run_sync(partial(shutil.rmtree, repo_path, ignore_errors=True))
