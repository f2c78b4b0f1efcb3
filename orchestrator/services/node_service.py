import asyncio
import ipaddress
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from typing import IO, List, Optional

from orchestrator.config import SessionConfig, settings
from orchestrator.models.schemas import NodeSpec, NodeStatus, Role
from orchestrator.services.rpc_client import ClusterRpc
from orchestrator.utils.errors import NodeExited, NodeSpawnFailure, RpcError, RpcUnavailable, TeardownError
from orchestrator.utils.exception_decorator import log_exceptions

logger = logging.getLogger(__name__)


def node_label(index: int) -> str:
    if index < len(settings.IDENTITIES):
        return settings.IDENTITIES[index]
    return f"node{index}"


def build_node_specs(config: SessionConfig) -> List[NodeSpec]:
    """Index 0 is the seed node; the first n specs are DKG authorities."""
    specs = []
    for i in range(config.total_nodes):
        label = node_label(i)
        base_path = config.tmp / label
        specs.append(NodeSpec(
            index=i,
            label=label,
            role=Role.AUTHORITY if i < config.n_nodes else Role.VALIDATOR,
            host=config.host,
            p2p_port=config.base_port + i,
            rpc_port=config.base_port + settings.RPC_PORT_OFFSET + i,
            base_path=base_path,
            log_path=base_path / "output.log",
        ))
    return specs


def required_ports(specs: List[NodeSpec]) -> List[int]:
    return [port for spec in specs for port in (spec.p2p_port, spec.rpc_port)]


def seed_multiaddr(seed: NodeSpec) -> str:
    try:
        proto = "ip4" if ipaddress.ip_address(seed.host).version == 4 else "ip6"
    except ValueError:
        proto = "dns4"
    return f"/{proto}/{seed.host}/tcp/{seed.p2p_port}/p2p/{settings.SEED_PEER_ID}"


def node_arguments(spec: NodeSpec, seed: NodeSpec, config: SessionConfig) -> List[str]:
    level = "info" if config.debug_tracing else settings.NODE_LOG_LEVEL
    args = [
        "--base-path", str(spec.base_path),
        "--chain", settings.CHAIN,
        "--name", spec.label,
        f"--output-path={spec.log_path}",
        "--rpc-cors", "all",
        "--rpc-external",
        "--rpc-methods=unsafe",
        "--port", str(spec.p2p_port),
        "--rpc-port", str(spec.rpc_port),
        f"-l{level}",
    ]
    if spec.role == Role.AUTHORITY:
        args.append("--validator")
        if spec.label in settings.IDENTITIES:
            args.append(f"--{spec.label}")

    if spec.is_seed:
        args += ["--node-key", settings.SEED_NODE_KEY]
    else:
        args += ["--bootnodes", seed_multiaddr(seed)]

    targets = list(settings.DEBUG_LOG_TARGETS) if config.debug_tracing else []
    targets += config.log_targets
    args += [f"-l{target}" for target in targets]
    return args


class NodeProcess:
    def __init__(self, spec: NodeSpec, process: asyncio.subprocess.Process, log_file: IO[bytes]):
        self.spec = spec
        self.process = process
        self.stopped = False
        self._log_file = log_file

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def close_log(self):
        if not self._log_file.closed:
            self._log_file.close()

    def status(self) -> NodeStatus:
        return NodeStatus(
            label=self.spec.label,
            pid=self.pid,
            running=self.returncode is None and not self.stopped,
            returncode=self.returncode,
        )


class NodeSupervisor:
    def __init__(self, config: SessionConfig):
        self._config = config
        self.processes: List[NodeProcess] = []

    @log_exceptions
    async def start(self, specs: List[NodeSpec]) -> List[NodeProcess]:
        seed = specs[0]
        started = []
        try:
            for spec in specs:
                started.append(await self._spawn(spec, seed))
        except NodeSpawnFailure:
            logger.error(f"Cluster start failed after {len(started)} node(s), stopping them")
            try:
                await self.stop(self.processes)
            except TeardownError as e:
                logger.error(f"Could not stop partially started cluster: {e}")
            raise
        logger.info(f"Started {len(started)} nodes, seed {seed.label} at {seed_multiaddr(seed)}")
        return started

    async def _spawn(self, spec: NodeSpec, seed: NodeSpec) -> NodeProcess:
        args = node_arguments(spec, seed, self._config)
        try:
            spec.base_path.mkdir(parents=True, exist_ok=True)
            log_file = open(spec.log_path, "ab")
        except OSError as e:
            raise NodeSpawnFailure(spec.label, f"cannot prepare {spec.base_path}: {e}") from e

        try:
            process = await asyncio.create_subprocess_exec(
                self._config.node_binary, *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            log_file.close()
            raise NodeSpawnFailure(spec.label, str(e)) from e

        node = NodeProcess(spec, process, log_file)
        self.processes.append(node)
        logger.info(f"Starting {spec.label} ({spec.role.value}) pid={process.pid} "
                    f"p2p={spec.p2p_port} rpc={spec.rpc_port} log={spec.log_path}")

        await asyncio.sleep(settings.SPAWN_SETTLE_TIME)
        if process.returncode is not None:
            raise NodeSpawnFailure(spec.label, f"exited immediately with code {process.returncode}, see {spec.log_path}")
        return node

    async def wait_ready(self, processes: List[NodeProcess], rpc: ClusterRpc, timeout: float, poll_interval: float):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        pending = list(processes)

        while pending:
            for node in self.dead(pending):
                raise NodeSpawnFailure(node.spec.label, f"exited with code {node.returncode} before RPC was ready")

            still_pending = []
            for node in pending:
                try:
                    await rpc.health(node.spec)
                except (RpcUnavailable, RpcError) as e:
                    logger.debug(f"{node.spec.label} not ready yet: {e}")
                    still_pending.append(node)
            pending = still_pending

            if pending and loop.time() >= deadline:
                raise NodeSpawnFailure(pending[0].spec.label, f"RPC not reachable after {timeout}s")
            if pending:
                await asyncio.sleep(poll_interval)
        logger.info(f"All {len(processes)} nodes answer on RPC")

    async def stop(self, processes: List[NodeProcess]) -> None:
        results = await asyncio.gather(*(self._stop_one(node) for node in processes), return_exceptions=True)
        errors = [r for r in results if isinstance(r, Exception)]
        if errors:
            raise TeardownError(errors)

    async def _stop_one(self, node: NodeProcess) -> None:
        if node.stopped:
            return
        try:
            self._signal(node, signal.SIGTERM)
            try:
                await asyncio.wait_for(node.process.wait(), settings.STOP_GRACE_PERIOD)
            except asyncio.TimeoutError:
                logger.warning(f"{node.spec.label} ignored SIGTERM for {settings.STOP_GRACE_PERIOD}s, killing")
                self._signal(node, signal.SIGKILL)
                await asyncio.wait_for(node.process.wait(), settings.STOP_GRACE_PERIOD)
            logger.info(f"Stopped {node.spec.label} (exit {node.returncode})")
        finally:
            node.stopped = True
            node.close_log()

    @staticmethod
    def _signal(node: NodeProcess, sig):
        # each node leads its own session, so its pgid is its pid
        try:
            if sys.platform == "win32":
                node.process.send_signal(sig)
            else:
                os.killpg(node.pid, sig)
        except ProcessLookupError:
            pass

    def is_alive(self, node: NodeProcess) -> bool:
        return not node.stopped and node.returncode is None

    def dead(self, processes: List[NodeProcess]) -> List[NodeProcess]:
        return [node for node in processes if not node.stopped and node.returncode is not None]

    def ensure_alive(self, processes: List[NodeProcess]) -> None:
        dead = self.dead(processes)
        if dead:
            raise NodeExited(f"{node.spec.label} (exit {node.returncode})" for node in dead)

    def get_status(self) -> List[NodeStatus]:
        return [node.status() for node in self.processes]


@dataclass
class Cluster:
    specs: List[NodeSpec]
    processes: List[NodeProcess]
    supervisor: NodeSupervisor = field(repr=False)

    @property
    def seed(self) -> NodeSpec:
        return self.specs[0]

    @property
    def authorities(self) -> List[NodeSpec]:
        return [spec for spec in self.specs if spec.role == Role.AUTHORITY]

    def ensure_alive(self):
        self.supervisor.ensure_alive(self.processes)
