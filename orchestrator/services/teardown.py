import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from orchestrator.config import SessionConfig
from orchestrator.services.node_service import Cluster, NodeSupervisor, build_node_specs, required_ports
from orchestrator.services.port_guard import ensure_ports_free
from orchestrator.services.rpc_client import ClusterRpc
from orchestrator.utils.errors import TeardownError

logger = logging.getLogger(__name__)


class TeardownController:
    """Stops every node the supervisor started, once, whatever the exit path."""

    def __init__(self, supervisor: NodeSupervisor):
        self._supervisor = supervisor
        self._done = False
        self.error: Optional[TeardownError] = None

    @property
    def done(self) -> bool:
        return self._done

    async def teardown(self) -> None:
        if self._done:
            logger.debug("Teardown already ran")
            return
        self._done = True

        processes = list(self._supervisor.processes)
        logger.info(f"Tearing down {len(processes)} node(s)")
        stop = asyncio.ensure_future(self._supervisor.stop(processes))
        interrupted = False
        while not stop.done():
            try:
                await asyncio.shield(stop)
            except asyncio.CancelledError:
                interrupted = True
                logger.warning("Interrupted during teardown, still waiting for nodes to stop")
            except TeardownError:
                break

        if stop.exception() is not None:
            self.error = stop.exception()
            logger.error(f"Teardown incomplete: {self.error}")
        else:
            logger.info("All nodes stopped")
        if interrupted:
            raise asyncio.CancelledError()


@asynccontextmanager
async def provisioned_cluster(config: SessionConfig, rpc: ClusterRpc) -> AsyncIterator[Cluster]:
    specs = build_node_specs(config)
    ensure_ports_free(config.host, required_ports(specs))

    supervisor = NodeSupervisor(config)
    controller = TeardownController(supervisor)
    try:
        processes = await supervisor.start(specs)
        await supervisor.wait_ready(processes, rpc, config.startup_timeout, config.poll_interval)
        yield Cluster(specs, processes, supervisor)
    finally:
        await controller.teardown()
