import argparse
import asyncio
import logging
import shutil
import signal
import sys
from pathlib import Path

import uvloop

from orchestrator.config import SessionConfig, settings
from orchestrator.models.schemas import RunReport
from orchestrator.services.report_service import report_service
from orchestrator.services.rpc_client import ClusterRpc
from orchestrator.services.session_driver import SessionDriver
from orchestrator.services.teardown import provisioned_cluster
from orchestrator.utils.errors import ConfigError, NodeExited, OrchestratorError, ProvisioningError
from orchestrator.utils.logging_config import log_header, setup_logging

EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dkg-test-orchestrator",
        description="Stress-test a local DKG node cluster over repeated keygen and signing rounds.",
    )
    parser.add_argument("--tmp", type=Path, required=True, help="scratch directory for node state and logs")
    parser.add_argument("--threshold", type=int, required=True, help="DKG signing threshold t")
    parser.add_argument("--n", type=int, required=True, dest="n_nodes", help="number of participant nodes")
    parser.add_argument("--bind", default=settings.DEFAULT_BIND, help="base bind address <addr>:<port>")
    parser.add_argument("--n-tests", type=int, default=1, help="number of stress rounds")
    parser.add_argument("-p", type=int, default=1, dest="proposals", help="proposals submitted per round")
    parser.add_argument("--node-binary", default=settings.NODE_BINARY, help="DKG node executable")
    parser.add_argument("--extra-nodes", type=int, default=0, help="non-participating validator nodes")
    parser.add_argument("--fail-fast", action="store_true", help="skip remaining rounds after the first failure")
    parser.add_argument("--round-retries", type=int, default=0, help="extra attempts for a failed round")
    parser.add_argument("--startup-timeout", type=float, default=120.0)
    parser.add_argument("--keygen-timeout", type=float, default=300.0)
    parser.add_argument("--proposal-timeout", type=float, default=120.0)
    parser.add_argument("--poll-interval", type=float, default=1.0)
    parser.add_argument("--report", type=Path, dest="report_path", help="JSON report path (default <tmp>/report.json)")
    parser.add_argument("--clean", action="store_true", help="remove the scratch directory before starting")
    parser.add_argument("--debug-tracing", action="store_true", help="debug logs here and dkg trace targets on nodes")
    parser.add_argument("--log-target", action="append", default=[], dest="log_targets",
                        metavar="TARGET=LEVEL", help="extra node log filter, repeatable")
    return parser


def config_from_args(args: argparse.Namespace) -> SessionConfig:
    return SessionConfig(**vars(args)).validate()


def prepare_scratch(config: SessionConfig):
    try:
        if config.clean and config.tmp.exists():
            logging.info(f"Cleaning {config.tmp}")
            shutil.rmtree(config.tmp)
        config.tmp.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ProvisioningError(f"Cannot prepare scratch directory {config.tmp}: {e}") from e


async def publish(config: SessionConfig, report: RunReport):
    await report_service.write(report, config.report_file)
    log_header("RESULT")
    logging.info(report_service.summary(report))


async def run(config: SessionConfig) -> RunReport:
    prepare_scratch(config)

    driver = None
    try:
        async with ClusterRpc() as rpc:
            async with provisioned_cluster(config, rpc) as cluster:
                driver = SessionDriver(config, rpc, cluster.specs, before_round=lambda _: cluster.ensure_alive())
                rounds = await driver.run()
    except NodeExited as e:
        # Keep the rounds that finished before the node was lost.
        partial = driver.results if driver else []
        await publish(config, report_service.aggregate(config, partial, aborted=str(e)))
        raise

    report = report_service.aggregate(config, rounds)
    await publish(config, report)
    return report


async def orchestrator_main(config: SessionConfig) -> int:
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    received = []

    def interrupt(sig):
        logging.warning(f"Received {sig.name}, stopping the cluster")
        received.append(sig)
        task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, interrupt, sig)
    try:
        report = await run(config)
    except asyncio.CancelledError:
        if not received:
            raise
        return EXIT_INTERRUPTED
    except OrchestratorError as e:
        logging.error(f"{type(e).__name__}: {e}")
        return e.exit_code
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    return report.exit_code


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.debug_tracing)
    try:
        config = config_from_args(args)
    except ConfigError as e:
        logging.error(str(e))
        return e.exit_code
    return uvloop.run(orchestrator_main(config))


if __name__ == "__main__":
    sys.exit(main())
