import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from orchestrator.utils.errors import ConfigError


class Settings:
    NODE_BINARY = os.environ.get("ORCHESTRATOR_NODE_BINARY", "./target/release/dkg-standalone-node")
    CHAIN = "local"
    DEFAULT_BIND = "127.0.0.1:7777"
    RPC_PORT_OFFSET = 1000
    IDENTITIES = ("alice", "bob", "charlie", "dave", "eve", "ferdie")

    # libp2p identity of the seed node, derived from SEED_NODE_KEY
    SEED_NODE_KEY = "0000000000000000000000000000000000000000000000000000000000000001"
    SEED_PEER_ID = "12D3KooWEyoppNCUx8Yx66oV9fJnriXwCcXwDDUA2kj6vnc6iDEp"

    NODE_LOG_LEVEL = "error"
    DEBUG_LOG_TARGETS = (
        "dkg=debug",
        "dkg_gadget::worker=debug",
        "runtime::dkg_metadata=debug",
        "dkg_metadata=debug",
        "runtime::dkg_proposal_handler=debug",
        "dkg_proposal_handler=debug",
    )

    RPC_HEALTH = "system_health"
    RPC_START_SESSION = "dkg_startSession"
    RPC_SESSION_STATUS = "dkg_sessionStatus"
    RPC_SUBMIT_PROPOSAL = "dkg_submitProposal"
    RPC_PROPOSAL_STATUS = "dkg_proposalStatus"
    RPC_REQUEST_TIMEOUT = 10.0

    STOP_GRACE_PERIOD = 5.0
    SPAWN_SETTLE_TIME = 0.2
    PROPOSAL_PAYLOAD_BYTES = 32

    REPORT_FILE = "report.json"


settings = Settings()


def parse_bind(bind: str) -> Tuple[str, int]:
    host, sep, port = bind.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"--bind must be <addr>:<port>, got {bind!r}")
    try:
        return host, int(port)
    except ValueError:
        raise ConfigError(f"--bind port is not a number: {port!r}") from None


@dataclass
class SessionConfig:
    tmp: Path
    threshold: int
    n_nodes: int
    bind: str = Settings.DEFAULT_BIND
    n_tests: int = 1
    proposals: int = 1
    node_binary: str = Settings.NODE_BINARY
    extra_nodes: int = 0
    fail_fast: bool = False
    round_retries: int = 0
    startup_timeout: float = 120.0
    keygen_timeout: float = 300.0
    proposal_timeout: float = 120.0
    poll_interval: float = 1.0
    report_path: Optional[Path] = None
    clean: bool = False
    debug_tracing: bool = False
    log_targets: List[str] = field(default_factory=list)

    @property
    def host(self) -> str:
        return parse_bind(self.bind)[0]

    @property
    def base_port(self) -> int:
        return parse_bind(self.bind)[1]

    @property
    def total_nodes(self) -> int:
        return self.n_nodes + self.extra_nodes

    @property
    def report_file(self) -> Path:
        return self.report_path or self.tmp / Settings.REPORT_FILE

    def validate(self) -> "SessionConfig":
        if self.threshold < 1:
            raise ConfigError(f"threshold must be >= 1, got {self.threshold}")
        if self.n_nodes < self.threshold:
            raise ConfigError(f"n ({self.n_nodes}) must be >= threshold ({self.threshold})")
        if self.proposals < 0:
            raise ConfigError(f"proposals per round must be >= 0, got {self.proposals}")
        if self.n_tests < 1:
            raise ConfigError(f"n-tests must be >= 1, got {self.n_tests}")
        if self.extra_nodes < 0:
            raise ConfigError(f"extra-nodes must be >= 0, got {self.extra_nodes}")
        if self.round_retries < 0:
            raise ConfigError(f"round-retries must be >= 0, got {self.round_retries}")
        for name in ("startup_timeout", "keygen_timeout", "proposal_timeout", "poll_interval"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name.replace('_', '-')} must be > 0")
        if self.total_nodes > Settings.RPC_PORT_OFFSET:
            raise ConfigError(f"{self.total_nodes} nodes would put p2p ports on the RPC ports "
                              f"(offset {Settings.RPC_PORT_OFFSET})")

        base = self.base_port
        highest = base + Settings.RPC_PORT_OFFSET + self.total_nodes - 1
        if base < 1 or highest > 65535:
            raise ConfigError(f"port range {base}..{highest} does not fit in 1..65535")
        return self
