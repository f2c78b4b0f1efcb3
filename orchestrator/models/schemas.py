from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    AUTHORITY = "authority"
    VALIDATOR = "validator"


class KeygenOutcome(str, Enum):
    COMPLETE = "complete"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    SKIPPED = "skipped"


class ProposalOutcome(str, Enum):
    SIGNED = "signed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class NodeSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    label: str
    role: Role
    host: str
    p2p_port: int
    rpc_port: int
    base_path: Path
    log_path: Path

    @property
    def is_seed(self) -> bool:
        return self.index == 0

    @property
    def rpc_url(self) -> str:
        return f"http://{self.host}:{self.rpc_port}"


class NodeStatus(BaseModel):
    label: str
    pid: Optional[int]
    running: bool
    returncode: Optional[int]


class ProposalResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    proposal_id: str
    position: int
    outcome: ProposalOutcome
    elapsed: float
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == ProposalOutcome.SIGNED


class RoundResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    round: int
    keygen: KeygenOutcome
    proposals: List[ProposalResult] = []
    elapsed: float = 0.0
    attempts: int = 1
    error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.keygen == KeygenOutcome.COMPLETE and all(p.succeeded for p in self.proposals)


class RunCounts(BaseModel):
    passed: int = 0
    failed: int = 0
    timed_out: int = 0
    skipped: int = 0


class RunReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    threshold: int
    participants: int
    proposals_per_round: int
    rounds: List[RoundResult]
    verdict: Verdict
    first_failing_round: Optional[int] = None
    counts: RunCounts
    aborted: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.verdict == Verdict.PASS else 1
