import logging
from pathlib import Path
from typing import List, Optional

import aiofiles

from orchestrator.config import SessionConfig
from orchestrator.models.schemas import KeygenOutcome, ProposalOutcome, RoundResult, RunCounts, RunReport, Verdict

logger = logging.getLogger(__name__)


def classify(result: RoundResult) -> str:
    if result.passed:
        return "passed"
    if result.keygen == KeygenOutcome.SKIPPED:
        return "skipped"
    if result.keygen == KeygenOutcome.TIMED_OUT:
        return "timed_out"
    outcomes = {p.outcome for p in result.proposals if not p.succeeded}
    if result.keygen == KeygenOutcome.COMPLETE and outcomes == {ProposalOutcome.TIMED_OUT}:
        return "timed_out"
    return "failed"


class ReportService:
    def aggregate(self, config: SessionConfig, rounds: List[RoundResult], aborted: Optional[str] = None) -> RunReport:
        """Builds the run report. ``aborted`` marks a run cut short by a lost node;
        such a run fails at the round that could not start."""
        counts = RunCounts()
        for result in rounds:
            kind = classify(result)
            setattr(counts, kind, getattr(counts, kind) + 1)

        first_failing = next((r.round for r in rounds if not r.passed), None)
        if aborted and first_failing is None:
            first_failing = len(rounds) + 1
        return RunReport(
            threshold=config.threshold,
            participants=config.n_nodes,
            proposals_per_round=config.proposals,
            rounds=rounds,
            verdict=Verdict.PASS if rounds and first_failing is None else Verdict.FAIL,
            first_failing_round=first_failing,
            counts=counts,
            aborted=aborted,
        )

    def summary(self, report: RunReport) -> str:
        c = report.counts
        lines = [
            f"t={report.threshold} n={report.participants} p={report.proposals_per_round}: "
            f"{len(report.rounds)} rounds, {c.passed} passed, {c.failed} failed, "
            f"{c.timed_out} timed out, {c.skipped} skipped",
        ]
        for r in report.rounds:
            if r.passed:
                continue
            detail = r.error or ", ".join(f"{p.proposal_id} {p.outcome.value}" for p in r.proposals if not p.succeeded)
            lines.append(f"  round {r.round}: keygen {r.keygen.value}{': ' + detail if detail else ''}")

        if report.aborted:
            lines.append(f"  aborted: {report.aborted}")
        if report.verdict == Verdict.PASS:
            lines.append("PASS")
        else:
            lines.append(f"FAIL (first failing round: {report.first_failing_round})")
        return "\n".join(lines)

    async def write(self, report: RunReport, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "w") as f:
            await f.write(report.model_dump_json(indent=2))
        logger.info(f"Wrote report to {path}")


report_service = ReportService()
