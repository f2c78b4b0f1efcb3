import asyncio
import logging
import secrets
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from orchestrator.config import SessionConfig, settings
from orchestrator.models.schemas import KeygenOutcome, NodeSpec, ProposalOutcome, ProposalResult, Role, RoundResult
from orchestrator.services.rpc_client import PROPOSAL_SIGNED, SESSION_COMPLETE, ClusterRpc
from orchestrator.utils.errors import (
    KeygenFailure,
    KeygenTimeout,
    ProposalSigningFailure,
    ProposalSigningTimeout,
    RpcError,
    RpcUnavailable,
)
from orchestrator.utils.exception_decorator import log_exceptions
from orchestrator.utils.logging_config import log_header

logger = logging.getLogger(__name__)


class RoundState(Enum):
    IDLE = "idle"
    AWAITING_KEYGEN = "awaiting_keygen"
    KEYGEN_COMPLETE = "keygen_complete"
    KEYGEN_TIMED_OUT = "keygen_timed_out"
    KEYGEN_FAILED = "keygen_failed"
    SUBMITTING_PROPOSALS = "submitting_proposals"
    AWAITING_SIGNATURES = "awaiting_signatures"
    ROUND_COMPLETE = "round_complete"


KEYGEN_STATES = {
    KeygenOutcome.COMPLETE: RoundState.KEYGEN_COMPLETE,
    KeygenOutcome.TIMED_OUT: RoundState.KEYGEN_TIMED_OUT,
    KeygenOutcome.FAILED: RoundState.KEYGEN_FAILED,
}


class SessionDriver:
    """Runs the configured number of keygen + signing rounds, strictly one after another.

    The driver only talks to the cluster through the RPC client. ``before_round`` is
    called with the round number before each keygen starts and may raise to abort the run;
    the rounds finished up to that point stay in ``results``.
    """

    def __init__(self, config: SessionConfig, rpc: ClusterRpc, nodes: List[NodeSpec],
                 before_round: Optional[Callable[[int], None]] = None):
        self._config = config
        self._rpc = rpc
        self._seed = nodes[0]
        self._authorities = [node for node in nodes if node.role == Role.AUTHORITY]
        self._before_round = before_round
        self.state = RoundState.IDLE
        self.history: List[Tuple[int, RoundState]] = []
        self.results: List[RoundResult] = []

    def _enter(self, round_no: int, state: RoundState):
        self.state = state
        self.history.append((round_no, state))
        logger.debug(f"Round {round_no}: {state.value}")

    @log_exceptions
    async def run(self) -> List[RoundResult]:
        total = self._config.n_tests
        results = self.results = []
        for round_no in range(1, total + 1):
            if self._before_round:
                self._before_round(round_no)
            result = await self._run_with_retries(round_no)
            results.append(result)

            if not result.passed and self._config.fail_fast:
                logger.warning(f"Round {round_no} failed and fail-fast is set, skipping rounds {round_no + 1}..{total}")
                results += [RoundResult(round=i, keygen=KeygenOutcome.SKIPPED, attempts=0)
                            for i in range(round_no + 1, total + 1)]
                break
        return results

    async def _run_with_retries(self, round_no: int) -> RoundResult:
        attempt = 1
        while True:
            result = await self.run_round(round_no, attempt)
            if result.passed or attempt > self._config.round_retries:
                return result
            logger.warning(f"Round {round_no} failed on attempt {attempt}, retrying")
            attempt += 1

    async def run_round(self, round_no: int, attempt: int = 1) -> RoundResult:
        log_header(f"ROUND {round_no}/{self._config.n_tests}")
        started = time.monotonic()
        error = None

        self._enter(round_no, RoundState.AWAITING_KEYGEN)
        try:
            await self._keygen(round_no)
            keygen = KeygenOutcome.COMPLETE
        except KeygenTimeout as e:
            keygen, error = KeygenOutcome.TIMED_OUT, str(e)
        except KeygenFailure as e:
            keygen, error = KeygenOutcome.FAILED, str(e)
        self._enter(round_no, KEYGEN_STATES[keygen])

        proposals = []
        if keygen == KeygenOutcome.COMPLETE:
            proposals = await self._sign_proposals(round_no)
        else:
            logger.error(f"Round {round_no}: keygen {keygen.value}: {error}")

        self._enter(round_no, RoundState.ROUND_COMPLETE)
        result = RoundResult(
            round=round_no,
            keygen=keygen,
            proposals=proposals,
            elapsed=round(time.monotonic() - started, 3),
            attempts=attempt,
            error=error,
        )
        signed = sum(p.succeeded for p in proposals)
        logger.info(f"Round {round_no} {'passed' if result.passed else 'FAILED'}: keygen {keygen.value}, "
                    f"{signed}/{len(proposals)} proposals signed in {result.elapsed:.1f}s")
        return result

    async def _keygen(self, round_no: int):
        t, n = self._config.threshold, self._config.n_nodes
        try:
            session_id = await self._rpc.start_session(self._seed, t, n)
        except (RpcError, RpcUnavailable) as e:
            raise KeygenFailure(f"could not start session: {e}") from e
        logger.info(f"Round {round_no}: keygen session {session_id} started ({t}-of-{n})")

        timeout = self._config.keygen_timeout
        try:
            await asyncio.wait_for(self._await_keygen(session_id), timeout)
        except asyncio.TimeoutError:
            raise KeygenTimeout(f"session {session_id} not complete after {timeout}s") from None

    async def _await_keygen(self, session_id):
        pending: Dict[str, NodeSpec] = {node.label: node for node in self._authorities}
        while pending:
            for label, node in list(pending.items()):
                try:
                    reply = await self._rpc.session_status(node, session_id)
                except RpcUnavailable as e:
                    logger.debug(f"{label} unreachable while polling session {session_id}: {e}")
                    continue
                except RpcError as e:
                    raise KeygenFailure(f"{label}: {e}") from e

                if reply.failed:
                    raise KeygenFailure(f"{label} reported: {reply.error or reply.status}")
                if reply.status == SESSION_COMPLETE:
                    del pending[label]
            if pending:
                await asyncio.sleep(self._config.poll_interval)

    async def _sign_proposals(self, round_no: int) -> List[ProposalResult]:
        self._enter(round_no, RoundState.SUBMITTING_PROPOSALS)
        submitted, rejected = await self._submit_proposals(round_no)

        self._enter(round_no, RoundState.AWAITING_SIGNATURES)
        signed = await asyncio.gather(*(self._await_signature(pid, pos, t0) for pid, pos, t0 in submitted))

        by_id = {result.proposal_id: result for result in list(signed) + rejected}
        return sorted(by_id.values(), key=lambda r: r.position)

    async def _submit_proposals(self, round_no: int):
        submitted = []
        rejected = []
        for position in range(self._config.proposals):
            proposal_id = f"r{round_no}-p{position}-{secrets.token_hex(4)}"
            payload = secrets.token_bytes(settings.PROPOSAL_PAYLOAD_BYTES)
            started = time.monotonic()
            try:
                await self._rpc.submit_proposal(self._seed, proposal_id, payload)
            except (RpcError, RpcUnavailable) as e:
                logger.error(f"Round {round_no}: submitting {proposal_id} failed: {e}")
                rejected.append(ProposalResult(
                    proposal_id=proposal_id,
                    position=position,
                    outcome=ProposalOutcome.FAILED,
                    elapsed=round(time.monotonic() - started, 3),
                    error=str(e),
                ))
                continue
            logger.info(f"Round {round_no}: submitted proposal {proposal_id}")
            submitted.append((proposal_id, position, started))
        return submitted, rejected

    async def _await_signature(self, proposal_id: str, position: int, started: float) -> ProposalResult:
        outcome, error = ProposalOutcome.SIGNED, None
        try:
            await self._wait_signed(proposal_id)
        except ProposalSigningTimeout as e:
            outcome, error = ProposalOutcome.TIMED_OUT, str(e)
        except ProposalSigningFailure as e:
            outcome, error = ProposalOutcome.FAILED, str(e)

        if error:
            logger.error(error)
        else:
            logger.info(f"Proposal {proposal_id} signed")
        return ProposalResult(
            proposal_id=proposal_id,
            position=position,
            outcome=outcome,
            elapsed=round(time.monotonic() - started, 3),
            error=error,
        )

    async def _wait_signed(self, proposal_id: str):
        timeout = self._config.proposal_timeout
        try:
            return await asyncio.wait_for(self._poll_signature(proposal_id), timeout)
        except asyncio.TimeoutError:
            raise ProposalSigningTimeout(proposal_id, f"not signed after {timeout}s") from None

    async def _poll_signature(self, proposal_id: str):
        while True:
            try:
                reply = await self._rpc.proposal_status(self._seed, proposal_id)
            except RpcUnavailable as e:
                logger.debug(f"Seed unreachable while polling {proposal_id}: {e}")
            except RpcError as e:
                raise ProposalSigningFailure(proposal_id, str(e)) from e
            else:
                if reply.failed:
                    raise ProposalSigningFailure(proposal_id, reply.error or reply.status)
                if reply.status == PROPOSAL_SIGNED:
                    return reply.signature
            await asyncio.sleep(self._config.poll_interval)
