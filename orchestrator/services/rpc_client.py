import itertools
import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ValidationError

from orchestrator.config import settings
from orchestrator.models.schemas import NodeSpec
from orchestrator.utils.errors import RpcError, RpcUnavailable

logger = logging.getLogger(__name__)


SESSION_COMPLETE = "complete"
PROPOSAL_SIGNED = "signed"
FAILED_STATES = {"failed", "error"}


class StatusReply(BaseModel):
    status: str
    error: Optional[str] = None
    signature: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status in FAILED_STATES or bool(self.error)


class ClusterRpc:
    """JSON-RPC client for the nodes' external RPC endpoints."""

    def __init__(self, timeout: float = settings.RPC_REQUEST_TIMEOUT, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._ids = itertools.count(1)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def call(self, node: NodeSpec, method: str, *params) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        try:
            response = await self._client.post(node.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RpcUnavailable(f"{method} on {node.label} ({node.rpc_url}): {e}") from e
        if not isinstance(body, dict):
            raise RpcError(method, None, f"unexpected response body {body!r}")

        if body.get("error"):
            error = body["error"]
            raise RpcError(method, error.get("code"), error.get("message", ""))
        logger.debug(f"{node.label} {method}{tuple(params)} -> {body.get('result')}")
        return body.get("result")

    async def _status(self, node: NodeSpec, method: str, *params) -> StatusReply:
        result = await self.call(node, method, *params)
        if isinstance(result, str):
            result = {"status": result}
        try:
            return StatusReply.model_validate(result)
        except ValidationError as e:
            raise RpcError(method, None, f"malformed status reply {result!r}") from e

    async def health(self, node: NodeSpec) -> Any:
        return await self.call(node, settings.RPC_HEALTH)

    async def start_session(self, node: NodeSpec, threshold: int, participants: int):
        result = await self.call(node, settings.RPC_START_SESSION, threshold, participants)
        if isinstance(result, dict):
            return result.get("session_id")
        return result

    async def session_status(self, node: NodeSpec, session_id) -> StatusReply:
        return await self._status(node, settings.RPC_SESSION_STATUS, session_id)

    async def submit_proposal(self, node: NodeSpec, proposal_id: str, payload: bytes) -> None:
        await self.call(node, settings.RPC_SUBMIT_PROPOSAL, proposal_id, payload.hex())

    async def proposal_status(self, node: NodeSpec, proposal_id: str) -> StatusReply:
        return await self._status(node, settings.RPC_PROPOSAL_STATUS, proposal_id)
