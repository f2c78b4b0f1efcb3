class OrchestratorError(Exception):
    exit_code = 1


class ConfigError(OrchestratorError):
    exit_code = 2


class ProvisioningError(OrchestratorError):
    """Cluster could not be brought up or lost a node; aborts the whole run."""
    exit_code = 3


class PortInUse(ProvisioningError):
    def __init__(self, port: int, pid=None):
        self.port = port
        self.pid = pid
        owner = f" (pid {pid})" if pid else ""
        super().__init__(f"Port {port} has a running process{owner}")


class NodeSpawnFailure(ProvisioningError):
    def __init__(self, label: str, reason: str):
        self.label = label
        super().__init__(f"Failed to start node {label}: {reason}")


class NodeExited(ProvisioningError):
    def __init__(self, labels):
        self.labels = list(labels)
        super().__init__(f"Node(s) exited mid-run: {', '.join(self.labels)}")


class KeygenFailure(OrchestratorError):
    pass


class KeygenTimeout(KeygenFailure):
    pass


class ProposalSigningFailure(OrchestratorError):
    def __init__(self, proposal_id: str, reason: str):
        self.proposal_id = proposal_id
        super().__init__(f"Proposal {proposal_id}: {reason}")


class ProposalSigningTimeout(ProposalSigningFailure):
    pass


class TeardownError(OrchestratorError):
    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors))


class RpcError(OrchestratorError):
    def __init__(self, method: str, code, message: str):
        self.method = method
        self.code = code
        super().__init__(f"{method} failed ({code}): {message}")


class RpcUnavailable(OrchestratorError):
    pass
