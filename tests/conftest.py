import random
import socket
import stat
import sys
import textwrap

import pytest

from orchestrator.config import SessionConfig, settings

# Stand-in for the DKG node binary: listens on its p2p port and answers the
# JSON-RPC methods the orchestrator uses with "everything succeeded". MODE
# switches on one misbehaviour.
STAND_IN_NODE = textwrap.dedent("""
    import json
    import os
    import signal
    import socket
    import sys
    import time
    from http.server import BaseHTTPRequestHandler, HTTPServer

    def arg(name):
        return int(sys.argv[sys.argv.index(name) + 1])

    MODE = "{mode}"
    FOLLOWER = "--bootnodes" in sys.argv

    if FOLLOWER and MODE == "fail_followers":
        sys.exit(7)
    if MODE == "ignore_term":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    p2p = socket.socket()
    p2p.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    p2p.bind(("127.0.0.1", arg("--port")))
    p2p.listen()

    RESULTS = {{
        "system_health": {{"peers": 0, "isSyncing": False}},
        "dkg_startSession": {{"session_id": 1}},
        "dkg_sessionStatus": {{"status": "complete"}},
        "dkg_submitProposal": None,
        "dkg_proposalStatus": {{"status": "signed", "signature": "00"}},
    }}

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            body = json.loads(self.rfile.read(int(self.headers["Content-Length"])))
            print("rpc", body["method"], flush=True)
            if MODE == "followers_die" and body["method"] == "dkg_proposalStatus":
                time.sleep(0.5)
            reply = json.dumps({{"jsonrpc": "2.0", "id": body["id"], "result": RESULTS[body["method"]]}}).encode()
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(reply)))
            self.end_headers()
            self.wfile.write(reply)
            if FOLLOWER and MODE == "followers_die" and body["method"] == "dkg_sessionStatus":
                os._exit(5)

        def log_message(self, *args):
            pass

    print("node up", sys.argv[1:], flush=True)
    HTTPServer(("127.0.0.1", arg("--rpc-port")), Handler).serve_forever()
""")


def _write_node(path, mode="normal"):
    path.write_text(f"#!{sys.executable}\n" + STAND_IN_NODE.format(mode=mode))
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


def _ports_bindable(ports):
    for port in ports:
        with socket.socket() as s:
            try:
                s.bind(("127.0.0.1", port))
            except OSError:
                return False
    return True


def pick_base_port(n_nodes):
    for _ in range(50):
        base = random.randint(20000, 40000)
        ports = [base + i for i in range(n_nodes)]
        ports += [base + settings.RPC_PORT_OFFSET + i for i in range(n_nodes)]
        if _ports_bindable(ports):
            return base
    raise RuntimeError("no free port range found")


@pytest.fixture
def stand_in_node(tmp_path):
    return _write_node(tmp_path / "fake-dkg-node")


@pytest.fixture
def failing_followers_node(tmp_path):
    return _write_node(tmp_path / "fake-dkg-node-broken", mode="fail_followers")


@pytest.fixture
def stubborn_node(tmp_path):
    """Ignores SIGTERM, so only SIGKILL stops it."""
    return _write_node(tmp_path / "fake-dkg-node-stubborn", mode="ignore_term")


@pytest.fixture
def dying_followers_node(tmp_path):
    """Followers exit right after reporting keygen complete; the seed signs slowly."""
    return _write_node(tmp_path / "fake-dkg-node-dying", mode="followers_die")


@pytest.fixture
def make_config(tmp_path):
    def factory(**overrides):
        n_nodes = overrides.get("n_nodes", 3)
        values = dict(
            tmp=tmp_path / "run",
            threshold=2,
            n_nodes=n_nodes,
            bind=f"127.0.0.1:{pick_base_port(n_nodes + overrides.get('extra_nodes', 0))}",
            n_tests=1,
            proposals=1,
            startup_timeout=15.0,
            keygen_timeout=0.3,
            proposal_timeout=0.3,
            poll_interval=0.01,
        )
        values.update(overrides)
        return SessionConfig(**values).validate()
    return factory
