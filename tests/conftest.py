"""Shared pytest fixtures."""

import socket
import threading

import pytest

from gpg_forward.config import ForwardConfig


@pytest.fixture
def forward_config(tmp_path):
    """A config isolated from the environment and the user's home."""
    cfg = ForwardConfig()
    cfg.CACHE_DIR = str(tmp_path / "cache")
    cfg.SSH_CONFIG_PATH = str(tmp_path / "ssh_config")
    return cfg


@pytest.fixture
def listening_port():
    """Port held by an unrelated listener for the duration of a test."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


class FakeAgent:
    """Minimal Assuan server answering GETINFO version on loopback."""

    def __init__(self, reply=b"D 2.4.3\nOK\n"):
        self.reply = reply
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(4)
        self.port = self.sock.getsockname()[1]
        self.requests = []
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    def _serve(self):
        while True:
            try:
                conn, _ = self.sock.accept()
            except OSError:
                return
            with conn:
                try:
                    conn.sendall(b"OK Pleased to meet you\n")
                    data = b""
                    while b"\n" not in data:
                        chunk = conn.recv(1024)
                        if not chunk:
                            break
                        data += chunk
                    # readiness checks connect and hang up without a request
                    if not data.strip():
                        continue
                    self.requests.append(data.strip())
                    conn.sendall(self.reply)
                except OSError:
                    continue

    def close(self):
        self.sock.close()


@pytest.fixture
def fake_agent():
    agent = FakeAgent()
    yield agent
    agent.close()


@pytest.fixture
def failing_agent():
    agent = FakeAgent(reply=b"ERR 67109139 Unknown IPC command\n")
    yield agent
    agent.close()
