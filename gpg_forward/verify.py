import socket
import time
from typing import Callable, List
from gpg_forward.config import (
    AGENT_QUERY_TIMEOUT, AGENT_SUCCESS_TOKEN, BUFFER_SIZE, LOCAL_BIND_HOST,
    SOCKET_WAIT_TRIES, SOCKET_WAIT_INTERVAL
)
from gpg_forward.errors import VerificationFailure
from gpg_forward.utils import is_port_listening, log_debug


def wait_for(
    ready: Callable[[], bool],
    tries: int = SOCKET_WAIT_TRIES,
    interval: float = SOCKET_WAIT_INTERVAL,
) -> bool:
    for attempt in range(1, tries + 1):
        if ready():
            return True
        if attempt < tries:
            time.sleep(interval)
    return False


def _read_line(sock: socket.socket, pending: bytearray) -> str:
    while b"\n" not in pending:
        chunk = sock.recv(BUFFER_SIZE)
        if not chunk:
            raise VerificationFailure("agent closed the connection before answering")
        pending.extend(chunk)
    line, _, rest = bytes(pending).partition(b"\n")
    pending[:] = rest
    return line.decode("utf-8", errors="replace").rstrip("\r")


def _is_final(line: str) -> bool:
    return line == AGENT_SUCCESS_TOKEN or line.startswith(AGENT_SUCCESS_TOKEN + " ") or line.startswith("ERR")


def query_agent_version(port: int, host: str = LOCAL_BIND_HOST, timeout: float = AGENT_QUERY_TIMEOUT) -> List[str]:
    """Send ``GETINFO version`` through the relay and return the agent's reply lines."""
    pending = bytearray()
    try:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            greeting = _read_line(sock, pending)
            if not greeting.startswith(AGENT_SUCCESS_TOKEN):
                raise VerificationFailure(f"unexpected agent greeting: {greeting!r}")
            sock.sendall(b"GETINFO version\n")
            lines = []
            while True:
                line = _read_line(sock, pending)
                lines.append(line)
                if _is_final(line):
                    break
            return lines
    except OSError as exc:
        raise VerificationFailure(f"agent query through port {port} failed: {exc}") from exc


def verify_local_relay(port: int, tries: int = SOCKET_WAIT_TRIES, interval: float = SOCKET_WAIT_INTERVAL) -> str:
    if not wait_for(lambda: is_port_listening(port), tries=tries, interval=interval):
        raise VerificationFailure(f"local relay on port {port} not ready after {tries} attempts")
    lines = query_agent_version(port)
    if not any(_is_final(line) and line.startswith(AGENT_SUCCESS_TOKEN) for line in lines):
        raise VerificationFailure(f"GPG agent connection could not be verified: {' | '.join(lines)}")
    version = next((line[2:] for line in lines if line.startswith("D ")), "")
    log_debug(f"local agent answered through port {port}: version={version or 'unknown'}")
    return version
