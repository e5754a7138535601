import os
import subprocess
import tempfile
import time
from typing import IO, List, Optional
import psutil

from gpg_forward.agent import AgentEndpoint
from gpg_forward.config import (
    LOCAL_BIND_HOST, RELAY_START_TRIES, RELAY_START_INTERVAL, RELAY_STOP_TIMEOUT
)
from gpg_forward.errors import BridgeBindFailure
from gpg_forward.utils import EventLog, is_port_bound, is_port_listening, log_debug, log_error


def listen_address(port: int) -> str:
    return f"TCP4-LISTEN:{port},bind={LOCAL_BIND_HOST},fork,reuseaddr"


def escape_windows_path(path: str) -> str:
    # socat unescapes the EXEC argument twice before npiperelay sees it.
    return path.replace("\\", "\\\\\\\\")


def build_command(endpoint: AgentEndpoint, port: int) -> List[str]:
    if endpoint.is_windows:
        target = f'EXEC:npiperelay.exe -ei -ep -a "{escape_windows_path(endpoint.windows_path)}"'
    else:
        target = f"UNIX-CONNECT:{endpoint.path}"
    return ["socat", listen_address(port), target]


def _is_stale_relay(cmdline: List[str], port: int) -> bool:
    if not cmdline or os.path.basename(cmdline[0]) != "socat":
        return False
    marker = f"TCP4-LISTEN:{port},"
    return any(arg.startswith(marker) for arg in cmdline[1:])


def sweep_stale_relays(port: int, timeout: float = RELAY_STOP_TIMEOUT) -> int:
    """Stop orphaned local relays listening on ``port``; returns how many were found."""
    own_pid = os.getpid()
    stale = []
    for proc in psutil.process_iter(["pid", "cmdline"]):
        try:
            if proc.info["pid"] == own_pid:
                continue
            if _is_stale_relay(proc.info.get("cmdline") or [], port):
                stale.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    for proc in stale:
        try:
            proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    _gone, alive = psutil.wait_procs(stale, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    if stale:
        log_debug(f"stopped {len(stale)} stale relay(s) on port {port}")
    return len(stale)


def listens_on(pid: int, port: int) -> bool:
    """Whether process ``pid`` holds a TCP listener on ``port``."""
    try:
        proc = psutil.Process(pid)
        if hasattr(proc, "net_connections"):
            connections = proc.net_connections(kind="tcp")
        else:
            connections = proc.connections(kind="tcp")
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return is_port_listening(port)
    return any(
        conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port
        for conn in connections
    )


class LocalRelay:
    def __init__(self, endpoint: AgentEndpoint, port: int, events: Optional[EventLog] = None):
        self.endpoint = endpoint
        self.port = port
        self.events = events or EventLog(None)
        self.process: Optional[subprocess.Popen] = None
        # Unread pipe would stall socat once full; a file never does.
        self._stderr: Optional[IO[bytes]] = None

    @property
    def command(self) -> List[str]:
        return build_command(self.endpoint, self.port)

    def start(self) -> None:
        sweep_stale_relays(self.port)
        if is_port_bound(self.port):
            raise BridgeBindFailure(f"port {self.port} is already in use by another process")

        self._stderr = tempfile.TemporaryFile()
        self.process = subprocess.Popen(
            self.command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=self._stderr,
        )
        self.events.event("relay_started", pid=self.process.pid, command=self.command)
        self._wait_until_bound()

    def _wait_until_bound(self) -> None:
        for _ in range(RELAY_START_TRIES):
            if not self.is_alive():
                raise BridgeBindFailure(
                    f"local relay could not bind port {self.port}: {self._stderr_tail()}"
                )
            if listens_on(self.process.pid, self.port):
                self.events.event("relay_bound", port=self.port)
                return
            time.sleep(RELAY_START_INTERVAL)
        self.stop()
        raise BridgeBindFailure(f"local relay did not start listening on port {self.port}")

    def _stderr_tail(self) -> str:
        if self.process is None or self._stderr is None:
            return "no output"
        try:
            self._stderr.seek(0)
            data = self._stderr.read() or b""
        except (OSError, ValueError):
            return "no output"
        text = data.decode("utf-8", errors="replace").strip()
        return text[-500:] if text else f"exit status {self.process.returncode}"

    def is_alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def stop(self) -> None:
        proc = self.process
        if proc is None:
            return
        if proc.poll() is None:
            try:
                proc.terminate()
                proc.wait(timeout=RELAY_STOP_TIMEOUT)
            except subprocess.TimeoutExpired:
                try:
                    proc.kill()
                    proc.wait(timeout=RELAY_STOP_TIMEOUT)
                except Exception as exc:
                    log_error(f"failed to kill local relay {proc.pid}: {exc}")
            self.events.event("relay_stopped", pid=proc.pid, returncode=proc.returncode)
        if self._stderr is not None:
            self._stderr.close()
            self._stderr = None
