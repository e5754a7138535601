import os
import sys
import time
import enum
import shlex
import shutil
import select
import socket
import threading
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional, Tuple
import paramiko

from gpg_forward.config import (
    CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, BUFFER_SIZE, POLL_INTERVAL, INTERRUPT_GRACE, FORWARD_JOIN_TIMEOUT,
    SWEEP_TIMEOUT, LOCAL_BIND_HOST, REMOTE_BIND_HOST, EXIT_OK, EXIT_INTERRUPTED,
    EXIT_TRANSPORT_FAILURE, REMOTE_FAILURES, ForwardConfig, config
)
from gpg_forward.remote_script import sweep_command
from gpg_forward.utils import EventLog, log_debug, log_error, log_info


class TunnelState(enum.Enum):
    CONNECTING = "connecting"
    ESTABLISHED = "established"
    RUNNING = "running"
    FINISHED = "finished"


class TunnelOutcome(enum.Enum):
    COMPLETED = "completed"
    USER_INTERRUPTED = "user_interrupted"
    TERMINATED = "terminated"
    TUNNEL_DROPPED = "tunnel_dropped"
    REMOTE_FAILED = "remote_failed"
    REMOTE_EXITED_OTHER = "remote_exited_other"


def classify_exit(code: int, relay_alive: bool) -> Tuple[TunnelOutcome, int]:
    """Map the tunnel's exit status to an outcome and the process exit code.

    A transport failure alone cannot tell a dropped network from an
    intentional shutdown; the local relay is the tie-breaker. If it is
    still running nobody asked the session to end, so the drop is real.
    """
    if code == EXIT_OK:
        return TunnelOutcome.COMPLETED, EXIT_OK
    if code == EXIT_INTERRUPTED:
        return TunnelOutcome.USER_INTERRUPTED, EXIT_OK
    if code == EXIT_TRANSPORT_FAILURE:
        if relay_alive:
            return TunnelOutcome.TUNNEL_DROPPED, EXIT_TRANSPORT_FAILURE
        return TunnelOutcome.TERMINATED, EXIT_OK
    if code in REMOTE_FAILURES:
        return TunnelOutcome.REMOTE_FAILED, code
    return TunnelOutcome.REMOTE_EXITED_OTHER, code


@dataclass
class RemoteTarget:
    alias: str
    hostname: str
    port: int = 22
    username: Optional[str] = None
    key_filenames: List[str] = field(default_factory=list)
    proxy_command: Optional[str] = None


def resolve_target(host: str, cfg: ForwardConfig = config) -> RemoteTarget:
    user = None
    alias = host
    if "@" in host:
        user, alias = host.rsplit("@", 1)

    options = {}
    if cfg.SSH_CONFIG_PATH and os.path.isfile(cfg.SSH_CONFIG_PATH):
        options = paramiko.SSHConfig.from_path(cfg.SSH_CONFIG_PATH).lookup(alias)

    if cfg.SSH_KEY_PATH:
        keys = [cfg.SSH_KEY_PATH]
    else:
        keys = [os.path.expanduser(path) for path in options.get("identityfile", [])]

    return RemoteTarget(
        alias=alias,
        hostname=options.get("hostname", alias),
        port=cfg.SSH_PORT or int(options.get("port", 22)),
        username=user or cfg.SSH_USER or options.get("user"),
        key_filenames=keys,
        proxy_command=options.get("proxycommand"),
    )


class TunnelSupervisor:
    def __init__(
        self,
        target: RemoteTarget,
        port: int,
        events: Optional[EventLog] = None,
        cfg: ForwardConfig = config,
        output: Optional[BinaryIO] = None,
    ):
        self.target = target
        self.port = port
        self.events = events or EventLog(None)
        self.cfg = cfg
        self.output = output if output is not None else sys.stdout.buffer

        self.client: Optional[paramiko.SSHClient] = None
        self.channel: Optional[paramiko.Channel] = None
        self.state = TunnelState.CONNECTING
        self.reached_remote = False
        self.forward_threads: List[threading.Thread] = []

    def _set_state(self, state: TunnelState) -> None:
        self.state = state
        self.events.event("tunnel_state", state=state.value)

    def _open_client(self, timeout: float = CONNECT_TIMEOUT) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if self.cfg.SSH_VERIFY_HOST_KEY:
            client.load_system_host_keys()
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs = {
            "hostname": self.target.hostname,
            "port": self.target.port,
            "username": self.target.username,
            "timeout": timeout,
            "allow_agent": True,
            "look_for_keys": True,
        }
        if self.target.key_filenames:
            connect_kwargs["key_filename"] = self.target.key_filenames
            if self.cfg.SSH_KEY_PASSPHRASE:
                connect_kwargs["passphrase"] = self.cfg.SSH_KEY_PASSPHRASE
        if self.target.proxy_command:
            connect_kwargs["sock"] = paramiko.ProxyCommand(self.target.proxy_command)

        try:
            client.connect(**connect_kwargs)
        except Exception:
            client.close()
            raise
        return client

    @property
    def transport(self) -> Optional[paramiko.Transport]:
        return self.client.get_transport() if self.client else None

    def _transport_active(self) -> bool:
        transport = self.transport
        return bool(transport and transport.is_active())

    def connect(self) -> None:
        self._set_state(TunnelState.CONNECTING)
        log_info(f"Connect to {self.target.alias} and setup remote forwarding")
        self.client = self._open_client()
        self.reached_remote = True
        transport = self.client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        self.events.event("connected", host=self.target.hostname, ssh_port=self.target.port)

    def stage(self, local_path: str, remote_path: str) -> None:
        sftp = self.client.open_sftp()
        try:
            sftp.put(local_path, remote_path)
            sftp.chmod(remote_path, 0o700)
        finally:
            sftp.close()
        self.events.event("script_staged", remote_path=remote_path)

    def open_forward(self) -> None:
        self.transport.request_port_forward(REMOTE_BIND_HOST, self.port, handler=self._on_forward)
        self.events.event("forward_requested", bind=REMOTE_BIND_HOST, port=self.port)

    def _on_forward(self, channel: paramiko.Channel, origin: Tuple[str, int], server: Tuple[str, int]) -> None:
        thread = threading.Thread(target=self._pump, args=(channel, origin), daemon=True)
        self.forward_threads.append(thread)
        thread.start()

    def _pump(self, channel: paramiko.Channel, origin: Tuple[str, int]) -> None:
        try:
            sock = socket.create_connection((LOCAL_BIND_HOST, self.port), timeout=CONNECT_TIMEOUT)
        except OSError as exc:
            log_error(f"forwarded connection could not reach local relay on port {self.port}: {exc}")
            channel.close()
            return

        sock.settimeout(None)
        self.events.event("forward_opened", origin=f"{origin[0]}:{origin[1]}")
        try:
            while True:
                readable, _, _ = select.select([sock, channel], [], [], 1.0)
                if sock in readable:
                    data = sock.recv(BUFFER_SIZE)
                    if not data:
                        break
                    channel.sendall(data)
                if channel in readable:
                    data = channel.recv(BUFFER_SIZE)
                    if not data:
                        break
                    sock.sendall(data)
        except (OSError, paramiko.SSHException) as exc:
            log_debug(f"forwarded connection closed with error: {exc}")
        finally:
            channel.close()
            sock.close()
            self.events.event("forward_closed", origin=f"{origin[0]}:{origin[1]}")

    def _emit(self, data: bytes) -> None:
        self.output.write(data)
        self.output.flush()

    def _drain(self, channel: paramiko.Channel) -> None:
        while channel.recv_ready():
            self._emit(channel.recv(BUFFER_SIZE))
        while channel.recv_stderr_ready():
            self._emit(channel.recv_stderr(BUFFER_SIZE))

    def _wait_for_exit(self, channel: paramiko.Channel, deadline: Optional[float] = None) -> Optional[int]:
        while True:
            if channel.recv_ready() or channel.recv_stderr_ready():
                self._drain(channel)
                continue
            if channel.exit_status_ready():
                break
            if not self._transport_active():
                self.events.event("transport_lost")
                return EXIT_TRANSPORT_FAILURE
            if deadline is not None and time.time() >= deadline:
                return None
            time.sleep(POLL_INTERVAL)

        self._drain(channel)
        status = channel.recv_exit_status()
        # paramiko reports -1 when the channel closed without an exit status
        return status if status >= 0 else EXIT_TRANSPORT_FAILURE

    def _interrupt(self, channel: paramiko.Channel) -> None:
        self.events.event("interrupt_forwarded")
        try:
            if not channel.closed:
                channel.send(b"\x03")
            status = self._wait_for_exit(channel, deadline=time.time() + INTERRUPT_GRACE)
        except KeyboardInterrupt:
            log_info("Interrupted again, not waiting for remote cleanup")
            return
        except (OSError, paramiko.SSHException) as exc:
            log_debug(f"interrupt could not reach remote program: {exc}")
            return
        if status is None:
            log_info("Remote program did not exit after interrupt")
        self.events.event("remote_exit_after_interrupt", exit_status=status)

    def run_script(self, remote_path: str) -> int:
        channel = self.transport.open_session()
        self.channel = channel
        columns, rows = shutil.get_terminal_size()
        channel.get_pty(term=os.environ.get("TERM", "xterm"), width=columns, height=rows)
        channel.exec_command(shlex.quote(remote_path))
        self._set_state(TunnelState.RUNNING)
        try:
            status = self._wait_for_exit(channel)
        except KeyboardInterrupt:
            self._interrupt(channel)
            return EXIT_INTERRUPTED
        self.events.event("remote_exit", exit_status=status)
        return status

    def run(self, local_script: str, remote_path: str) -> int:
        """Blocks until the remote program ends; returns its exit status.

        130 means the user interrupted, 255 a transport-level failure.
        """
        try:
            self.connect()
            self.stage(local_script, remote_path)
            self.open_forward()
            self._set_state(TunnelState.ESTABLISHED)
            return self.run_script(remote_path)
        except KeyboardInterrupt:
            self.events.event("interrupted_before_remote_start", state=self.state.value)
            return EXIT_INTERRUPTED
        except (paramiko.SSHException, OSError) as exc:
            log_error(f"SSH connection to {self.target.alias} failed: {exc}")
            self.events.event("tunnel_failed", state=self.state.value, error=str(exc))
            return EXIT_TRANSPORT_FAILURE
        finally:
            self.close()
            self._set_state(TunnelState.FINISHED)
            if self.reached_remote:
                self.sweep_remote()

    def sweep_remote(self) -> None:
        """Best-effort remote cleanup for when the script's own trap never ran."""
        client = None
        try:
            client = self._open_client(timeout=SWEEP_TIMEOUT)
            _stdin, stdout, _stderr = client.exec_command(sweep_command(self.port), timeout=SWEEP_TIMEOUT)
            status = stdout.channel.recv_exit_status()
            self.events.event("remote_sweep", exit_status=status)
        except (paramiko.SSHException, OSError) as exc:
            log_debug(f"remote sweep skipped: {exc}")
            self.events.event("remote_sweep_failed", error=str(exc))
        finally:
            if client:
                client.close()

    def close(self) -> None:
        try:
            if self.channel:
                self.channel.close()
        except Exception as exc:
            log_debug(f"channel close failed: {exc}")
        self.channel = None

        try:
            if self.client:
                self.client.close()
        except Exception as exc:
            log_debug(f"client close failed: {exc}")
        self.client = None

        # Closing the client closes every forwarded channel, so the pumps end on their own.
        for thread in self.forward_threads:
            thread.join(timeout=FORWARD_JOIN_TIMEOUT)
        self.forward_threads = []
