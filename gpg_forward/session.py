import os
import atexit
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from gpg_forward import agent
from gpg_forward.config import EXIT_OK, REMOTE_FAILURES, ForwardConfig, config
from gpg_forward.endpoint import select_port
from gpg_forward.errors import ForkUnsupported, ForwardError
from gpg_forward.relay import LocalRelay
from gpg_forward.remote_script import RemoteScript
from gpg_forward.tunnel import TunnelOutcome, TunnelSupervisor, classify_exit, resolve_target
from gpg_forward.utils import EventLog, log_debug, log_error, log_info
from gpg_forward.verify import verify_local_relay


@dataclass
class SessionState:
    host: str
    identity: Optional[str] = None
    fork: bool = False
    port: Optional[int] = None
    relay: Optional[LocalRelay] = None
    temp_paths: List[str] = field(default_factory=list)
    torn_down: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)

    def claim_teardown(self) -> bool:
        with self.lock:
            if self.torn_down:
                return False
            self.torn_down = True
            return True


class LocalTeardown:
    """Releases everything the local side of a session owns, at most once.

    The remote script runs its own cleanup independently; neither side waits
    for the other, so this must be safe before, after or during it.
    """

    def __init__(self, state: SessionState, events: Optional[EventLog] = None):
        self.state = state
        self.events = events or EventLog(None)

    def run(self) -> bool:
        if not self.state.claim_teardown():
            return False
        log_info("Cleaning up local resources")
        relay = self.state.relay
        if relay is not None:
            try:
                relay.stop()
            except Exception as exc:
                log_error(f"failed to stop local relay: {exc}")
        for path in self.state.temp_paths:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                log_error(f"failed to remove {path}: {exc}")
        self.events.event("local_teardown", port=self.state.port)
        log_info("Local GPG forwarding stopped")
        return True


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


@contextmanager
def termination_signals_as_interrupt() -> Iterator[None]:
    """Route SIGTERM and SIGHUP through the same path as Ctrl-C."""
    previous = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGTERM, getattr(signal, "SIGHUP", None)):
            if signum is not None:
                previous[signum] = signal.signal(signum, _raise_interrupt)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def report_outcome(outcome: TunnelOutcome, code: int, host: str) -> None:
    if outcome == TunnelOutcome.COMPLETED:
        log_info("SSH connection closed")
    elif outcome == TunnelOutcome.USER_INTERRUPTED:
        log_info("Forwarding stopped by user")
    elif outcome == TunnelOutcome.TERMINATED:
        log_info("SSH connection closed after local relay stopped")
    elif outcome == TunnelOutcome.TUNNEL_DROPPED:
        log_error(f"TunnelFailure: connection to {host} failed while the local relay was still running")
    elif outcome == TunnelOutcome.REMOTE_FAILED:
        log_error(f"remote session failed: {REMOTE_FAILURES[code]} (exit {code})")
    else:
        log_error(f"remote session exited with status {code}")


class ForwardSession:
    def __init__(self, host: str, cfg: ForwardConfig = config, fork: bool = False):
        self.cfg = cfg
        self.state = SessionState(host=host, identity=cfg.EXPORT_IDENTITY, fork=fork)
        self.events = EventLog.for_host(host, cfg.CACHE_DIR)
        self.teardown = LocalTeardown(self.state, self.events)

    def run(self) -> int:
        atexit.register(self.teardown.run)
        try:
            with termination_signals_as_interrupt():
                return self._run()
        except ForwardError as exc:
            log_error(str(exc))
            self.events.event("session_failed", kind=type(exc).__name__, error=str(exc))
            return exc.exit_code
        except KeyboardInterrupt:
            log_info("Interrupted")
            self.events.event("session_interrupted")
            return EXIT_OK
        finally:
            self.teardown.run()
            atexit.unregister(self.teardown.run)

    def _run(self) -> int:
        state = self.state
        if state.fork:
            raise ForkUnsupported("background mode (--fork) is not implemented")
        self.events.event("session_started", host=state.host, identity=state.identity)

        wsl = agent.is_wsl()
        agent.check_dependencies(agent.local_required_commands(wsl))
        endpoint = agent.find_agent(wsl=wsl)

        bundle = None
        if state.identity:
            bundle = agent.export_public_key(state.identity)
            log_info(f"GPG keys exported for {state.identity} locally")

        state.port = select_port(self.cfg.PORT)
        self.events.event("port_selected", port=state.port)

        log_info(f"Start local relay for the GPG agent on port {state.port}")
        state.relay = LocalRelay(endpoint, state.port, self.events)
        state.relay.start()

        if self.cfg.VERIFY_LOCAL:
            verify_local_relay(state.port)
            log_info("Local GPG agent answers through the relay")

        script = RemoteScript(port=state.port, host=state.host, key_bundle=bundle, identity=state.identity)
        local_script = script.write_local()
        state.temp_paths.append(local_script)
        log_debug(f"remote script written to {local_script}")

        tunnel = TunnelSupervisor(resolve_target(state.host, self.cfg), state.port, self.events, self.cfg)
        code = tunnel.run(local_script, script.remote_path)

        outcome, final_code = classify_exit(code, state.relay.is_alive())
        self.events.event("session_finished", outcome=outcome.value, tunnel_exit=code, exit_code=final_code)
        report_outcome(outcome, code, state.host)
        return final_code
