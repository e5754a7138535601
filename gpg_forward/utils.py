import os
import re
import sys
import json
import errno
import socket
from datetime import datetime
from typing import Any, Dict, Optional
from gpg_forward.config import LOCAL_BIND_HOST, config

LOG_PREFIX = "[gpg-forward]"


def log_error(message: str) -> None:
    print(f"{LOG_PREFIX} ERROR: {message}", file=sys.stderr, flush=True)


def log_info(message: str) -> None:
    print(f"{LOG_PREFIX} {message}", file=sys.stderr, flush=True)


def log_debug(message: str) -> None:
    if config.VERBOSE:
        print(f"{LOG_PREFIX} debug: {message}", file=sys.stderr, flush=True)


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"


def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")


def make_cache_dirs(cache_root: str) -> Dict[str, str]:
    sessions_dir = os.path.join(cache_root, "sessions")
    os.makedirs(sessions_dir, exist_ok=True)
    return {
        "cache_root": cache_root,
        "sessions_dir": sessions_dir,
    }


class EventLog:
    """Append-only JSON-lines record of one forwarding session."""

    def __init__(self, path: Optional[str]):
        self.path = path

    @classmethod
    def for_host(cls, host: str, cache_root: str) -> "EventLog":
        try:
            dirs = make_cache_dirs(cache_root)
        except OSError as exc:
            log_error(f"session log disabled ({cache_root}): {exc}")
            return cls(None)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"{safe_name(host)}__{stamp}__{os.getpid()}.log"
        return cls(os.path.join(dirs["sessions_dir"], filename))

    def write(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.path:
            return
        data = {"ts": iso_now(), "dir": direction}
        data.update(payload)
        json_line(self.path, data)

    def event(self, name: str, **fields: Any) -> None:
        log_debug(f"{name} {fields}" if fields else name)
        payload: Dict[str, Any] = {"event": name}
        payload.update(fields)
        self.write("SYS", payload)


def is_port_bound(port: int, host: str = LOCAL_BIND_HOST) -> bool:
    # Binding is the only portable way to ask whether a listener owns the port.
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
    except OSError as exc:
        if exc.errno in (errno.EADDRINUSE, errno.EACCES):
            return True
        raise
    finally:
        sock.close()
    return False


def is_port_listening(port: int, host: str = LOCAL_BIND_HOST, timeout: float = 1.0) -> bool:
    """Connect-only check; unlike ``is_port_bound`` it never holds the port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False
