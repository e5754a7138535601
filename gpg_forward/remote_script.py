import os
import base64
import shlex
import tempfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from jinja2 import Environment, FileSystemLoader, StrictUndefined

from gpg_forward.config import (
    AGENT_SOCKET_NAME, AGENT_SUCCESS_TOKEN, REMOTE_BIND_HOST, REMOTE_SCRIPT_DIR,
    REMOTE_REQUIRED_COMMANDS, SOCKET_WAIT_TRIES, SOCKET_WAIT_INTERVAL,
    REMOTE_EXIT_MISSING_DEPENDENCY, REMOTE_EXIT_IMPORT_FAILED, REMOTE_EXIT_BRIDGE_BIND,
    REMOTE_EXIT_SOCKET_TIMEOUT, REMOTE_EXIT_VERIFY_FAILED
)

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
TEMPLATE_NAME = "remote.sh.j2"

_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=False,
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    trim_blocks=True,
)
_env.filters["shquote"] = shlex.quote


def relay_pattern(port: int) -> str:
    """``pkill -f`` pattern matching only the remote relay bound to ``port``."""
    return f"socat UNIX-LISTEN:.*gnupg.*TCP:{REMOTE_BIND_HOST}:{port}$"


def remote_script_path(port: int, directory: str = REMOTE_SCRIPT_DIR) -> str:
    return f"{directory}/gpg-forward-remote-{port}.sh"


def sweep_command(port: int) -> str:
    return (
        f"pkill -f {shlex.quote(relay_pattern(port))} || true; "
        f"rm -f {shlex.quote(remote_script_path(port))}"
    )


def encode_key_payload(bundle: bytes) -> str:
    return base64.encodebytes(bundle).decode("ascii").strip()


@dataclass
class RemoteScript:
    port: int
    host: str
    key_bundle: Optional[bytes] = None
    identity: Optional[str] = None
    socket_name: str = AGENT_SOCKET_NAME
    # None keeps the per-user runtime dir, /run/user/<uid>/gnupg.
    socket_dir: Optional[str] = None
    max_tries: int = SOCKET_WAIT_TRIES
    retry_interval: float = SOCKET_WAIT_INTERVAL
    required_commands: List[str] = field(default_factory=lambda: list(REMOTE_REQUIRED_COMMANDS))

    def __post_init__(self):
        if self.key_bundle and not self.identity:
            raise ValueError("an exported key bundle needs the identity it was exported for")

    @property
    def remote_path(self) -> str:
        return remote_script_path(self.port)

    def context(self) -> Dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "socket_name": self.socket_name,
            "socket_dir": self.socket_dir or "",
            "relay_pattern": relay_pattern(self.port),
            "remote_host": REMOTE_BIND_HOST,
            "max_tries": self.max_tries,
            "retry_interval": self.retry_interval,
            "required_commands": self.required_commands,
            "key_payload": encode_key_payload(self.key_bundle) if self.key_bundle else "",
            "identity": self.identity or "",
            "success_token": AGENT_SUCCESS_TOKEN,
            "exit_codes": {
                "missing_dependency": REMOTE_EXIT_MISSING_DEPENDENCY,
                "import_failed": REMOTE_EXIT_IMPORT_FAILED,
                "bridge_bind": REMOTE_EXIT_BRIDGE_BIND,
                "socket_timeout": REMOTE_EXIT_SOCKET_TIMEOUT,
                "verify_failed": REMOTE_EXIT_VERIFY_FAILED,
            },
        }

    def render(self) -> str:
        return _env.get_template(TEMPLATE_NAME).render(**self.context())

    def write_local(self, directory: Optional[str] = None) -> str:
        fd, path = tempfile.mkstemp(prefix=f"gpg-forward-{self.port}-", suffix=".sh", dir=directory)
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
            handle.write(self.render())
        os.chmod(path, 0o700)
        return path
