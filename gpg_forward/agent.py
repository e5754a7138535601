import os
import getpass
import platform
import shutil
import subprocess
from dataclasses import dataclass
from typing import List, Optional
from gpg_forward.config import (
    AGENT_SOCKET_NAME, WINDOWS_GNUPG_DIR, LOCAL_REQUIRED_COMMANDS, WSL_REQUIRED_COMMANDS
)
from gpg_forward.errors import AgentNotFound, ExportFailed, MissingDependency, NoKeyFound
from gpg_forward.utils import log_debug


@dataclass
class AgentEndpoint:
    path: str
    # Set on WSL, where the agent is a Windows Assuan socket reached via npiperelay.
    windows_path: Optional[str] = None

    @property
    def is_windows(self) -> bool:
        return self.windows_path is not None


def is_wsl() -> bool:
    if os.environ.get("WSL_DISTRO_NAME"):
        return True
    return "microsoft" in platform.uname().release.lower()


def check_dependencies(commands: List[str]) -> None:
    missing = [cmd for cmd in commands if shutil.which(cmd) is None]
    if missing:
        raise MissingDependency(f"required command(s) not found: {', '.join(missing)}")


def local_required_commands(wsl: bool) -> List[str]:
    if wsl:
        return LOCAL_REQUIRED_COMMANDS + WSL_REQUIRED_COMMANDS
    return list(LOCAL_REQUIRED_COMMANDS)


def find_windows_agent_file(user: str, base_template: str = WINDOWS_GNUPG_DIR) -> Optional[str]:
    base = base_template.format(user=user)
    if not os.path.isdir(base):
        return None
    wanted = AGENT_SOCKET_NAME.lower()
    for root, _dirs, files in os.walk(base):
        for name in files:
            if name.lower() == wanted:
                return os.path.join(root, name)
    return None


def to_windows_path(path: str) -> str:
    result = subprocess.run(["wslpath", "-w", path], capture_output=True, text=True)
    if result.returncode != 0 or not result.stdout.strip():
        raise AgentNotFound(f"wslpath could not convert {path}: {result.stderr.strip()}")
    return result.stdout.strip()


def find_native_agent_socket() -> Optional[str]:
    try:
        result = subprocess.run(
            ["gpgconf", "--list-dirs", "agent-socket"], capture_output=True, text=True
        )
    except FileNotFoundError:
        return None
    path = result.stdout.strip()
    if result.returncode != 0 or not path or not os.path.exists(path):
        return None
    return path


def find_agent(user: Optional[str] = None, wsl: Optional[bool] = None) -> AgentEndpoint:
    wsl = is_wsl() if wsl is None else wsl
    if wsl:
        user = user or os.environ.get("USER") or getpass.getuser()
        path = find_windows_agent_file(user)
        if not path:
            raise AgentNotFound(
                f"could not find the GPG agent socket file under {WINDOWS_GNUPG_DIR.format(user=user)}; "
                "check that the GPG agent is running in Windows"
            )
        endpoint = AgentEndpoint(path=path, windows_path=to_windows_path(path))
    else:
        path = find_native_agent_socket()
        if not path:
            raise AgentNotFound("could not find the GPG agent socket; is gpg-agent running?")
        endpoint = AgentEndpoint(path=path)
    log_debug(f"agent endpoint: {endpoint}")
    return endpoint


def export_public_key(identity: str) -> bytes:
    try:
        result = subprocess.run(
            ["gpg", "--export", "--armor", identity], capture_output=True
        )
    except FileNotFoundError as exc:
        raise ExportFailed(f"failed to export public keys for {identity}: {exc}") from exc
    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        raise ExportFailed(f"failed to export public keys for {identity}: {stderr}")
    if not result.stdout.strip():
        raise NoKeyFound(f"no public keys found for {identity}")
    return result.stdout
