import os
from typing import Optional

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
POLL_INTERVAL = 0.05

LOCAL_BIND_HOST = "127.0.0.1"
REMOTE_BIND_HOST = "localhost"

DYNAMIC_PORT_MIN = 49152
DYNAMIC_PORT_MAX = 65535
MAX_PORT = 65535
MAX_PORT_ATTEMPTS = 4096

SOCKET_WAIT_TRIES = 10
SOCKET_WAIT_INTERVAL = 0.5
RELAY_START_TRIES = 10
RELAY_START_INTERVAL = 0.2
RELAY_STOP_TIMEOUT = 5.0
INTERRUPT_GRACE = 5.0
FORWARD_JOIN_TIMEOUT = 1.0
SWEEP_TIMEOUT = 10.0
AGENT_QUERY_TIMEOUT = 5.0

AGENT_SOCKET_NAME = "S.gpg-agent"
AGENT_SUCCESS_TOKEN = "OK"
REMOTE_SCRIPT_DIR = "/tmp"
WINDOWS_GNUPG_DIR = "/mnt/c/Users/{user}/AppData/local/gnupg"

LOCAL_REQUIRED_COMMANDS = ["socat"]
WSL_REQUIRED_COMMANDS = ["npiperelay.exe", "wslpath"]
REMOTE_REQUIRED_COMMANDS = ["socat", "gpg", "gpg-connect-agent", "gpgconf", "base64", "pkill"]

# ========= Exit codes =========
EXIT_OK = 0
EXIT_PRECONDITION = 1
EXIT_INTERRUPTED = 130
EXIT_TRANSPORT_FAILURE = 255

# Exit codes of the generated remote program
REMOTE_EXIT_MISSING_DEPENDENCY = 2
REMOTE_EXIT_IMPORT_FAILED = 3
REMOTE_EXIT_BRIDGE_BIND = 4
REMOTE_EXIT_SOCKET_TIMEOUT = 5
REMOTE_EXIT_VERIFY_FAILED = 6

REMOTE_FAILURES = {
    REMOTE_EXIT_MISSING_DEPENDENCY: "missing dependency on remote host",
    REMOTE_EXIT_IMPORT_FAILED: "public key import could not be verified",
    REMOTE_EXIT_BRIDGE_BIND: "remote relay could not bind the agent socket",
    REMOTE_EXIT_SOCKET_TIMEOUT: "remote agent socket never appeared",
    REMOTE_EXIT_VERIFY_FAILED: "remote agent did not answer through the tunnel",
}


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


# ========= Runtime Configuration =========
class ForwardConfig:
    def __init__(self):
        self.SSH_USER: Optional[str] = None
        self.SSH_PORT: Optional[int] = None
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.SSH_CONFIG_PATH: str = os.path.expanduser("~/.ssh/config")
        self.PORT: str = "auto"
        self.EXPORT_IDENTITY: Optional[str] = None
        self.CACHE_DIR: str = os.path.expanduser("~/.cache/gpg-forward")
        self.VERIFY_LOCAL: bool = True
        self.VERBOSE: bool = False

    def load_from_env(self):
        self.SSH_USER = os.environ.get("SSH_USER", self.SSH_USER)
        ssh_port = os.environ.get("SSH_PORT")
        if ssh_port:
            self.SSH_PORT = int(ssh_port)
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)
        self.SSH_VERIFY_HOST_KEY = _env_bool("SSH_VERIFY_HOST_KEY", self.SSH_VERIFY_HOST_KEY)
        self.SSH_CONFIG_PATH = os.environ.get("SSH_CONFIG_PATH", self.SSH_CONFIG_PATH)
        self.PORT = os.environ.get("GPG_FORWARD_PORT", self.PORT)
        self.EXPORT_IDENTITY = os.environ.get("GPG_FORWARD_EXPORT", self.EXPORT_IDENTITY)
        self.CACHE_DIR = os.environ.get("GPG_FORWARD_CACHE_DIR", self.CACHE_DIR)
        self.VERIFY_LOCAL = _env_bool("GPG_FORWARD_VERIFY_LOCAL", self.VERIFY_LOCAL)

# Global instance
config = ForwardConfig()
