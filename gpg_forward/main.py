import sys
import argparse
from typing import List, NoReturn, Optional
from gpg_forward.config import EXIT_PRECONDITION, config
from gpg_forward.utils import log_error


class _ArgumentParser(argparse.ArgumentParser):
    # Usage errors share the precondition exit code instead of argparse's 2.
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        log_error(message)
        sys.exit(EXIT_PRECONDITION)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="gpg-forward",
        description="Forward the local GPG agent to a remote host over SSH",
    )
    parser.add_argument("host", help="Remote host ([user@]host or an ~/.ssh/config alias)")
    parser.add_argument("--export", metavar="IDENTITY", help="Export public keys for IDENTITY and import them remotely")
    parser.add_argument("--port", help="Tunnel port, an integer or 'auto' (overrides GPG_FORWARD_PORT env, default: auto)")
    parser.add_argument("--fork", action="store_true", help="Run in the background (reserved, not implemented)")
    parser.add_argument("--user", help="SSH username (overrides SSH_USER env)")
    parser.add_argument("--ssh-port", type=int, help="SSH port (overrides SSH_PORT env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SSH_KEY_PATH env)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--cache-dir", help="Directory for session logs (overrides GPG_FORWARD_CACHE_DIR env)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print debug output")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    from gpg_forward.session import ForwardSession

    # Pre-load from environment
    config.load_from_env()

    args = build_parser().parse_args(argv)

    # Apply args over env vars
    if args.export: config.EXPORT_IDENTITY = args.export
    if args.port: config.PORT = args.port
    if args.user: config.SSH_USER = args.user
    if args.ssh_port: config.SSH_PORT = args.ssh_port
    if args.key: config.SSH_KEY_PATH = args.key
    if args.cache_dir: config.CACHE_DIR = args.cache_dir
    if args.no_verify_host: config.SSH_VERIFY_HOST_KEY = False
    if args.verbose: config.VERBOSE = True

    return ForwardSession(args.host, config, fork=args.fork).run()


if __name__ == "__main__":
    sys.exit(main())
