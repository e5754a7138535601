import random
import re
from typing import Callable, Optional
from gpg_forward.config import DYNAMIC_PORT_MIN, DYNAMIC_PORT_MAX, MAX_PORT, MAX_PORT_ATTEMPTS
from gpg_forward.errors import InvalidEndpoint, SelectionFailure
from gpg_forward.utils import is_port_bound, log_debug

AUTO = "auto"
_DIGITS = re.compile(r"^\d+$")


def parse_explicit_port(value: str) -> int:
    text = (value or "").strip()
    if not _DIGITS.match(text):
        raise InvalidEndpoint(f"invalid port '{value}': expected an integer or '{AUTO}'")
    port = int(text)
    if port < 1 or port > MAX_PORT:
        raise InvalidEndpoint(f"invalid port '{value}': must be between 1 and {MAX_PORT}")
    return port


def pick_free_port(
    is_bound: Callable[[int], bool] = is_port_bound,
    draw: Optional[Callable[[int, int], int]] = None,
    max_attempts: int = MAX_PORT_ATTEMPTS,
) -> int:
    draw = draw or random.randint
    for attempt in range(1, max_attempts + 1):
        port = draw(DYNAMIC_PORT_MIN, DYNAMIC_PORT_MAX)
        if not is_bound(port):
            log_debug(f"selected free port {port} after {attempt} attempt(s)")
            return port
    raise SelectionFailure(
        f"no free port found in {DYNAMIC_PORT_MIN}-{DYNAMIC_PORT_MAX} after {max_attempts} attempts"
    )


def select_port(request: str, is_bound: Callable[[int], bool] = is_port_bound) -> int:
    """Resolve ``--port`` into a transport endpoint.

    The returned port is only checked, not reserved. A listener may still grab
    it before the local relay binds; the relay start-up check reports that.
    """
    if (request or "").strip().lower() == AUTO:
        return pick_free_port(is_bound=is_bound)
    return parse_explicit_port(request)
