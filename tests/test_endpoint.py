"""Tests for transport endpoint selection."""

import socket

import pytest

from gpg_forward.config import DYNAMIC_PORT_MIN, DYNAMIC_PORT_MAX
from gpg_forward.endpoint import parse_explicit_port, pick_free_port, select_port
from gpg_forward.errors import InvalidEndpoint, SelectionFailure
from gpg_forward.utils import is_port_bound


class TestExplicitPort:
    def test_valid_port(self):
        assert select_port("12345") == 12345

    def test_surrounding_whitespace_is_ignored(self):
        assert parse_explicit_port(" 8000 ") == 8000

    @pytest.mark.parametrize("value", ["", "abc", "-1", "12.5", "0x10", "12345a", "0", "65536"])
    def test_invalid_values(self, value):
        with pytest.raises(InvalidEndpoint):
            select_port(value)

    def test_explicit_port_is_not_checked(self):
        def is_bound(port):
            raise AssertionError("explicit ports must not be checked")

        assert select_port("8000", is_bound=is_bound) == 8000


class TestAutoPort:
    def test_returns_first_free_port_after_many_busy(self):
        draws = iter(list(range(50000, 51000)) + [60001])
        busy = set(range(50000, 51000))

        port = pick_free_port(is_bound=lambda p: p in busy, draw=lambda low, high: next(draws))

        assert port == 60001

    def test_draws_from_dynamic_range(self):
        seen = []

        def draw(low, high):
            seen.append((low, high))
            return 55555

        assert pick_free_port(is_bound=lambda p: False, draw=draw) == 55555
        assert seen == [(DYNAMIC_PORT_MIN, DYNAMIC_PORT_MAX)]

    def test_gives_up_after_ceiling(self):
        with pytest.raises(SelectionFailure):
            pick_free_port(is_bound=lambda p: True, max_attempts=25)

    def test_auto_is_case_insensitive(self):
        port = select_port("AUTO", is_bound=lambda p: False)
        assert DYNAMIC_PORT_MIN <= port <= DYNAMIC_PORT_MAX


class TestPortCheck:
    def test_listener_makes_port_bound(self, listening_port):
        assert is_port_bound(listening_port)

    def test_closed_listener_frees_port(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        port = sock.getsockname()[1]
        sock.close()

        assert not is_port_bound(port)
