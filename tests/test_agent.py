"""Tests for agent discovery and credential export."""

from unittest.mock import Mock, patch

import pytest

from gpg_forward import agent
from gpg_forward.errors import AgentNotFound, ExportFailed, MissingDependency, NoKeyFound


def _completed(returncode=0, stdout=b"", stderr=b""):
    result = Mock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


class TestExport:
    @patch("subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = _completed(stdout=b"-----BEGIN PGP PUBLIC KEY BLOCK-----\n")

        assert agent.export_public_key("alice@example.com").startswith(b"-----BEGIN")
        mock_run.assert_called_once_with(
            ["gpg", "--export", "--armor", "alice@example.com"], capture_output=True
        )

    @patch("subprocess.run")
    def test_gpg_failure(self, mock_run):
        mock_run.return_value = _completed(returncode=2, stderr=b"gpg: error")
        with pytest.raises(ExportFailed):
            agent.export_public_key("alice@example.com")

    @patch("subprocess.run")
    def test_empty_export_means_no_key(self, mock_run):
        mock_run.return_value = _completed(stdout=b"\n")
        with pytest.raises(NoKeyFound):
            agent.export_public_key("nobody@example.com")


class TestDiscovery:
    def test_windows_agent_file_found_case_insensitively(self, tmp_path):
        base = tmp_path / "alice" / "gnupg"
        base.mkdir(parents=True)
        (base / "s.gpg-agent").write_text("12345\nnonce")

        found = agent.find_windows_agent_file("alice", str(tmp_path / "{user}" / "gnupg"))

        assert found == str(base / "s.gpg-agent")

    def test_windows_agent_file_missing(self, tmp_path):
        assert agent.find_windows_agent_file("alice", str(tmp_path / "{user}")) is None

    @patch("gpg_forward.agent.to_windows_path", return_value="C:\\Users\\alice\\S.gpg-agent")
    @patch("gpg_forward.agent.find_windows_agent_file", return_value="/mnt/c/Users/alice/S.gpg-agent")
    def test_wsl_endpoint(self, _find, _convert):
        endpoint = agent.find_agent(user="alice", wsl=True)
        assert endpoint.is_windows
        assert endpoint.windows_path == "C:\\Users\\alice\\S.gpg-agent"

    @patch("gpg_forward.agent.find_windows_agent_file", return_value=None)
    def test_wsl_agent_not_running(self, _find):
        with pytest.raises(AgentNotFound):
            agent.find_agent(user="alice", wsl=True)

    @patch("subprocess.run")
    def test_native_socket_from_gpgconf(self, mock_run, tmp_path):
        sock = tmp_path / "S.gpg-agent"
        sock.write_text("")
        mock_run.return_value = _completed(stdout=f"{sock}\n")

        endpoint = agent.find_agent(wsl=False)

        assert endpoint.path == str(sock)
        assert not endpoint.is_windows

    @patch("subprocess.run", side_effect=FileNotFoundError("gpgconf"))
    def test_native_without_gpgconf(self, _run):
        with pytest.raises(AgentNotFound):
            agent.find_agent(wsl=False)


class TestDependencies:
    @patch("shutil.which", return_value=None)
    def test_missing_command(self, _which):
        with pytest.raises(MissingDependency) as excinfo:
            agent.check_dependencies(["socat"])
        assert "socat" in str(excinfo.value)

    def test_wsl_needs_npiperelay(self):
        assert "npiperelay.exe" in agent.local_required_commands(wsl=True)
        assert "npiperelay.exe" not in agent.local_required_commands(wsl=False)

    @patch("subprocess.run")
    def test_wslpath_failure(self, mock_run):
        mock_run.return_value = _completed(returncode=1, stdout="", stderr="bad path")
        with pytest.raises(AgentNotFound):
            agent.to_windows_path("/nowhere")
