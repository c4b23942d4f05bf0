"""Tests for executor module."""

import os
import threading
from unittest import mock

import paramiko
import pytest

from provisioner.errors import CommandFailed
from provisioner.executor import Executor, SshInfo


def test_run_local_returns_stripped_stdout():
    assert Executor().run("sh", ["-c", "echo hello"]) == "hello"


def test_run_local_merges_env():
    output = Executor().run("sh", ["-c", 'echo "$PROVISIONER_TEST_VAR $HOME"'], env={"PROVISIONER_TEST_VAR": "bar"})

    assert output == f"bar {os.environ.get('HOME', '')}".strip()


def test_run_local_cwd(tmp_path):
    output = Executor().run("pwd", cwd=str(tmp_path))

    assert os.path.realpath(output) == os.path.realpath(str(tmp_path))


def test_run_local_failure():
    with pytest.raises(CommandFailed) as exc:
        Executor().run("sh", ["-c", "echo partial; echo oops >&2; exit 3"])

    assert exc.value.returncode == 3
    assert exc.value.stderr == "oops"
    assert "Command failed with code 3" in str(exc.value)


def test_run_local_missing_executable():
    with pytest.raises(CommandFailed) as exc:
        Executor().run("provisioner-no-such-binary")

    assert exc.value.returncode == 127


def test_run_local_stream(capsys):
    output = Executor().run("sh", ["-c", "echo line1; echo line2"], stream=True)

    assert output == "line1\nline2"
    assert capsys.readouterr().out == "line1\nline2\n"


def test_ssh_info_accepts_private_key_alias():
    info = SshInfo.model_validate({"host": "build", "username": "root", "privateKey": "~/.ssh/id_ed25519"})

    assert info.private_key == "~/.ssh/id_ed25519"
    assert info.port == 22


def test_run_ssh(mock_ssh):
    """Test remote runs connect once, set a keepalive and pass env inline."""
    executor = Executor(ssh=SshInfo(host="build", username="root", private_key="~/.ssh/id_ed25519", port=2222))

    output = executor.run("packer", ["build", "/tmp/packer_debian"], env={"PKR_VAR_id": "301", "PKR_VAR_note": "a b"})

    assert output == "command output"
    mock_ssh.set_missing_host_key_policy.assert_called_once()
    mock_ssh.connect.assert_called_once_with(
        hostname="build",
        port=2222,
        username="root",
        timeout=10,
        key_filename=os.path.expanduser("~/.ssh/id_ed25519"),
    )
    mock_ssh.get_transport.return_value.set_keepalive.assert_called_once_with(60)
    mock_ssh.exec_command.assert_called_once_with("PKR_VAR_id=301 PKR_VAR_note='a b' packer build /tmp/packer_debian")


def test_run_ssh_cwd(mock_ssh):
    executor = Executor(ssh=SshInfo(host="build", username="root"))

    executor.run("packer", ["build", "."], cwd="/tmp/packer debian")

    mock_ssh.exec_command.assert_called_once_with("cd '/tmp/packer debian' && packer build .")
    assert "key_filename" not in mock_ssh.connect.call_args.kwargs


def test_run_ssh_reuses_connection(mock_ssh):
    with mock.patch("provisioner.executor.paramiko.SSHClient", return_value=mock_ssh) as ssh_class:
        executor = Executor(ssh=SshInfo(host="build", username="root"))
        executor.run("true")
        executor.run("true")

    ssh_class.assert_called_once()
    assert mock_ssh.exec_command.call_count == 2


def test_run_ssh_failure(mock_ssh):
    _, stdout, stderr = mock_ssh.exec_command.return_value
    stdout.channel.recv_exit_status.return_value = 2
    stderr.read.return_value.decode.return_value = "no such file\n"
    executor = Executor(ssh=SshInfo(host="build", username="root"))

    with pytest.raises(CommandFailed) as exc:
        executor.run("ls", ["/missing"])

    assert exc.value.returncode == 2
    assert exc.value.stderr == "no such file"


def test_run_ssh_reads_stderr_while_stdout_is_open(mock_ssh):
    """Test stderr is consumed before stdout reaches EOF."""
    _, stdout, stderr = mock_ssh.exec_command.return_value
    stderr_read = threading.Event()

    def read_stderr():
        stderr_read.set()
        return b"warning: slow mirror\n"

    def read_stdout():
        assert stderr_read.wait(timeout=5)
        return b"build finished\n"

    stderr.read.side_effect = read_stderr
    stdout.read.side_effect = read_stdout
    executor = Executor(ssh=SshInfo(host="build", username="root"))

    assert executor.run("packer", ["build", "."]) == "build finished"


def test_run_ssh_failure_reports_stderr_read_concurrently(mock_ssh):
    _, stdout, stderr = mock_ssh.exec_command.return_value
    stdout.channel.recv_exit_status.return_value = 1
    stderr.read.side_effect = lambda: b"error: template invalid\n"
    executor = Executor(ssh=SshInfo(host="build", username="root"))

    with pytest.raises(CommandFailed, match="template invalid"):
        executor.run("packer", ["validate", "."])


def test_run_ssh_connect_error(mock_ssh):
    mock_ssh.connect.side_effect = paramiko.SSHException("auth failed")
    executor = Executor(ssh=SshInfo(host="build", username="root"))

    with pytest.raises(CommandFailed, match="SSH to build failed"):
        executor.run("true")


def test_close(mock_ssh):
    with Executor(ssh=SshInfo(host="build", username="root")) as executor:
        executor.run("true")

    mock_ssh.close.assert_called_once()
    assert executor._client is None
