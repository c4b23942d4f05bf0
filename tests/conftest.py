"""Shared test fixtures and configuration for provisioner tests."""

import copy
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from unittest import mock

import pytest

from provisioner.errors import CommandFailed
from provisioner.inventory import Inventory, validate_inventory


BASE_INVENTORY: Dict[str, Any] = {
    "proxmox": {
        "endpoint": "pve.lan:8006",
        "api_user": "root@pam!provisioner",
        "api_token": "00000000-1111-2222-3333-444444444444",
        "node": "pve",
    },
    "terraform": {
        "backend": {
            "type": "s3",
            "config": {"bucket": "tfstate", "skip_region_validation": True},
        }
    },
    "networks": [
        {
            "name": "lan",
            "subnet": "10.0.0.0/24",
            "gateway": "10.0.0.1",
            "dns": "10.0.0.1",
            "static_range": {"start": "10.0.0.2", "end": "10.0.0.4"},
        }
    ],
    "hosts": [],
    "templates": [{"name": "debian-12", "version": "1.0.0", "vmid": 300}],
    "reserved": {"vmids": [], "ips": []},
}


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep the developer's Bitwarden and provisioner settings out of tests."""
    for name in (
        "BW_CLIENTID",
        "BW_CLIENTSECRET",
        "BW_MASTERPASSWORD",
        "BW_DATA_DIR",
        "BW_EXECUTABLE",
        "BW_SESSION",
        "PROVISIONER_LOG_LEVEL",
        "PROVISIONER_ISO_POLL_ATTEMPTS",
        "PROVISIONER_ISO_POLL_INTERVAL",
        "PROVISIONER_VERIFY_SSL",
    ):
        monkeypatch.delenv(name, raising=False)
    # No stray .env file gets picked up
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def inventory_data() -> Dict[str, Any]:
    """A fresh copy of the sample inventory document."""
    return copy.deepcopy(BASE_INVENTORY)


@pytest.fixture
def inventory(inventory_data) -> Inventory:
    return validate_inventory(inventory_data)


@pytest.fixture
def write_inventory(tmp_path) -> Callable[[Dict[str, Any]], Path]:
    """Write an inventory document to tmp_path and return its path."""

    def _write(data: Dict[str, Any], name: str = "inventory.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(data, indent=2))
        return path

    return _write


@pytest.fixture
def inventory_file(write_inventory, inventory_data) -> Path:
    return write_inventory(inventory_data)


@pytest.fixture
def mock_proxmox():
    """Mock Proxmox API client for testing."""
    with mock.patch("provisioner.proxmox.ProxmoxAPI") as mock_api:
        proxmox = mock.MagicMock()
        mock_api.return_value = proxmox

        proxmox.nodes.return_value.qemu.get.return_value = []
        proxmox.nodes.return_value.storage.return_value.content.get.return_value = []

        yield proxmox


@pytest.fixture
def mock_ssh():
    """Mock paramiko SSH client with a successful command by default."""
    with mock.patch("provisioner.executor.paramiko.SSHClient") as mock_ssh_class:
        ssh_client = mock.MagicMock()
        mock_ssh_class.return_value = ssh_client

        stdout = mock.MagicMock()
        stderr = mock.MagicMock()
        stdout.read.return_value.decode.return_value = "command output\n"
        stdout.channel.recv_exit_status.return_value = 0
        stderr.read.return_value.decode.return_value = ""

        ssh_client.exec_command.return_value = (None, stdout, stderr)

        yield ssh_client


class RecordingExecutor:
    """Stands in for Executor: records every command and never runs anything.

    ``outputs`` maps a command name to the stdout it returns. ``fail_when``
    decides from (command, args) whether a call exits non-zero.
    """

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.outputs: Dict[str, str] = {}
        self.fail_when: Optional[Callable[[str, List[str]], bool]] = None

    def run(self, command, args=(), env=None, stream=False, cwd=None) -> str:
        args = list(args)
        self.calls.append({"command": command, "args": args, "env": dict(env or {}), "stream": stream, "cwd": cwd})
        if self.fail_when is not None and self.fail_when(command, args):
            raise CommandFailed(" ".join([command, *args]), 1, "simulated failure")
        return self.outputs.get(command, "")

    def commands(self) -> List[List[str]]:
        return [[call["command"], *call["args"]] for call in self.calls]


@pytest.fixture
def recorder() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def ip_addr_output() -> str:
    """``ip addr show`` output from a build host with two networks."""
    return """1: lo: <LOOPBACK,UP,LOWER_UP> mtu 65536 qdisc noqueue state UNKNOWN group default qlen 1000
    link/loopback 00:00:00:00:00:00 brd 00:00:00:00:00:00
    inet 127.0.0.1/8 scope host lo
       valid_lft forever preferred_lft forever
    inet6 ::1/128 scope host
       valid_lft forever preferred_lft forever
2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 qdisc fq_codel state UP group default qlen 1000
    link/ether 52:54:00:12:34:56 brd ff:ff:ff:ff:ff:ff
    inet 192.168.1.20/24 brd 192.168.1.255 scope global dynamic eth0
       valid_lft 85000sec preferred_lft 85000sec
3: eth1: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 qdisc fq_codel state UP group default qlen 1000
    link/ether 52:54:00:65:43:21 brd ff:ff:ff:ff:ff:ff
    inet 10.0.0.37/24 brd 10.0.0.255 scope global eth1
       valid_lft forever preferred_lft forever
    inet6 fd00::37/64 scope global
       valid_lft forever preferred_lft forever
"""
