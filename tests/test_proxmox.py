"""Tests for proxmox module."""

from unittest import mock

import pytest
import requests

from provisioner.errors import ProxmoxError
from provisioner.inventory import ProxmoxConfig
from provisioner.proxmox import ProxmoxClient, parse_endpoint


@pytest.fixture
def proxmox_config():
    return ProxmoxConfig(endpoint="pve.lan:8006", api_user="root@pam!provisioner", api_token="secretvalue", node="pve")


@pytest.mark.parametrize(
    "endpoint,expected",
    [
        ("pve.lan:8006", ("pve.lan", 8006)),
        ("https://pve.lan:8443/api2/json", ("pve.lan", 8443)),
        ("pve.lan", ("pve.lan", 8006)),
        ("10.0.0.10", ("10.0.0.10", 8006)),
    ],
)
def test_parse_endpoint(endpoint, expected):
    assert parse_endpoint(endpoint) == expected


def test_client_init(proxmox_config):
    """Test the API token is split into user and token name."""
    with mock.patch("provisioner.proxmox.ProxmoxAPI") as mock_api:
        client = ProxmoxClient(proxmox_config)

    assert client.user == "root@pam"
    assert client.token_name == "provisioner"
    mock_api.assert_called_once_with(
        "pve.lan",
        port=8006,
        user="root@pam",
        token_name="provisioner",
        token_value="secretvalue",
        verify_ssl=False,
    )


def test_client_init_bad_api_user(proxmox_config):
    proxmox_config.api_user = "root@pam"

    with pytest.raises(ProxmoxError, match="user@realm!token"):
        ProxmoxClient(proxmox_config)


def test_check_for_iso(mock_proxmox, proxmox_config):
    storage = mock_proxmox.nodes.return_value.storage
    storage.return_value.content.get.return_value = [
        {"volid": "local:iso/ubuntu.iso"},
        {"volid": "local:iso/debian-12.iso"},
    ]
    client = ProxmoxClient(proxmox_config)

    assert client.check_for_iso("local", "local:iso/debian-12.iso") is True
    assert client.check_for_iso("local", "local:iso/alpine.iso") is False
    mock_proxmox.nodes.assert_called_with("pve")
    storage.assert_called_with("local")
    storage.return_value.content.get.assert_called_with(content="iso")


def test_check_for_iso_error(mock_proxmox, proxmox_config):
    mock_proxmox.nodes.return_value.storage.return_value.content.get.side_effect = requests.exceptions.ConnectionError(
        "refused"
    )
    client = ProxmoxClient(proxmox_config)

    with pytest.raises(ProxmoxError, match="Failed to list storage content"):
        client.check_for_iso("local", "local:iso/debian-12.iso")


def test_download_iso(mock_proxmox, proxmox_config):
    endpoint = mock_proxmox.nodes.return_value.storage.return_value
    endpoint.return_value.post.return_value = "UPID:pve:download"
    client = ProxmoxClient(proxmox_config)

    task = client.download_iso("local", "local:iso/debian-12.iso", "https://cdimage.debian.org/debian-12.iso")

    assert task == "UPID:pve:download"
    endpoint.assert_called_once_with("download-url")
    endpoint.return_value.post.assert_called_once_with(
        url="https://cdimage.debian.org/debian-12.iso", filename="debian-12.iso", content="iso"
    )


def test_get_template_info(mock_proxmox, proxmox_config):
    mock_proxmox.nodes.return_value.qemu.get.return_value = [
        {"vmid": 105, "name": "web01"},
        {"vmid": 301, "name": "debian-12", "template": 1},
    ]
    client = ProxmoxClient(proxmox_config)

    assert client.get_template_info("debian-12") == {"vmid": 301, "name": "debian-12", "template": 1}
    assert client.get_template_info("ubuntu-24") is None


def test_delete_template(mock_proxmox, proxmox_config):
    client = ProxmoxClient(proxmox_config)

    client.delete_template(301)

    mock_proxmox.nodes.return_value.qemu.assert_called_once_with(301)
    mock_proxmox.nodes.return_value.qemu.return_value.delete.assert_called_once_with()


def test_delete_template_error(mock_proxmox, proxmox_config):
    mock_proxmox.nodes.return_value.qemu.return_value.delete.side_effect = requests.exceptions.Timeout("slow")
    client = ProxmoxClient(proxmox_config)

    with pytest.raises(ProxmoxError, match="Failed to delete VM 301"):
        client.delete_template(301)
