"""Tests for packer module."""

import json
from unittest import mock

import pytest

from provisioner.config import Settings
from provisioner.errors import CommandFailed, ManifestInvalid, ProxmoxError, TemplateExists
from provisioner.packer import PackerRun, parse_packer_manifest


@pytest.fixture
def manifest():
    return {
        "name": "debian-12",
        "version": "2.0.0",
        "iso_url": "https://cdimage.debian.org/debian-12.iso",
        "iso_file": "local:iso/debian-12.iso",
        "packer_template_url": "https://git.example.com/packer/debian.git",
        "network": "lan",
        "variables": {
            "proxmox_node": "{inventory:proxmox.node}",
            "preseed_url": "http://{host:ip}:8100/preseed.cfg",
        },
    }


@pytest.fixture
def proxmox():
    client = mock.MagicMock()
    client.check_for_iso.return_value = True
    client.get_template_info.return_value = None
    return client


@pytest.fixture
def packer_run(manifest, inventory_file, recorder, proxmox, ip_addr_output):
    recorder.outputs["ip"] = ip_addr_output
    factory = mock.Mock(return_value=proxmox)
    settings = Settings(iso_poll_attempts=3, iso_poll_interval=0.5)
    run = PackerRun(manifest, inventory_file, settings=settings, executor=recorder, proxmox_factory=factory)
    run.sleep = mock.Mock()
    return run


def test_parse_manifest(manifest):
    manifest["isoPath"] = "/mnt/iso/"
    manifest["ssh"] = {"host": "build", "username": "root", "privateKey": "~/.ssh/id"}

    parsed = parse_packer_manifest(manifest)

    assert parsed.storage == "local"
    assert parsed.iso_path == "/mnt/iso/"
    assert parsed.ssh.private_key == "~/.ssh/id"


@pytest.mark.parametrize("field", ["name", "version", "iso_url", "packer_template_url", "network", "iso_file"])
def test_parse_manifest_required(manifest, field):
    del manifest[field]

    with pytest.raises(ManifestInvalid, match=field):
        parse_packer_manifest(manifest)


def test_parse_manifest_iso_file_needs_storage(manifest):
    manifest["iso_file"] = "debian-12.iso"

    with pytest.raises(ManifestInvalid):
        parse_packer_manifest(manifest)


def test_init_resolves_host_ip(packer_run, recorder):
    packer_run.init()

    assert packer_run.manifest.variables == {
        "proxmox_node": "pve",
        "preseed_url": "http://10.0.0.37:8100/preseed.cfg",
    }
    assert recorder.commands() == [["ip", "addr", "show"]]
    packer_run.proxmox_factory.assert_called_once()
    config = packer_run.proxmox_factory.call_args.args[0]
    assert config.node == "pve"
    assert packer_run.proxmox_factory.call_args.kwargs == {"verify_ssl": False}


def test_ensure_iso_present(packer_run, proxmox):
    packer_run.init()
    packer_run.ensure_iso()

    proxmox.check_for_iso.assert_called_once_with("local", "local:iso/debian-12.iso")
    proxmox.download_iso.assert_not_called()


def test_ensure_iso_downloads_and_polls(packer_run, proxmox):
    proxmox.check_for_iso.side_effect = [False, False, True]
    packer_run.init()

    packer_run.ensure_iso()

    proxmox.download_iso.assert_called_once_with(
        "local", "local:iso/debian-12.iso", "https://cdimage.debian.org/debian-12.iso"
    )
    assert packer_run.sleep.call_args_list == [mock.call(0.5), mock.call(0.5)]


def test_ensure_iso_gives_up(packer_run, proxmox):
    proxmox.check_for_iso.return_value = False
    packer_run.init()

    with pytest.raises(ProxmoxError, match="not available after 3 checks"):
        packer_run.ensure_iso()

    assert packer_run.sleep.call_count == 3


def test_build(packer_run, recorder, inventory_file):
    """Test a build allocates a template VM ID and records it."""
    packer_run.init()

    vmid = packer_run.build()

    assert vmid == 301
    commands = recorder.commands()
    assert commands[1:] == [
        ["rm", "-rf", "/tmp/packer_debian-12"],
        ["git", "clone", "https://git.example.com/packer/debian.git", "/tmp/packer_debian-12"],
        ["packer", "build", "/tmp/packer_debian-12"],
        ["rm", "-rf", "/tmp/packer_debian-12"],
    ]
    packer_call = recorder.calls[3]
    assert packer_call["env"] == {
        "PKR_VAR_proxmox_node": "pve",
        "PKR_VAR_preseed_url": "http://10.0.0.37:8100/preseed.cfg",
        "PKR_VAR_id": "301",
    }
    assert packer_call["cwd"] == "/tmp/packer_debian-12"

    on_disk = json.loads(inventory_file.read_text())
    assert on_disk["templates"] == [{"name": "debian-12", "version": "2.0.0", "vmid": 301}]


def test_build_adds_new_template(packer_run, manifest, inventory_file):
    packer_run.document = dict(manifest, name="ubuntu-24")
    packer_run.init()

    packer_run.build()

    templates = json.loads(inventory_file.read_text())["templates"]
    assert [t["name"] for t in templates] == ["debian-12", "ubuntu-24"]


def test_build_only_writes_templates(packer_run, inventory_file):
    packer_run.init()
    packer_run.inventory.proxmox.api_token = "changed-in-memory"

    packer_run.build()

    on_disk = json.loads(inventory_file.read_text())
    assert on_disk["proxmox"]["api_token"] == "00000000-1111-2222-3333-444444444444"


def test_build_existing_template_without_override(packer_run, proxmox, recorder):
    proxmox.get_template_info.return_value = {"vmid": 300, "name": "debian-12"}
    packer_run.init()

    with pytest.raises(TemplateExists, match="already exists"):
        packer_run.build()

    proxmox.delete_template.assert_not_called()
    assert ["packer", "build", "/tmp/packer_debian-12"] not in recorder.commands()


def test_build_existing_template_with_override(packer_run, proxmox):
    proxmox.get_template_info.return_value = {"vmid": "300", "name": "debian-12"}
    packer_run.init()

    packer_run.build(override=True)

    proxmox.delete_template.assert_called_once_with(300)


def test_build_failure_cleans_up(packer_run, recorder, inventory_file):
    """Test the build directory is removed and the inventory untouched when packer fails."""
    before = inventory_file.read_text()
    recorder.fail_when = lambda command, args: command == "packer"
    packer_run.init()

    with pytest.raises(CommandFailed):
        packer_run.build()

    assert recorder.commands()[-1] == ["rm", "-rf", "/tmp/packer_debian-12"]
    assert inventory_file.read_text() == before


def test_build_requires_init(packer_run):
    with pytest.raises(RuntimeError, match="init"):
        packer_run.build()


def test_ensure_iso_requires_init(packer_run, proxmox):
    with pytest.raises(RuntimeError, match="init"):
        packer_run.ensure_iso()

    proxmox.check_for_iso.assert_not_called()
