"""
Inventory store.

The inventory is a JSON document and the single source of truth for
committed hosts, templates, networks and the reservation ledger:

    {
      "proxmox": {"endpoint": "pve:8006", "api_user": "root@pam!tf", "api_token": "...", "node": "pve"},
      "terraform": {"backend": {"type": "s3", "config": {"bucket": "tfstate"}}},
      "networks": [
        {"name": "lan", "subnet": "10.0.0.0/24", "gateway": "10.0.0.1", "dns": "10.0.0.1",
         "static_range": {"start": "10.0.0.100", "end": "10.0.0.199"}}
      ],
      "hosts": [{"name": "pve", "vmid": 1, "type": "baremetal", "interfaces": [{"network": "lan", "ip": "10.0.0.10"}]}],
      "templates": [{"name": "debian-12", "version": "1.0.0", "vmid": 300}],
      "reserved": {"vmids": [{"vmid": 100, "refId": "vm:id:web"}], "ips": [{"ip": "10.0.0.100/24", "refId": "ip:lan:web"}]}
    }

Loading validates the whole document. Nothing here writes the file on its
own; callers decide when a run is committed and which fields it may touch.
"""

import ipaddress
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, model_validator

from provisioner.errors import SchemaInvalid

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _validate_address(value: str) -> str:
    ipaddress.ip_address(value)
    return value


def _validate_interface(value: str) -> str:
    ipaddress.ip_interface(value)
    return value


def _validate_subnet(value: str) -> str:
    ipaddress.ip_network(value, strict=False)
    return value


AddressStr = Annotated[str, AfterValidator(_validate_address)]
InterfaceStr = Annotated[str, AfterValidator(_validate_interface)]
SubnetStr = Annotated[str, AfterValidator(_validate_subnet)]


def address_of(value: str) -> Union[ipaddress.IPv4Address, ipaddress.IPv6Address]:
    """Return the address part of ``value``, which may carry a /prefix suffix."""
    return ipaddress.ip_interface(value).ip


class _Model(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ProxmoxConfig(_Model):
    """Proxmox API endpoint and token. Passed through to the API client."""

    endpoint: str
    api_user: str
    api_token: str
    node: str
    username: Optional[str] = None
    password: Optional[str] = None


class TerraformBackend(_Model):
    type: str
    config: Dict[str, Any]


class TerraformSettings(_Model):
    backend: TerraformBackend


class StaticRange(_Model):
    start: AddressStr
    end: AddressStr


class Network(_Model):
    """A network with an inclusive static allocation range."""

    name: str
    subnet: SubnetStr
    gateway: AddressStr
    dns: AddressStr
    static_range: StaticRange
    iface: Optional[str] = None
    dhcp_enabled: Optional[bool] = None
    domain: Optional[str] = None

    @property
    def prefix_length(self) -> Optional[int]:
        """Prefix length from ``subnet``, or None when the subnet carries none."""
        if "/" not in self.subnet:
            return None
        return ipaddress.ip_network(self.subnet, strict=False).prefixlen


class HostInterface(_Model):
    network: str
    ip: InterfaceStr


class Host(_Model):
    """A committed machine; its vmid and addresses are never handed out."""

    name: str
    vmid: int
    type: Literal["baremetal", "vm", "lxc"]
    interfaces: List[HostInterface] = Field(default_factory=list)


class Template(_Model):
    name: str
    version: str
    vmid: int


class VmidReservation(_Model):
    vmid: int
    ref_id: str = Field(alias="refId")


class IpReservation(_Model):
    ip: InterfaceStr
    ref_id: str = Field(alias="refId")


class Reserved(_Model):
    vmids: List[VmidReservation] = Field(default_factory=list)
    ips: List[IpReservation] = Field(default_factory=list)


def _duplicates(values: Iterable[Any]) -> List[Any]:
    seen = set()
    dupes = []
    for value in values:
        if value in seen and value not in dupes:
            dupes.append(value)
        seen.add(value)
    return dupes


class Inventory(_Model):
    """Root inventory document."""

    proxmox: ProxmoxConfig
    terraform: TerraformSettings
    networks: List[Network] = Field(default_factory=list)
    hosts: List[Host] = Field(default_factory=list)
    templates: List[Template] = Field(default_factory=list)
    reserved: Reserved = Field(default_factory=Reserved)

    @model_validator(mode="after")
    def check_invariants(self) -> "Inventory":
        dupes = _duplicates(n.name for n in self.networks)
        if dupes:
            raise ValueError(f"duplicate network names: {dupes}")

        dupes = _duplicates(t.name for t in self.templates)
        if dupes:
            raise ValueError(f"duplicate template names: {dupes}")

        for net in self.networks:
            start = address_of(net.static_range.start)
            end = address_of(net.static_range.end)
            if start.version != end.version:
                raise ValueError(f"static_range of network {net.name} mixes IPv4 and IPv6")
            if start > end:
                raise ValueError(f"static_range start is greater than end for network {net.name}")

        network_names = {n.name for n in self.networks}
        for host in self.hosts:
            for iface in host.interfaces:
                if iface.network not in network_names:
                    raise ValueError(f"host {host.name} references unknown network {iface.network}")

        for label, entries in (("vmids", self.reserved.vmids), ("ips", self.reserved.ips)):
            dupes = _duplicates(e.ref_id for e in entries)
            if dupes:
                raise ValueError(f"duplicate refId in reserved.{label}: {dupes}")

        dupes = _duplicates(r.vmid for r in self.reserved.vmids)
        if dupes:
            raise ValueError(f"vmid reserved more than once: {dupes}")
        committed_vmids = {h.vmid for h in self.hosts} | {t.vmid for t in self.templates}
        for entry in self.reserved.vmids:
            if entry.vmid in committed_vmids:
                raise ValueError(f"reserved vmid {entry.vmid} ({entry.ref_id}) is already committed")

        dupes = _duplicates(address_of(r.ip) for r in self.reserved.ips)
        if dupes:
            raise ValueError(f"address reserved more than once: {[str(d) for d in dupes]}")
        host_ips = {address_of(i.ip) for h in self.hosts for i in h.interfaces}
        for entry in self.reserved.ips:
            if address_of(entry.ip) in host_ips:
                raise ValueError(f"reserved ip {entry.ip} ({entry.ref_id}) is already assigned to a host")

        return self

    def network(self, name: str) -> Optional[Network]:
        """Return the network called ``name`` if present."""
        for net in self.networks:
            if net.name == name:
                return net
        return None

    def template(self, name: str) -> Optional[Template]:
        """Return the template called ``name`` if present."""
        for tmpl in self.templates:
            if tmpl.name == name:
                return tmpl
        return None


def validate_inventory(data: Any) -> Inventory:
    """Validate a parsed inventory document.

    Raises:
        SchemaInvalid: If required fields are missing, have the wrong type,
            or the document breaks a cross-field invariant
    """
    if not isinstance(data, dict):
        raise SchemaInvalid("Invalid inventory data: top level must be an object")
    try:
        return Inventory.model_validate(data)
    except ValidationError as e:
        raise SchemaInvalid(f"Invalid inventory data: {e}") from e


def dump_inventory(inventory: Inventory) -> Dict[str, Any]:
    """Return the inventory as a plain JSON-compatible dict, using file key names."""
    return inventory.model_dump(mode="json", by_alias=True, exclude_none=True)


def _read_document(path: Path) -> Dict[str, Any]:
    raw = path.read_text(encoding="utf-8")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise SchemaInvalid(f"Error loading inventory file {path}: {e}") from e


@dataclass
class InventoryStore:
    """A loaded inventory together with the file it came from."""

    path: Path
    inventory: Inventory

    def document(self) -> Dict[str, Any]:
        """Inventory as a plain dict, the root for ``inventory:`` references."""
        return dump_inventory(self.inventory)


def load_inventory(path: PathLike) -> InventoryStore:
    """Read and validate an inventory file.

    Args:
        path: Path to the inventory JSON file

    Returns:
        InventoryStore holding the validated inventory

    Raises:
        FileNotFoundError: If the file does not exist
        SchemaInvalid: If the file is not valid JSON or fails validation
    """
    path = Path(path)
    logger.debug("Loading inventory from %s", path)
    data = _read_document(path)
    inventory = validate_inventory(data)
    logger.info(
        "Loaded inventory %s: %d networks, %d hosts, %d templates, %d reserved vmids, %d reserved ips",
        path,
        len(inventory.networks),
        len(inventory.hosts),
        len(inventory.templates),
        len(inventory.reserved.vmids),
        len(inventory.reserved.ips),
    )
    return InventoryStore(path=path, inventory=inventory)


def persist_inventory(path: PathLike, inventory: Inventory, fields: Iterable[str] = ("reserved",)) -> None:
    """Write selected top-level fields of ``inventory`` back to ``path``.

    The file is re-read first and only ``fields`` are replaced, so values
    filled in memory (secrets, resolved references) never reach disk. Keys
    are sorted and the file is swapped in with a rename.

    Raises:
        SchemaInvalid: If the current file or the merged result is invalid
    """
    path = Path(path)
    fields = list(fields)
    current = _read_document(path)
    updated = dump_inventory(inventory)
    for name in fields:
        if name in updated:
            current[name] = updated[name]
        else:
            current.pop(name, None)
    validate_inventory(current)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(current, f, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp_name, path)
    except Exception:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    logger.info("Updated %s in inventory %s", ", ".join(fields), path)
