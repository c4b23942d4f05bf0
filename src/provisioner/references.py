"""Reference tokens embedded in manifest and inventory string values.

Grammars (case-sensitive):

    vault:<secret>.<path...>     whole string, Bitwarden secret field
    inventory:<path...>          whole string, or {inventory:<path...>} inside a string
    config:<path...>             whole string, or {config:<path...>} inside a string
    <vm|lxc>:id:<label>          whole string, allocated VM ID
    ip:<network>:<label>         whole string, allocated static address
    host:ip                      whole string, or {host:ip} inside a string

A token's text is also its identity: the ledger keys reservations by it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Union

_SEGMENT = r"[^\"{}\s]+"

VAULT_RE = re.compile(r"^vault:(?P<ref>[^\"]+)$")
VMID_RE = re.compile(r"^(?P<type>vm|lxc):id:(?P<label>[^\":\s]+)$")
IP_RE = re.compile(r"^ip:(?P<network>[^\":\s]+):(?P<label>[^\":\s]+)$")
BARE_RE = re.compile(rf"^(?P<kind>inventory|config):(?P<path>{_SEGMENT})$")
BRACED_RE = re.compile(rf"\{{(?:(?P<kind>inventory|config):(?P<path>{_SEGMENT})|(?P<host>host:ip))\}}")
HOST_IP = "host:ip"


@dataclass(frozen=True)
class VaultRef:
    text: str
    name: str
    path: tuple[str, ...]


@dataclass(frozen=True)
class InventoryRef:
    text: str
    path: tuple[str, ...]


@dataclass(frozen=True)
class ConfigRef:
    text: str
    path: tuple[str, ...]


@dataclass(frozen=True)
class VmIdRef:
    text: str
    vm_type: str
    label: str


@dataclass(frozen=True)
class IpRef:
    text: str
    network: str
    label: str


@dataclass(frozen=True)
class HostIpRef:
    text: str


Reference = Union[VaultRef, InventoryRef, ConfigRef, VmIdRef, IpRef, HostIpRef]


def _split(path: str) -> tuple[str, ...]:
    return tuple(part for part in path.split(".") if part)


def _path_ref(kind: str, text: str, path: str) -> Reference | None:
    parts = _split(path)
    if not parts:
        return None
    if kind == "inventory":
        return InventoryRef(text=text, path=parts)
    return ConfigRef(text=text, path=parts)


def parse_reference(value: str) -> Reference | None:
    """Parse a string that is, in its entirety, a single reference token."""
    if value == HOST_IP or value == "{host:ip}":
        return HostIpRef(text=value)

    match = VAULT_RE.match(value)
    if match:
        parts = _split(match.group("ref"))
        if not parts:
            return None
        return VaultRef(text=value, name=parts[0], path=parts[1:])

    match = VMID_RE.match(value)
    if match:
        return VmIdRef(text=value, vm_type=match.group("type"), label=match.group("label"))

    match = IP_RE.match(value)
    if match:
        return IpRef(text=value, network=match.group("network"), label=match.group("label"))

    match = BARE_RE.match(value)
    if match:
        return _path_ref(match.group("kind"), value, match.group("path"))

    match = BRACED_RE.fullmatch(value)
    if match and match.group("kind"):
        return _path_ref(match.group("kind"), value, match.group("path"))

    return None


def embedded_reference(match: re.Match) -> Reference | None:
    """Build the reference for a ``{...}`` token found inside a longer string."""
    if match.group("host"):
        return HostIpRef(text=match.group(0))
    return _path_ref(match.group("kind"), match.group(0), match.group("path"))


def find_references(value: str) -> list[Reference]:
    """Return every reference token in ``value``, in order of appearance."""
    whole = parse_reference(value)
    if whole is not None:
        return [whole]
    refs = []
    for match in BRACED_RE.finditer(value):
        ref = embedded_reference(match)
        if ref is not None:
            refs.append(ref)
    return refs


def lookup_path(root: Any, path: Iterable[str]) -> Any:
    """Follow a dotted path through nested dicts and lists.

    A segment indexes a dict by key. Against a list it selects the first
    item whose ``name`` equals the segment. Returns None when any segment
    is missing.
    """
    current = root
    for part in path:
        if isinstance(current, list):
            current = next(
                (item for item in current if isinstance(item, dict) and item.get("name") == part),
                None,
            )
        elif isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
        if current is None:
            return None
    return current
