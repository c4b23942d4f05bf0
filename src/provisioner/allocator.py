"""VM ID and static IP allocation.

Both allocators are plain functions of the inventory they are given: the
same inventory and request always give the same answer, and nothing is
recorded. Recording an allocation is the ledger's job.
"""

import ipaddress
import logging
from typing import Dict, Set, Tuple, Union

from provisioner.errors import InvalidRange, NetworkNotFound, NoCapacity, UnknownResourceType
from provisioner.inventory import Inventory

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# Inclusive, fixed per resource type
VMID_RANGES: Dict[str, Tuple[int, int]] = {
    "baremetal": (0, 99),
    "vm": (100, 199),
    "lxc": (200, 299),
    "template": (300, 399),
}


def used_vmids(inventory: Inventory) -> Set[int]:
    """Return every VM ID taken by a host, a template or a reservation."""
    used = {host.vmid for host in inventory.hosts}
    used.update(template.vmid for template in inventory.templates)
    used.update(entry.vmid for entry in inventory.reserved.vmids)
    return used


def next_vmid(vm_type: str, inventory: Inventory) -> int:
    """Return the lowest free VM ID in the range for ``vm_type``.

    Args:
        vm_type: One of baremetal, vm, lxc, template
        inventory: Inventory snapshot to allocate against

    Returns:
        The first VM ID in the type's range not in use

    Raises:
        UnknownResourceType: If ``vm_type`` has no range
        NoCapacity: If every ID in the range is taken
    """
    if vm_type not in VMID_RANGES:
        raise UnknownResourceType(f"Unknown type: {vm_type}", subject=vm_type)

    low, high = VMID_RANGES[vm_type]
    used = used_vmids(inventory)
    for candidate in range(low, high + 1):
        if candidate not in used:
            logger.debug("Next free %s vmid is %d", vm_type, candidate)
            return candidate

    raise NoCapacity(f"No available vmid for type {vm_type}", subject=vm_type)


def _parse(value: str, network_name: str) -> IPAddress:
    try:
        return ipaddress.ip_interface(value).ip
    except ValueError as e:
        raise InvalidRange(f"Invalid address {value!r} for network {network_name}", subject=network_name) from e


def _to_address(value: int, version: int) -> IPAddress:
    if version == 4:
        return ipaddress.IPv4Address(value)
    return ipaddress.IPv6Address(value)


def used_addresses(network_name: str, inventory: Inventory, version: int) -> Set[int]:
    """Return the addresses taken on a network, as integers.

    Gateway and DNS of the network are always taken. Every host interface
    and every reservation of the same family counts too: reservations carry
    no network, and a reserved address may never equal a host address.
    """
    net = inventory.network(network_name)
    candidates = []
    if net is not None:
        candidates.extend([net.gateway, net.dns])
    for host in inventory.hosts:
        candidates.extend(iface.ip for iface in host.interfaces)
    candidates.extend(entry.ip for entry in inventory.reserved.ips)

    used = set()
    for value in candidates:
        try:
            addr = ipaddress.ip_interface(value).ip
        except ValueError:
            logger.warning("Ignoring invalid address %r on network %s", value, network_name)
            continue
        if addr.version == version:
            used.add(int(addr))
    return used


def next_ip_address(network_name: str, inventory: Inventory) -> str:
    """Return the lowest free address in a network's static range.

    Args:
        network_name: Name of a network in the inventory
        inventory: Inventory snapshot to allocate against

    Returns:
        The address, with the subnet's prefix length appended when the
        subnet has one (``10.0.0.2/24``)

    Raises:
        NetworkNotFound: If the network is not in the inventory
        InvalidRange: If the static range is malformed, mixes address
            families or starts after it ends
        NoCapacity: If every address in the range is taken
    """
    net = inventory.network(network_name)
    if net is None:
        raise NetworkNotFound(f"Network not found: {network_name}", subject=network_name)

    start_ip = net.static_range.start if net.static_range else None
    end_ip = net.static_range.end if net.static_range else None
    if not start_ip or not end_ip:
        raise InvalidRange(f"Invalid static_range for network {network_name}", subject=network_name)

    start = _parse(start_ip, network_name)
    end = _parse(end_ip, network_name)
    if start.version != end.version:
        raise InvalidRange(
            f"Start and end IP must be the same IP version for network {network_name}", subject=network_name
        )
    if start > end:
        raise InvalidRange(f"static_range start is greater than end for network {network_name}", subject=network_name)

    used = used_addresses(network_name, inventory, start.version)
    prefix = net.prefix_length

    candidate = int(start)
    while candidate <= int(end):
        if candidate not in used:
            address = str(_to_address(candidate, start.version))
            logger.debug("Next free address on %s is %s", network_name, address)
            return f"{address}/{prefix}" if prefix is not None else address
        candidate += 1

    raise NoCapacity(f"No available static IP in range for network {network_name}", subject=network_name)
