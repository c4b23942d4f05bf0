"""Reservation ledger.

A reservation binds a reference token (its ``refId``, e.g. ``vm:id:web01``)
to an allocated VM ID or address, so the same token resolves to the same
value on every pass and every re-run.

The module functions work directly on an Inventory. ``ReservationLedger``
wraps them for one run and keeps the run's changes apart, so they reach
the inventory file only when ``commit`` is called after the external
apply succeeded.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, TypeVar, Union

from provisioner.allocator import next_ip_address, next_vmid
from provisioner.errors import InventoryConflict, SchemaInvalid, UnresolvedReference
from provisioner.inventory import (
    Inventory,
    IpReservation,
    Reserved,
    VmidReservation,
    dump_inventory,
    load_inventory,
    persist_inventory,
    validate_inventory,
)

logger = logging.getLogger(__name__)

Entry = TypeVar("Entry", VmidReservation, IpReservation)


def _find(entries: List[Entry], ref_id: str) -> Optional[Entry]:
    for entry in entries:
        if entry.ref_id == ref_id:
            return entry
    return None


def find_vmid_reservation(inventory: Inventory, ref_id: str) -> Optional[VmidReservation]:
    """Return the VM ID reservation for ``ref_id`` if present."""
    return _find(inventory.reserved.vmids, ref_id)


def find_ip_reservation(inventory: Inventory, ref_id: str) -> Optional[IpReservation]:
    """Return the IP reservation for ``ref_id`` if present."""
    return _find(inventory.reserved.ips, ref_id)


def reserve_vmid(vm_type: str, inventory: Inventory, ref_id: str) -> int:
    """Return the VM ID bound to ``ref_id``, allocating and recording one if needed."""
    existing = find_vmid_reservation(inventory, ref_id)
    if existing is not None:
        return existing.vmid
    vmid = next_vmid(vm_type, inventory)
    inventory.reserved.vmids.append(VmidReservation(vmid=vmid, ref_id=ref_id))
    logger.debug("Reserved vmid %d for %s", vmid, ref_id)
    return vmid


def release_vmid(inventory: Inventory, ref_id: str) -> Optional[int]:
    """Remove the reservation for ``ref_id`` and return its VM ID, or None."""
    existing = find_vmid_reservation(inventory, ref_id)
    if existing is None:
        return None
    inventory.reserved.vmids.remove(existing)
    logger.debug("Released vmid %d for %s", existing.vmid, ref_id)
    return existing.vmid


def reserve_ip_address(network_name: str, inventory: Inventory, ref_id: str) -> str:
    """Return the address bound to ``ref_id``, allocating and recording one if needed."""
    existing = find_ip_reservation(inventory, ref_id)
    if existing is not None:
        return existing.ip
    ip = next_ip_address(network_name, inventory)
    inventory.reserved.ips.append(IpReservation(ip=ip, ref_id=ref_id))
    logger.debug("Reserved ip %s for %s", ip, ref_id)
    return ip


def release_ip_address(inventory: Inventory, ref_id: str) -> Optional[str]:
    """Remove the reservation for ``ref_id`` and return its address, or None."""
    existing = find_ip_reservation(inventory, ref_id)
    if existing is None:
        return None
    inventory.reserved.ips.remove(existing)
    logger.debug("Released ip %s for %s", existing.ip, ref_id)
    return existing.ip


def _merge(current: List[Entry], new: List[Entry], deleted: List[Entry]) -> List[Entry]:
    drop = {e.ref_id for e in deleted} | {e.ref_id for e in new}
    merged = [e for e in current if e.ref_id not in drop]
    merged.extend(e.model_copy() for e in new)
    return merged


class ReservationLedger:
    """Tracks the reservations one run creates and releases.

    ``new_entries`` and ``deleted_entries`` hold the run's changes. The
    wrapped inventory is updated as the run goes, so later allocations in
    the same run never hand out a value an earlier one took.
    """

    def __init__(self, inventory: Inventory) -> None:
        self.inventory = inventory
        self.new_entries = Reserved()
        self.deleted_entries = Reserved()
        # refId -> value handed out this run, reserved or released
        self.resolved: Dict[str, Union[int, str]] = {}

    @property
    def has_changes(self) -> bool:
        """Check if the run created or released anything."""
        return bool(
            self.new_entries.vmids
            or self.new_entries.ips
            or self.deleted_entries.vmids
            or self.deleted_entries.ips
        )

    def vmid(self, vm_type: str, ref_id: str, destroy: bool = False) -> int:
        """Resolve a VM ID token, reserving it or, in destroy mode, releasing it.

        Raises:
            UnresolvedReference: In destroy mode, if ``ref_id`` holds no reservation
        """
        if destroy:
            released = _find(self.deleted_entries.vmids, ref_id)
            if released is not None:
                return released.vmid
            existing = find_vmid_reservation(self.inventory, ref_id)
            if existing is None:
                raise UnresolvedReference([ref_id], f"No vmid reservation to release for {ref_id}")
            release_vmid(self.inventory, ref_id)
            self.deleted_entries.vmids.append(existing.model_copy())
            self.resolved[ref_id] = existing.vmid
            return existing.vmid

        existing = find_vmid_reservation(self.inventory, ref_id)
        if existing is not None:
            vmid = existing.vmid
        else:
            vmid = reserve_vmid(vm_type, self.inventory, ref_id)
            self.new_entries.vmids.append(VmidReservation(vmid=vmid, ref_id=ref_id))
        self.resolved[ref_id] = vmid
        return vmid

    def ip(self, network_name: str, ref_id: str, destroy: bool = False) -> str:
        """Resolve an IP token, reserving it or, in destroy mode, releasing it.

        Raises:
            UnresolvedReference: In destroy mode, if ``ref_id`` holds no reservation
        """
        if destroy:
            released = _find(self.deleted_entries.ips, ref_id)
            if released is not None:
                return released.ip
            existing = find_ip_reservation(self.inventory, ref_id)
            if existing is None:
                raise UnresolvedReference([ref_id], f"No ip reservation to release for {ref_id}")
            release_ip_address(self.inventory, ref_id)
            self.deleted_entries.ips.append(existing.model_copy())
            self.resolved[ref_id] = existing.ip
            return existing.ip

        existing = find_ip_reservation(self.inventory, ref_id)
        if existing is not None:
            ip = existing.ip
        else:
            ip = reserve_ip_address(network_name, self.inventory, ref_id)
            self.new_entries.ips.append(IpReservation(ip=ip, ref_id=ref_id))
        self.resolved[ref_id] = ip
        return ip

    def commit(self, path: Union[str, Path]) -> None:
        """Merge this run's changes into the reservations stored in ``path``.

        The file is re-read so reservations written by other runs since this
        one started are kept.

        Raises:
            InventoryConflict: If the merged reservations collide with what
                is now on disk
        """
        if not self.has_changes:
            logger.info("No reservation changes to commit")
            return

        disk = load_inventory(path).inventory
        disk.reserved.vmids = _merge(disk.reserved.vmids, self.new_entries.vmids, self.deleted_entries.vmids)
        disk.reserved.ips = _merge(disk.reserved.ips, self.new_entries.ips, self.deleted_entries.ips)
        try:
            merged = validate_inventory(dump_inventory(disk))
        except SchemaInvalid as e:
            raise InventoryConflict(f"Reservations conflict with inventory on disk: {e}") from e

        persist_inventory(path, merged, fields=("reserved",))
        logger.info(
            "Committed reservations: %d new vmids, %d new ips, %d released vmids, %d released ips",
            len(self.new_entries.vmids),
            len(self.new_entries.ips),
            len(self.deleted_entries.vmids),
            len(self.deleted_entries.ips),
        )
        self.new_entries = Reserved()
        self.deleted_entries = Reserved()
