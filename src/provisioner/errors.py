"""Exceptions raised by the provisioner.

Validation and capacity errors abort a run before anything is applied.
Lookup misses inside the templating passes are not errors; only tokens
that survive to a "must be fully resolved" boundary raise.
"""

from typing import List, Optional


class ProvisionerError(Exception):
    """Base exception for provisioner errors."""

    pass


class SchemaInvalid(ProvisionerError):
    """Raised when the inventory file cannot be parsed or fails validation."""

    pass


class ManifestInvalid(ProvisionerError):
    """Raised when a Terraform or Packer manifest fails its schema."""

    pass


class InventoryConflict(ProvisionerError):
    """Raised when a run's reservations no longer fit the inventory on disk."""

    pass


class AllocationError(ProvisionerError):
    """Base exception for VM ID and IP allocation failures.

    ``subject`` is the VM type or network name the allocation was for.
    """

    def __init__(self, message: str, subject: Optional[str] = None) -> None:
        super().__init__(message)
        self.subject = subject


class UnknownResourceType(AllocationError):
    """Raised when a VM ID is requested for a type with no configured range."""

    pass


class NetworkNotFound(AllocationError):
    """Raised when an IP is requested on a network missing from the inventory."""

    pass


class InvalidRange(AllocationError):
    """Raised when a network's static range is malformed."""

    pass


class NoCapacity(AllocationError):
    """Raised when every VM ID or address in a range is taken."""

    pass


class UnresolvedReference(ProvisionerError):
    """Raised when reference tokens remain where a concrete value is required."""

    def __init__(self, tokens: List[str], message: Optional[str] = None) -> None:
        self.tokens = list(tokens)
        super().__init__(message or f"Unresolved references: {', '.join(self.tokens)}")


class CommandFailed(ProvisionerError):
    """Raised when an external command exits non-zero."""

    def __init__(self, command: str, returncode: int, stderr: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command failed with code {returncode}: {command}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class VaultError(ProvisionerError):
    """Raised when a Bitwarden CLI session step fails."""

    pass


class ProxmoxError(ProvisionerError):
    """Raised when a Proxmox API call fails."""

    pass


class TemplateExists(ProvisionerError):
    """Raised when a Packer build targets an existing template without override."""

    pass
