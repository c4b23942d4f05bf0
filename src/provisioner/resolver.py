"""
Reference resolution.

Substitutes reference tokens in a JSON-shaped document (dicts, lists and
scalars, as parsed from a manifest). Passes run in a fixed order because
later passes may depend on values earlier ones filled in:

1. vault      secret fields from a fetched Bitwarden item list
2. inventory  values from the inventory document
3. config     values from the document itself (sibling fields)
4. vmid, ip   allocations through the reservation ledger
5. host ip    the build host's current address on a network

Tokens are matched in string values only, never in keys. A string that
is exactly one token is replaced by the looked-up value with its JSON
type intact; a braced token inside a longer string is interpolated as
text. Lookups that find nothing leave the token in place. Each unique
token is resolved once per pass, in document order, so running a pass
twice is a no-op and a fixed input always resolves to the same output.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

from provisioner.errors import UnresolvedReference
from provisioner.inventory import Inventory, dump_inventory
from provisioner.ledger import ReservationLedger
from provisioner.references import (
    BRACED_RE,
    ConfigRef,
    HostIpRef,
    InventoryRef,
    IpRef,
    Reference,
    VaultRef,
    VmIdRef,
    embedded_reference,
    find_references,
    lookup_path,
    parse_reference,
)

logger = logging.getLogger(__name__)

_UNRESOLVED = object()

Resolver = Callable[[Any], Any]


@dataclass
class ResolutionContext:
    """Collaborators for the passes beyond inventory and config.

    A pass whose collaborator is None is skipped.
    """

    secrets: Optional[List[Dict[str, Any]]] = None
    ledger: Optional[ReservationLedger] = None
    destroy: bool = False
    host_ip: Optional[Callable[[], str]] = None


def _walk(document: Any, fn: Callable[[str], Any]) -> Any:
    if isinstance(document, dict):
        return {key: _walk(value, fn) for key, value in document.items()}
    if isinstance(document, list):
        return [_walk(item, fn) for item in document]
    if isinstance(document, str):
        return fn(document)
    return document


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _substitute(
    document: Any,
    kinds: Tuple[Type, ...],
    resolve_one: Resolver,
    embedded: bool = True,
) -> Any:
    """Run one pass: replace every token of ``kinds`` using ``resolve_one``.

    ``resolve_one`` returns ``_UNRESOLVED`` to leave a token untouched.
    """
    cache: Dict[str, Any] = {}

    def resolved(ref: Reference) -> Any:
        if ref.text not in cache:
            cache[ref.text] = resolve_one(ref)
        return cache[ref.text]

    def replace_embedded(match) -> str:
        ref = embedded_reference(match)
        if not isinstance(ref, kinds):
            return match.group(0)
        value = resolved(ref)
        if value is _UNRESOLVED:
            return match.group(0)
        return _as_text(value)

    def on_string(value: str) -> Any:
        whole = parse_reference(value)
        if whole is not None:
            if not isinstance(whole, kinds):
                return value
            result = resolved(whole)
            return value if result is _UNRESOLVED else result
        if embedded:
            return BRACED_RE.sub(replace_embedded, value)
        return value

    return _walk(document, on_string)


def resolve_vault_refs(document: Any, secrets: List[Dict[str, Any]]) -> Any:
    """Fill ``vault:<name>.<path>`` tokens from a Bitwarden item list.

    Only string results are substituted. Missing secrets and fields are
    skipped so a partly populated vault still works.
    """

    def resolve_one(ref: VaultRef) -> Any:
        secret = next((s for s in secrets if isinstance(s, dict) and s.get("name") == ref.name), None)
        if secret is None:
            logger.debug("Vault secret %s not found, leaving reference", ref.name)
            return _UNRESOLVED
        value = lookup_path(secret, ref.path)
        if not isinstance(value, str):
            logger.debug("Vault secret %s has no string at %s", ref.name, ".".join(ref.path))
            return _UNRESOLVED
        logger.debug("Filled vault reference for secret %s", ref.name)
        return value

    return _substitute(document, (VaultRef,), resolve_one, embedded=False)


def resolve_inventory_refs(document: Any, inventory: Union[Inventory, Dict[str, Any]]) -> Any:
    """Fill ``inventory:<path>`` tokens from the inventory document."""
    root = dump_inventory(inventory) if isinstance(inventory, Inventory) else inventory

    def resolve_one(ref: InventoryRef) -> Any:
        value = lookup_path(root, ref.path)
        if value is None:
            logger.debug("Inventory reference %s not found", ref.text)
            return _UNRESOLVED
        return value

    return _substitute(document, (InventoryRef,), resolve_one)


def resolve_config_refs(document: Any) -> Any:
    """Fill ``config:<path>`` tokens from the document itself.

    Lookups read the document as it was when the pass started.
    """
    root = document

    def resolve_one(ref: ConfigRef) -> Any:
        value = lookup_path(root, ref.path)
        if value is None:
            logger.debug("Config reference %s not found", ref.text)
            return _UNRESOLVED
        return value

    return _substitute(document, (ConfigRef,), resolve_one)


def resolve_vmid_refs(document: Any, ledger: ReservationLedger, destroy: bool = False) -> Any:
    """Replace ``<vm|lxc>:id:<label>`` tokens with reserved (or released) VM IDs."""
    return _substitute(
        document, (VmIdRef,), lambda ref: ledger.vmid(ref.vm_type, ref.text, destroy=destroy), embedded=False
    )


def resolve_ip_refs(document: Any, ledger: ReservationLedger, destroy: bool = False) -> Any:
    """Replace ``ip:<network>:<label>`` tokens with reserved (or released) addresses."""
    return _substitute(
        document, (IpRef,), lambda ref: ledger.ip(ref.network, ref.text, destroy=destroy), embedded=False
    )


def resolve_host_ip_refs(document: Any, host_ip: Callable[[], str]) -> Any:
    """Replace ``host:ip`` tokens with the address ``host_ip`` reports.

    ``host_ip`` is called at most once, and only when the document
    contains a token.
    """
    found: List[str] = []

    def resolve_one(ref: HostIpRef) -> str:
        if not found:
            found.append(host_ip())
        return found[0]

    return _substitute(document, (HostIpRef,), resolve_one)


def resolve(
    document: Any,
    inventory: Union[Inventory, Dict[str, Any], None],
    context: Optional[ResolutionContext] = None,
) -> Any:
    """Run every applicable pass over ``document`` and return the result.

    The input document is not modified. When secrets are supplied the
    inventory is filled from the vault too, before inventory lookups.
    """
    context = context or ResolutionContext()
    inventory_doc = dump_inventory(inventory) if isinstance(inventory, Inventory) else inventory

    if context.secrets is not None:
        logger.info("Resolving vault references")
        document = resolve_vault_refs(document, context.secrets)
        if inventory_doc is not None:
            inventory_doc = resolve_vault_refs(inventory_doc, context.secrets)

    if inventory_doc is not None:
        logger.info("Resolving inventory references")
        document = resolve_inventory_refs(document, inventory_doc)

    logger.info("Resolving config references")
    document = resolve_config_refs(document)

    if context.ledger is not None:
        logger.info("Resolving VM ID references")
        document = resolve_vmid_refs(document, context.ledger, destroy=context.destroy)
        logger.info("Resolving IP address references")
        document = resolve_ip_refs(document, context.ledger, destroy=context.destroy)

    if context.host_ip is not None:
        document = resolve_host_ip_refs(document, context.host_ip)

    return document


def find_unresolved(document: Any) -> List[str]:
    """Return the text of every reference token left in ``document``."""
    found: List[str] = []

    def collect(value: str) -> str:
        for ref in find_references(value):
            if ref.text not in found:
                found.append(ref.text)
        return value

    _walk(document, collect)
    return found


def ensure_resolved(document: Any) -> None:
    """Raise if any reference token is left in ``document``.

    Raises:
        UnresolvedReference: Listing every remaining token
    """
    remaining = find_unresolved(document)
    if remaining:
        raise UnresolvedReference(remaining)
