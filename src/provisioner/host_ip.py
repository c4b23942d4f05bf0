"""Find the build host's address on an inventory network.

Packer preseed files are served over HTTP from the machine running the
build, so templates reference ``{host:ip}`` and it is filled in from that
machine's current interfaces.
"""

import ipaddress
import logging
import re
from typing import Optional

from provisioner.errors import InvalidRange, NetworkNotFound, UnresolvedReference
from provisioner.executor import Executor
from provisioner.inventory import Inventory
from provisioner.references import HOST_IP

logger = logging.getLogger(__name__)

INET_RE = re.compile(r"^inet6?\s+(?P<address>[0-9a-fA-F:.]+)/(?P<prefix>\d+)")


def find_host_ip(subnet: str, output: str) -> Optional[str]:
    """Return the first address in ``ip addr show`` output that lies in ``subnet``.

    A subnet without a prefix length matches only itself.
    """
    try:
        network = ipaddress.ip_network(subnet, strict=False)
    except ValueError as e:
        raise InvalidRange(f"Invalid subnet {subnet!r}", subject=subnet) from e
    for line in output.splitlines():
        match = INET_RE.match(line.strip())
        if not match:
            continue
        try:
            address = ipaddress.ip_address(match.group("address"))
        except ValueError:
            continue
        if address.version == network.version and address in network:
            return str(address)
    return None


class HostIpProvider:
    """Callable that looks up the host address once and remembers it."""

    def __init__(self, executor: Executor, inventory: Inventory, network_name: str) -> None:
        self.executor = executor
        self.inventory = inventory
        self.network_name = network_name
        self._address: Optional[str] = None

    def __call__(self) -> str:
        if self._address is not None:
            return self._address

        network = self.inventory.network(self.network_name)
        if network is None:
            raise NetworkNotFound(f"Network not found: {self.network_name}", subject=self.network_name)

        output = self.executor.run("ip", ["addr", "show"])
        address = find_host_ip(network.subnet, output)
        if address is None:
            raise UnresolvedReference(
                [HOST_IP], f"No address on network {self.network_name} ({network.subnet}) found on build host"
            )
        logger.info("Build host address on %s is %s", self.network_name, address)
        self._address = address
        return address
