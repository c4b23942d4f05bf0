from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
import logging

from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException
import requests

from provisioner.errors import ProxmoxError
from provisioner.inventory import ProxmoxConfig

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8006


def parse_endpoint(endpoint: str) -> tuple[str, int]:
    """Split an endpoint such as ``https://pve:8006/api2/json`` into host and port."""
    if "://" not in endpoint:
        endpoint = f"https://{endpoint}"
    parsed = urlparse(endpoint)
    if not parsed.hostname:
        raise ProxmoxError(f"Invalid Proxmox endpoint: {endpoint}")
    return parsed.hostname, parsed.port or DEFAULT_PORT


class ProxmoxClient:
    """Proxmox API calls the Packer workflow needs, using token auth."""

    def __init__(self, config: ProxmoxConfig, verify_ssl: bool = False) -> None:
        self.node = config.node
        self.host, self.port = parse_endpoint(config.endpoint)

        # api_user is "user@realm!tokenname"
        if "!" not in config.api_user:
            raise ProxmoxError(f"api_user must be of the form user@realm!token, got {config.api_user}")
        self.user, self.token_name = config.api_user.split("!", 1)

        self.api = ProxmoxAPI(
            self.host,
            port=self.port,
            user=self.user,
            token_name=self.token_name,
            token_value=config.api_token,
            verify_ssl=verify_ssl,
        )

    def _node(self) -> Any:
        return self.api.nodes(self.node)

    def check_for_iso(self, storage: str, iso_file: str) -> bool:
        """Check if ``iso_file`` (a volid like ``local:iso/debian.iso``) is on ``storage``."""
        try:
            content: List[Dict[str, Any]] = self._node().storage(storage).content.get(content="iso")
        except (ResourceException, requests.exceptions.RequestException) as e:
            raise ProxmoxError(f"Failed to list storage content: {e}") from e
        return any(item.get("volid") == iso_file for item in content)

    def download_iso(self, storage: str, iso_file: str, iso_url: str) -> str:
        """Start a download of ``iso_url`` into ``storage``. Returns the task id."""
        filename = iso_file.split("/")[-1]
        logger.info(f"Downloading {iso_url} to {storage} as {filename}")
        try:
            return self._node().storage(storage)("download-url").post(  # type: ignore[no-any-return]
                url=iso_url, filename=filename, content="iso"
            )
        except (ResourceException, requests.exceptions.RequestException) as e:
            raise ProxmoxError(f"Proxmox ISO download via API failed: {e}") from e

    def get_template_info(self, name: str) -> Optional[Dict[str, Any]]:
        """Return the QEMU VM called ``name``, or None."""
        try:
            vms: List[Dict[str, Any]] = self._node().qemu.get()
        except (ResourceException, requests.exceptions.RequestException) as e:
            raise ProxmoxError(f"Failed to list VMs: {e}") from e
        for vm in vms:
            if vm.get("name") == name:
                return vm
        return None

    def delete_template(self, vmid: int) -> None:
        try:
            self._node().qemu(vmid).delete()
        except (ResourceException, requests.exceptions.RequestException) as e:
            raise ProxmoxError(f"Failed to delete VM {vmid}: {e}") from e
        logger.info(f"Deleted template {vmid}")
