"""
Packer template build workflow.

Builds a Proxmox VM template from a Packer repository: makes sure the
install ISO is on Proxmox storage, allocates a template VM ID, runs
``packer build`` (locally or on a build host over SSH) and records the
template in the inventory.
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from provisioner.allocator import next_vmid
from provisioner.config import Settings, get_settings
from provisioner.errors import CommandFailed, ManifestInvalid, ProxmoxError, TemplateExists
from provisioner.executor import Executor, SshInfo
from provisioner.host_ip import HostIpProvider
from provisioner.inventory import Inventory, ProxmoxConfig, Template, load_inventory, persist_inventory
from provisioner.proxmox import ProxmoxClient
from provisioner.resolver import ResolutionContext, ensure_resolved, resolve, resolve_vault_refs
from provisioner.vault import fetch_secrets

logger = logging.getLogger(__name__)


class PackerManifest(BaseModel):
    """Schema of a Packer manifest."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    version: str
    iso_url: str
    iso_file: str = Field(pattern=r"^[^:]+:.+$")
    packer_template_url: str
    network: str
    variables: Dict[str, str] = Field(default_factory=dict)
    iso_path: Optional[str] = Field(default=None, validation_alias=AliasChoices("iso_path", "isoPath"))
    ssh: Optional[SshInfo] = None

    @property
    def storage(self) -> str:
        """Storage part of ``iso_file`` (``local`` in ``local:iso/debian.iso``)."""
        return self.iso_file.split(":", 1)[0]


def parse_packer_manifest(data: Any) -> PackerManifest:
    try:
        return PackerManifest.model_validate(data)
    except ValidationError as e:
        raise ManifestInvalid(f"Invalid Packer manifest: {e}") from e


class PackerRun:
    """Build one template. Call ``init`` and then ``build``."""

    def __init__(
        self,
        manifest: Dict[str, Any],
        inventory_file: Union[str, Path],
        settings: Optional[Settings] = None,
        executor: Optional[Executor] = None,
        proxmox_factory: Callable[..., ProxmoxClient] = ProxmoxClient,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.document = manifest
        self.manifest = parse_packer_manifest(manifest)
        self.inventory_file = Path(inventory_file)
        self.settings = settings or get_settings()
        self.executor = executor or Executor(ssh=self.manifest.ssh)
        self.proxmox_factory = proxmox_factory
        self.sleep = sleep

        self.inventory: Optional[Inventory] = None
        self.proxmox: Optional[ProxmoxClient] = None
        self.vmid: Optional[int] = None

    def init(self) -> None:
        """Resolve the manifest's references and connect to Proxmox.

        ``{host:ip}`` is filled with the build host's address on the
        manifest's network.
        """
        store = load_inventory(self.inventory_file)
        self.inventory = store.inventory
        secrets = fetch_secrets(self.settings)

        inventory_doc = store.document()
        if secrets is not None:
            inventory_doc = resolve_vault_refs(inventory_doc, secrets)

        host_ip = HostIpProvider(self.executor, store.inventory, self.manifest.network)
        context = ResolutionContext(secrets=secrets, host_ip=host_ip)
        resolved = resolve(self.document, inventory_doc, context)
        ensure_resolved(resolved)
        self.document = resolved
        self.manifest = parse_packer_manifest(resolved)

        proxmox_config = ProxmoxConfig.model_validate(inventory_doc["proxmox"])
        self.proxmox = self.proxmox_factory(proxmox_config, verify_ssl=self.settings.verify_ssl)
        logger.info(
            "Packer build of %s %s will run %s",
            self.manifest.name,
            self.manifest.version,
            f"on {self.manifest.ssh.host} over SSH" if self.manifest.ssh else "locally",
        )

    def _require_init(self) -> Tuple[ProxmoxClient, Inventory]:
        if self.proxmox is None or self.inventory is None:
            raise RuntimeError("PackerRun.init() must be called first")
        return self.proxmox, self.inventory

    def ensure_iso(self) -> None:
        """Download the ISO to Proxmox storage unless it is already there.

        Raises:
            ProxmoxError: If the ISO is still missing after the bounded poll
        """
        proxmox, _ = self._require_init()
        storage, iso_file = self.manifest.storage, self.manifest.iso_file
        if proxmox.check_for_iso(storage, iso_file):
            logger.info("ISO %s already present", iso_file)
            return

        proxmox.download_iso(storage, iso_file, self.manifest.iso_url)
        for attempt in range(1, self.settings.iso_poll_attempts + 1):
            self.sleep(self.settings.iso_poll_interval)
            if proxmox.check_for_iso(storage, iso_file):
                logger.info("ISO %s available after %d checks", iso_file, attempt)
                return
        raise ProxmoxError(
            f"ISO {iso_file} not available after {self.settings.iso_poll_attempts} checks"
        )

    @property
    def build_dir(self) -> str:
        return f"/tmp/packer_{self.manifest.name}"

    def build(self, override: bool = False) -> int:
        """Build the template and record it in the inventory. Returns its VM ID.

        Raises:
            TemplateExists: If a VM with the template's name exists and
                ``override`` is not set
            CommandFailed: If the clone or ``packer build`` fails
        """
        proxmox, inventory = self._require_init()

        self.ensure_iso()
        existing = proxmox.get_template_info(self.manifest.name)
        if existing:
            if not override:
                raise TemplateExists(f"Template {self.manifest.name} already exists and override is not set")
            logger.info("Template %s exists with id %s, deleting", self.manifest.name, existing.get("vmid"))
            proxmox.delete_template(int(existing["vmid"]))

        vmid = next_vmid("template", inventory)
        self.vmid = vmid
        logger.info("Using VMID %d for new template", vmid)

        variables = dict(self.manifest.variables)
        variables["id"] = str(vmid)
        env = {f"PKR_VAR_{key}": value for key, value in variables.items()}

        build_dir = self.build_dir
        self.executor.run("rm", ["-rf", build_dir])
        try:
            self.executor.run("git", ["clone", self.manifest.packer_template_url, build_dir])
            logger.info("Running Packer build")
            self.executor.run("packer", ["build", build_dir], env, stream=True, cwd=build_dir)
            self._record_template(inventory, vmid)
        finally:
            self._remove_build_dir(build_dir)

        logger.info("Packer build of %s completed", self.manifest.name)
        return vmid

    def _record_template(self, inventory: Inventory, vmid: int) -> None:
        template = Template(name=self.manifest.name, version=self.manifest.version, vmid=vmid)
        current = inventory.template(template.name)
        if current is None:
            inventory.templates.append(template)
        else:
            inventory.templates[inventory.templates.index(current)] = template
        persist_inventory(self.inventory_file, inventory, fields=("templates",))

    def _remove_build_dir(self, build_dir: str) -> None:
        try:
            self.executor.run("rm", ["-rf", build_dir])
        except CommandFailed as e:
            logger.warning("Could not remove %s: %s", build_dir, e)
