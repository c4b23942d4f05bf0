"""
Terraform run workflow.

A manifest names a Terraform module (a git repository) and the variables
to pass it. Variables may hold reference tokens; they are resolved
against the inventory, VM IDs and addresses are reserved, and the module
is cloned, planned and applied. Reservations reach the inventory file
only after ``terraform apply`` succeeds.

Example manifest:

    {
      "module": "https://git.example.com/tf/proxmox-vm.git",
      "branch": "main",
      "variables": {
        "server_name": "web01",
        "vm_id": "vm:id:web01",
        "ip_address": "ip:lan:web01",
        "gateway": "inventory:networks.lan.gateway",
        "api_token": "{inventory:proxmox.api_token}"
      }
    }
"""

import json
import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from provisioner.config import Settings, get_settings
from provisioner.errors import ManifestInvalid
from provisioner.executor import Executor
from provisioner.inventory import load_inventory
from provisioner.ledger import ReservationLedger
from provisioner.resolver import ResolutionContext, ensure_resolved, resolve, resolve_vault_refs
from provisioner.vault import fetch_secrets

logger = logging.getLogger(__name__)


class TerraformManifest(BaseModel):
    """Schema of a Terraform manifest. Extra keys may be used as ``config:`` sources."""

    model_config = ConfigDict(extra="allow")

    module: str
    branch: str = "master"
    path: Optional[str] = None
    type: Literal["vm", "lxc"] = "vm"
    variables: Dict[str, Any] = Field(default_factory=dict)


def parse_terraform_manifest(data: Any) -> TerraformManifest:
    try:
        return TerraformManifest.model_validate(data)
    except ValidationError as e:
        raise ManifestInvalid(f"Invalid Terraform manifest: {e}") from e


def _tf_value(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


class TerraformRun:
    """One init/plan/apply cycle of a Terraform module.

    Call ``init`` first, then ``plan`` and ``apply``. ``cleanup`` removes
    the cloned module and is safe to call at any point.
    """

    def __init__(
        self,
        manifest: Dict[str, Any],
        inventory_file: Union[str, Path],
        settings: Optional[Settings] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self.document = manifest
        self.manifest = parse_terraform_manifest(manifest)
        self.inventory_file = Path(inventory_file)
        self.settings = settings or get_settings()
        self.executor = executor or Executor()

        self.inventory_doc: Dict[str, Any] = {}
        self.ledger: Optional[ReservationLedger] = None
        self.clone_dir: Optional[str] = None
        self.module_dir: Optional[str] = None
        self.plan_file: Optional[str] = None

    @property
    def allocations(self) -> Dict[str, Union[int, str]]:
        """VM IDs and addresses this run reserved or released, by refId."""
        return dict(self.ledger.resolved) if self.ledger else {}

    def init(self, destroy: bool = False) -> None:
        """Resolve every reference in the manifest and clone the module.

        In destroy mode VM ID and IP tokens release their reservations
        instead of creating them.

        Raises:
            SchemaInvalid: If the inventory is invalid
            AllocationError: If a VM ID or address cannot be allocated
            UnresolvedReference: If any token is still unresolved
            CommandFailed: If the clone fails
        """
        store = load_inventory(self.inventory_file)
        secrets = fetch_secrets(self.settings)

        # Secrets are filled into a copy only; the ledger works on the raw inventory
        self.inventory_doc = store.document()
        if secrets is not None:
            self.inventory_doc = resolve_vault_refs(self.inventory_doc, secrets)

        self.ledger = ReservationLedger(store.inventory)
        context = ResolutionContext(secrets=secrets, ledger=self.ledger, destroy=destroy)
        resolved = resolve(self.document, self.inventory_doc, context)
        ensure_resolved(resolved)
        self.document = resolved
        self.manifest = parse_terraform_manifest(resolved)

        for ref_id, value in self.allocations.items():
            logger.info("%s %s -> %s", "Releasing" if destroy else "Using", ref_id, value)

        clone_dir = tempfile.mkdtemp(prefix="provisioner-tf-")
        self.clone_dir = clone_dir
        logger.info("Cloning Terraform module %s (%s) into %s", self.manifest.module, self.manifest.branch, clone_dir)
        self.executor.run("git", ["clone", self.manifest.module, "-b", self.manifest.branch, clone_dir])
        self.module_dir = os.path.normpath(os.path.join(clone_dir, self.manifest.path or "."))

    def backend_args(self) -> List[str]:
        """``-backend-config`` arguments from the inventory plus the state key.

        The state key is ``<server_name>-<vm_id>.tfstate`` so each machine
        gets its own state.
        """
        backend = self.inventory_doc.get("terraform", {}).get("backend", {})
        args = [f"-backend-config={key}={_tf_value(value)}" for key, value in backend.get("config", {}).items()]

        server_name = self.manifest.variables.get("server_name")
        vm_id = self.manifest.variables.get("vm_id")
        if server_name is None or vm_id is None:
            raise ManifestInvalid("variables.server_name and variables.vm_id are required to name the state file")
        args.append(f"-backend-config=key={server_name}-{vm_id}.tfstate")
        return args

    def variables_env(self) -> Dict[str, str]:
        """Manifest variables as ``TF_VAR_`` environment variables."""
        return {f"TF_VAR_{key}": _tf_value(value) for key, value in self.manifest.variables.items()}

    def _require_init(self) -> str:
        if self.module_dir is None:
            raise RuntimeError("TerraformRun.init() must be called first")
        return self.module_dir

    def plan(self, destroy: bool = False) -> str:
        """Run ``terraform init`` and ``terraform plan``; return the plan file path."""
        module_dir = self._require_init()
        env = self.variables_env()

        self.executor.run("terraform", [f"-chdir={module_dir}", "init", *self.backend_args()], env, stream=True)

        self.plan_file = os.path.join(module_dir, f"provisioner-tfplan-{int(time.time())}")
        plan_args = [f"-chdir={module_dir}", "plan", f"-out={self.plan_file}"]
        if destroy:
            plan_args.append("-destroy")
        self.executor.run("terraform", plan_args, env, stream=True)
        return self.plan_file

    def apply(self) -> None:
        """Apply the saved plan, then commit this run's reservations.

        Nothing is written to the inventory if the apply fails.
        """
        module_dir = self._require_init()
        apply_args = [f"-chdir={module_dir}", "apply", "-auto-approve"]
        if self.plan_file:
            apply_args.append(self.plan_file)
        self.executor.run("terraform", apply_args, self.variables_env(), stream=True)

        if self.ledger is not None:
            self.ledger.commit(self.inventory_file)

    def cleanup(self) -> None:
        if self.clone_dir and os.path.isdir(self.clone_dir):
            shutil.rmtree(self.clone_dir, ignore_errors=True)
            logger.debug("Removed %s", self.clone_dir)
        self.clone_dir = None
