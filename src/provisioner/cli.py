#!/usr/bin/env python3
"""
Provisioner CLI - resolve manifests against the inventory and run them.

    provisioner terraform --manifest web01.json --inventory-file inventory.json
    provisioner terraform --manifest web01.json --inventory-file inventory.json --destroy
    provisioner packer --manifest debian-12.json --inventory-file inventory.json --ssh-info build-host.json

Bitwarden credentials come from BW_CLIENTID/BW_CLIENTSECRET (or a .env
file), or from a JSON file passed with --bw-auth.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from provisioner.config import get_settings
from provisioner.errors import ProvisionerError
from provisioner.manifest import load_bw_auth, load_manifest, load_ssh_info
from provisioner.packer import PackerRun
from provisioner.terraform import TerraformRun

app = typer.Typer(
    name="provisioner",
    help="Inventory-backed Terraform and Packer runs for Proxmox",
    add_completion=False,
)
console = Console(emoji=False)
logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)8s] %(name)s: %(message)s"


def _use_bw_auth(path: Path) -> None:
    """Export credentials from an auth file so the settings and ``bw`` see them."""
    client_id, client_secret = load_bw_auth(path)
    os.environ["BW_CLIENTID"] = client_id
    os.environ["BW_CLIENTSECRET"] = client_secret


def _print_allocations(allocations: Dict[str, Union[int, str]], title: str) -> None:
    if not allocations:
        return
    table = Table(title=title)
    table.add_column("Reference", style="cyan")
    table.add_column("Value", style="bold")
    for ref_id, value in allocations.items():
        table.add_row(escape(ref_id), escape(str(value)))
    console.print(table)


@app.command("terraform")
def terraform_command(
    manifest: Path = typer.Option(
        ..., "--manifest", "-m", exists=True, dir_okay=False, help="Terraform manifest (JSON or YAML)"
    ),
    inventory_file: Path = typer.Option(
        ..., "--inventory-file", "-i", exists=True, dir_okay=False, help="Inventory JSON file"
    ),
    bw_auth: Optional[Path] = typer.Option(
        None, "--bw-auth", exists=True, dir_okay=False, help="JSON file with Bitwarden client id/secret"
    ),
    destroy: bool = typer.Option(False, "--destroy", help="Destroy the resources and release their reservations"),
) -> None:
    """
    Resolve a Terraform manifest, then init, plan and apply its module.

    VM ID and IP reservations are written to the inventory only after
    the apply succeeds.
    """
    action = "destroy" if destroy else "apply"
    run: Optional[TerraformRun] = None
    try:
        if bw_auth:
            _use_bw_auth(bw_auth)
        run = TerraformRun(load_manifest(manifest), inventory_file, settings=get_settings())
        run.init(destroy=destroy)
        _print_allocations(run.allocations, "Released" if destroy else "Reserved")
        run.plan(destroy=destroy)
        run.apply()
    except ProvisionerError as e:
        console.print(f"❌ Terraform {action} failed: {escape(str(e))}", soft_wrap=True)
        logger.debug("Terraform %s error", action, exc_info=True)
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"❌ Terraform {action} failed: {escape(str(e))}", soft_wrap=True)
        logger.exception("Terraform %s error", action)
        raise typer.Exit(1)
    finally:
        if run is not None:
            run.cleanup()

    console.print(f"✅ Terraform {action} finished successfully")


@app.command("packer")
def packer_command(
    manifest: Path = typer.Option(
        ..., "--manifest", "-m", exists=True, dir_okay=False, help="Packer manifest (JSON or YAML)"
    ),
    inventory_file: Path = typer.Option(
        ..., "--inventory-file", "-i", exists=True, dir_okay=False, help="Inventory JSON file"
    ),
    bw_auth: Optional[Path] = typer.Option(
        None, "--bw-auth", exists=True, dir_okay=False, help="JSON file with Bitwarden client id/secret"
    ),
    ssh_info: Optional[Path] = typer.Option(
        None, "--ssh-info", exists=True, dir_okay=False, help="JSON file with build host SSH details"
    ),
    override: bool = typer.Option(False, "--override", help="Replace the template if it already exists"),
) -> None:
    """
    Build a VM template with Packer and record it in the inventory.
    """
    try:
        if bw_auth:
            _use_bw_auth(bw_auth)
        document = load_manifest(manifest)
        if ssh_info:
            document["ssh"] = load_ssh_info(ssh_info)
        run = PackerRun(document, inventory_file, settings=get_settings())
        run.init()
        vmid = run.build(override=override)
    except ProvisionerError as e:
        console.print(f"❌ Packer build failed: {escape(str(e))}", soft_wrap=True)
        logger.debug("Packer build error", exc_info=True)
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"❌ Packer build failed: {escape(str(e))}", soft_wrap=True)
        logger.exception("Packer build error")
        raise typer.Exit(1)

    console.print(f"✅ Packer build finished successfully (template vmid {vmid})")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
) -> None:
    """
    Homelab provisioner

    Allocates VM IDs and static IPs from the inventory and fills in
    references before handing manifests to Terraform or Packer.
    """
    load_dotenv()
    level = get_settings().log_level.upper()
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


if __name__ == "__main__":
    app()
