"""Loading of manifests and the small JSON side files the CLI accepts.

Manifests may be JSON or YAML; the suffix decides (``.yaml``/``.yml`` are
YAML, everything else is JSON).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from provisioner.errors import ManifestInvalid

CLIENT_ID_KEYS = ("BW_CLIENTID", "clientId", "client_id")
CLIENT_SECRET_KEYS = ("BW_CLIENTSECRET", "clientSecret", "client_secret")


def load_document(path: str | Path) -> Any:
    """Parse a JSON or YAML file.

    Raises:
        FileNotFoundError: If ``path`` does not exist
        ManifestInvalid: If the file cannot be parsed
    """
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        try:
            if path.suffix.lower() in (".yaml", ".yml"):
                return yaml.safe_load(f)
            return json.load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ManifestInvalid(f"Error parsing {path}: {e}") from e


def load_manifest(path: str | Path) -> dict[str, Any]:
    """Load a workflow manifest, which must be a mapping."""
    data = load_document(path)
    if not isinstance(data, dict):
        raise ManifestInvalid(f"Manifest {path} must contain an object at the top level")
    return data


def _first(data: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        if data.get(key):
            return str(data[key])
    return None


def load_bw_auth(path: str | Path) -> tuple[str, str]:
    """Read Bitwarden API credentials from a JSON file.

    Accepts ``BW_CLIENTID``, ``clientId`` or ``client_id`` (and the
    matching secret keys).
    """
    data = load_document(path)
    if not isinstance(data, dict):
        raise ManifestInvalid(f"Auth file {path} must contain an object")
    client_id = _first(data, CLIENT_ID_KEYS)
    client_secret = _first(data, CLIENT_SECRET_KEYS)
    if not client_id or not client_secret:
        raise ManifestInvalid("auth file missing client id/secret")
    return client_id, client_secret


def load_ssh_info(path: str | Path) -> dict[str, Any]:
    """Read SSH connection details (host, username, private_key, port)."""
    data = load_document(path)
    if not isinstance(data, dict):
        raise ManifestInvalid(f"SSH info file {path} must contain an object")
    return data
