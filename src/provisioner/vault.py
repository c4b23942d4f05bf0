"""Bitwarden CLI session for filling ``vault:`` references."""

import json
import logging
import os
import subprocess
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from provisioner.config import Settings
from provisioner.errors import VaultError
from provisioner.resolver import resolve_vault_refs

logger = logging.getLogger(__name__)


class BitwardenVault:
    """Drives the ``bw`` CLI with API-key login.

    ``login``, ``unlock`` and ``list`` must run in that order before
    ``fill``. Use ``session()`` to get the lock and logout afterwards.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        master_password: Optional[str] = None,
        data_dir: Optional[str] = None,
        executable: str = "bw",
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.master_password = master_password
        self.data_dir = data_dir
        self.executable = executable
        self.session_key: Optional[str] = None
        self.secrets: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "BitwardenVault":
        return cls(
            client_id=settings.bw_client_id or "",
            client_secret=settings.bw_client_secret or "",
            master_password=settings.bw_master_password,
            data_dir=settings.bw_data_dir,
            executable=settings.bw_executable,
        )

    def _bw(self, args: Sequence[str], env: Dict[str, str], ok_codes: Sequence[int] = (0,)) -> str:
        full_env = {**os.environ, **env}
        if self.data_dir:
            full_env["BW_DATA_DIR"] = self.data_dir
        try:
            result = subprocess.run(
                [self.executable, *args],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                env=full_env,
                check=False,
            )
        except OSError as e:
            raise VaultError(f"Unable to run {self.executable}: {e}") from e
        if result.returncode not in ok_codes:
            raise VaultError(f"bw {args[0]} failed with code {result.returncode}: {result.stderr.strip()}")
        return result.stdout.strip()

    def _session_env(self) -> Dict[str, str]:
        return {"BW_SESSION": self.session_key} if self.session_key else {}

    def login(self) -> None:
        # Exit code 1 means already logged in
        self._bw(
            ["login", "--apikey"],
            {"BW_CLIENTID": self.client_id, "BW_CLIENTSECRET": self.client_secret},
            ok_codes=(0, 1),
        )
        logger.debug("Logged in to Bitwarden")

    def unlock(self) -> str:
        """Unlock the vault and keep the session key for later calls."""
        session_key = self._bw(
            ["unlock", "--passwordenv", "BW_PASSWORD", "--raw"],
            {"BW_PASSWORD": self.master_password or ""},
            ok_codes=(0, 1),
        )
        if not session_key:
            raise VaultError("bw unlock returned no session key")
        self.session_key = session_key
        logger.debug("Unlocked Bitwarden vault")
        return session_key

    def list(self) -> List[Dict[str, Any]]:
        """Fetch every item in the vault."""
        output = self._bw(["list", "items"], self._session_env())
        try:
            items = json.loads(output)
        except json.JSONDecodeError as e:
            raise VaultError(f"bw list returned invalid JSON: {e}") from e
        if not isinstance(items, list):
            raise VaultError("bw list did not return a list of items")
        self.secrets = items
        logger.info("Fetched %d items from Bitwarden", len(items))
        return items

    def fill(self, document: Any) -> Any:
        """Return ``document`` with its ``vault:`` references filled in."""
        secrets = self.secrets if self.secrets is not None else self.list()
        return resolve_vault_refs(document, secrets)

    def lock(self) -> None:
        # Exit code 1 means already locked
        self._bw(["lock"], self._session_env(), ok_codes=(0, 1))
        self.session_key = None

    def logout(self) -> None:
        self._bw(["logout"], self._session_env())
        self.secrets = None

    def close(self) -> None:
        """Lock and log out, logging rather than raising on failure."""
        for step in (self.lock, self.logout):
            try:
                step()
            except VaultError as e:
                logger.warning("Bitwarden %s failed: %s", step.__name__, e)

    @contextmanager
    def session(self) -> Iterator["BitwardenVault"]:
        """Log in, unlock and list; always lock and log out on exit."""
        try:
            self.login()
            self.unlock()
            self.list()
            yield self
        finally:
            self.close()


def fetch_secrets(settings: Settings) -> Optional[List[Dict[str, Any]]]:
    """Return every vault item, or None when no Bitwarden credentials are set."""
    if not settings.vault_enabled:
        logger.warning("BW_CLIENTID/BW_CLIENTSECRET not set, skipping vault references")
        return None
    with BitwardenVault.from_settings(settings).session() as vault:
        return list(vault.secrets or [])
