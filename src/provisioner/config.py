"""Settings for the provisioner, loaded from environment variables and .env."""

from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Bitwarden CLI, same variable names the bw CLI itself uses
    bw_client_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("BW_CLIENTID", "bw_client_id")
    )
    bw_client_secret: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("BW_CLIENTSECRET", "bw_client_secret")
    )
    bw_master_password: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("BW_MASTERPASSWORD", "bw_master_password")
    )
    bw_data_dir: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("BW_DATA_DIR", "bw_data_dir")
    )
    bw_executable: str = Field(
        default="bw", validation_alias=AliasChoices("BW_EXECUTABLE", "bw_executable")
    )

    log_level: str = Field(
        default="INFO", validation_alias=AliasChoices("PROVISIONER_LOG_LEVEL", "log_level")
    )

    # Bounded poll while Proxmox downloads an ISO
    iso_poll_attempts: int = Field(
        default=24, validation_alias=AliasChoices("PROVISIONER_ISO_POLL_ATTEMPTS", "iso_poll_attempts")
    )
    iso_poll_interval: float = Field(
        default=5.0, validation_alias=AliasChoices("PROVISIONER_ISO_POLL_INTERVAL", "iso_poll_interval")
    )
    verify_ssl: bool = Field(
        default=False, validation_alias=AliasChoices("PROVISIONER_VERIFY_SSL", "verify_ssl")
    )

    @property
    def vault_enabled(self) -> bool:
        """Check if Bitwarden API credentials are configured."""
        return bool(self.bw_client_id and self.bw_client_secret)


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
