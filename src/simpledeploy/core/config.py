"""Configuration management for SimpleDeploy."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from simpledeploy.core.exceptions import ConfigurationError


ALLOW_ALL = "*"


class DeploymentNameConfig(BaseModel):
    """Agent-side policy for one deployment name.

    Boolean options set here force the behaviour on regardless of what the
    client requested.
    """

    name: str = Field(..., description="Name of deployment (can be website name)")
    domain: str = Field("", description="Website domain name on the webserver")
    path: str = Field("", description="Physical path override for the destination")
    managed: bool = Field(
        False,
        validation_alias=AliasChoices("managed", "iis"),
        description="Website start/stop is delegated to the webserver",
    )
    auto_copy: bool = Field(False, description="Copy staged files after the script completes")
    auto_extract: bool = Field(False, description="Extract zip artifacts before the script runs")
    clean_before_deploy: bool = Field(False, description="Delete destination contents before deploying")
    stop_before_deploy: bool = Field(False, description="Stop the website before deploying")
    start_after_deploy: bool = Field(False, description="Start the website after deploying")
    backup: bool = Field(False, description="Back up the destination before deploying")


class DeploymentNamesConfig(BaseModel):
    """Deployment names that may be submitted, and their policies."""

    allow: List[str] = Field(default_factory=list, description="Allowed names, '*' for all")
    configurations: List[DeploymentNameConfig] = Field(default_factory=list)

    def is_allowed(self, name: str) -> bool:
        lowered = name.lower()
        return any(entry == ALLOW_ALL or entry.lower() == lowered for entry in self.allow)

    def find(self, name: str) -> Optional[DeploymentNameConfig]:
        lowered = name.lower()
        for config in self.configurations:
            if config.name.lower() == lowered:
                return config
        return None

    def policy_for(self, name: str) -> DeploymentNameConfig:
        """Return the configured policy, or the default for unknown names.

        Unconfigured sites are stopped before and started after deploying,
        which only has an effect when the job marks the site as managed.
        """
        config = self.find(name)
        if config is not None:
            return config
        return DeploymentNameConfig(name=name, stop_before_deploy=True, start_after_deploy=True)


class Settings(BaseSettings):
    """Agent configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="SIMPLEDEPLOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server configuration
    host: str = Field("0.0.0.0", description="Address to listen on")
    port: int = Field(5001, description="Server port")
    ssl_certfile: Optional[str] = Field(None, description="TLS certificate, enables https")
    ssl_keyfile: Optional[str] = Field(None, description="TLS private key")
    max_deployment_size: int = Field(
        1000 * 1024 * 1024,
        description="Maximum size of all artifacts of a single deployment in bytes",
    )

    # Security
    username: str = Field("", description="Username to access the agent")
    password: str = Field("", description="Password to access the agent")
    auth_token: str = Field("", description="Shared token to access the agent")
    ip_whitelist: Union[List[str], str] = Field(
        default_factory=list,
        description="Allowed client addresses or ranges, empty allows all",
    )

    # Storage
    working_folder: str = Field("/var/lib/simpledeploy", description="Root of jobs and backups")
    jobs_folder: str = Field("Jobs", description="Jobs folder, relative to working_folder")
    backups_folder: str = Field("Backups", description="Backups folder, relative to working_folder")
    log_folder: Optional[str] = Field(None, description="Per-deployment log folder")
    min_free_space: int = Field(100 * 1024 * 1024, description="Minimum free bytes to allow deployments")
    max_backup_files: int = Field(10, description="Backups to keep per deployment name")
    cleanup_after_deploy: bool = Field(True, description="Remove job files once deployed")

    # Deployment targets
    webserver: str = Field("none", description="Webserver control adapter: none or iis")
    deployment_names: DeploymentNamesConfig = Field(default_factory=DeploymentNamesConfig)

    # Queue
    queue_poll_interval: float = Field(0.25, description="Worker poll interval in seconds")
    reaper_interval: float = Field(60.0, description="Reaper scan interval in seconds")
    job_retention_seconds: float = Field(3600.0, description="How long completed jobs stay queryable")

    # Scripts
    script_timeout_seconds: Optional[float] = Field(
        None, description="Kill deployment scripts running longer than this, unset for no limit"
    )
    inline_script_filename: str = Field("deploy.ps1", description="Filename for inline scripts")
    powershell_executable: str = Field("powershell.exe", description="PowerShell used for .ps1 scripts")

    # Observability
    log_level: str = Field("INFO")
    log_format: str = Field("json")
    metrics_enabled: bool = Field(True)

    @field_validator("ip_whitelist", mode="before")
    @classmethod
    def parse_ip_whitelist(cls, v: Any) -> List[str]:
        """Parse comma-separated address ranges."""
        if v is None:
            return []
        if isinstance(v, str):
            return [entry.strip() for entry in v.split(",") if entry.strip()]
        return [str(entry).strip() for entry in v if str(entry).strip()]

    @field_validator("webserver")
    @classmethod
    def validate_webserver(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("none", "iis"):
            raise ValueError(f"Unsupported webserver: {v}")
        return v

    @property
    def ip_whitelist_list(self) -> List[str]:
        if isinstance(self.ip_whitelist, str):
            return self.parse_ip_whitelist(self.ip_whitelist)
        return list(self.ip_whitelist)

    @property
    def jobs_path(self) -> Path:
        return Path(self.working_folder) / self.jobs_folder

    @property
    def backups_path(self) -> Path:
        return Path(self.working_folder) / self.backups_folder

    @property
    def log_path(self) -> Path:
        if self.log_folder:
            return Path(self.log_folder)
        return Path(self.working_folder) / "Logs"

    @property
    def use_https(self) -> bool:
        return bool(self.ssl_certfile and self.ssl_keyfile)

    @property
    def authentication_mode(self) -> str:
        if self.username:
            return "user"
        if self.auth_token:
            return "token"
        return "none"


def load_settings(config_file: Optional[Union[str, Path]] = None, **overrides: Any) -> Settings:
    """Build settings from an optional YAML file.

    Values from the file and explicit overrides take precedence over the
    environment.
    """
    data: Dict[str, Any] = {}
    if config_file:
        path = Path(config_file)
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Unable to load configuration from '{path}': {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Configuration file '{path}' must contain a mapping")
        data.update(loaded)
    data.update(overrides)
    try:
        return Settings(**data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
