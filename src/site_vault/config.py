"""Configuration models and loaders.

Adapter credentials are modelled as frozen pydantic models and handed to
each storage adapter explicitly; adapters never look configuration up on
their own. Configuration can come from a YAML file (with environment
variable substitution) or from the host's persistent key-value option
store.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from site_vault.exceptions import ConfigurationError

MIB = 1024 * 1024

MIN_SPLIT_SIZE_MB = 50
MAX_SPLIT_SIZE_MB = 1000
DEFAULT_SPLIT_SIZE_MB = 200

MIN_UPLOAD_WORKERS = 2
MAX_UPLOAD_WORKERS = 4

DEFAULT_SKIP_PATTERNS = ["/cache/", "/logs/", "/tmp/", "/.git/", "/node_modules/", ".log"]

StorageType = Literal["relay", "s3", "local"]


def clamp_split_size_mb(value: int) -> int:
    """Bound a split size in MiB to the supported range."""
    return max(MIN_SPLIT_SIZE_MB, min(MAX_SPLIT_SIZE_MB, int(value)))


class RelayConfig(BaseModel):
    """Credentials for the broker that issues signed upload URLs."""

    model_config = ConfigDict(frozen=True)

    endpoint: str = Field("http://localhost:3000", description="Broker base URL")
    site_id: str = Field("", description="Site identifier issued at registration")
    site_token: str = Field("", description="Site token issued at registration", repr=False)
    tenant_id: str = Field("default", description="Tenant segment of destination keys")

    @field_validator("endpoint")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class ObjectStoreConfig(BaseModel):
    """Credentials for an S3-compatible bucket."""

    model_config = ConfigDict(frozen=True)

    endpoint: str = Field("https://s3.amazonaws.com", description="Object store endpoint URL")
    bucket: str = Field(..., min_length=1, description="Bucket name")
    region: str = Field("us-east-1", description="Signing region")
    access_key: str = Field(..., min_length=1, description="Access key ID")
    secret_key: str = Field(..., min_length=1, description="Secret access key", repr=False)
    prefix: str = Field("", description="Optional key prefix inside the bucket")

    @field_validator("endpoint")
    @classmethod
    def normalize_endpoint(cls, v: str) -> str:
        """Default to https when no scheme is given and drop trailing slashes."""
        v = v.strip().rstrip("/")
        if not v:
            return "https://s3.amazonaws.com"
        if "://" not in v:
            v = f"https://{v}"
        return v

    @model_validator(mode="after")
    def require_region(self) -> "ObjectStoreConfig":
        """Every provider except MinIO needs an explicit signing region."""
        if not self.region and "minio" not in self.endpoint.lower():
            raise ValueError("region is required for this object store")
        return self


class LocalStoreConfig(BaseModel):
    """A directory (local disk or network mount) used as the backup target."""

    model_config = ConfigDict(frozen=True)

    path: Path = Field(..., description="Absolute directory path")

    @field_validator("path")
    @classmethod
    def require_absolute(cls, v: Path) -> Path:
        if not v.is_absolute():
            raise ValueError(f"path must be absolute: {v}")
        return v


class AdapterConfig(BaseModel):
    """Selects one storage variant and carries its credentials."""

    model_config = ConfigDict(frozen=True)

    type: StorageType = Field("relay", description="Storage variant")
    relay: Optional[RelayConfig] = None
    s3: Optional[ObjectStoreConfig] = None
    local: Optional[LocalStoreConfig] = None

    @model_validator(mode="before")
    @classmethod
    def default_relay_section(cls, data: Any) -> Any:
        # Relay credentials may legitimately be absent until the site registers.
        if (
            isinstance(data, dict)
            and data.get("type", "relay") == "relay"
            and data.get("relay") is None
        ):
            data = {**data, "relay": {}}
        return data

    @model_validator(mode="after")
    def require_matching_section(self) -> "AdapterConfig":
        if self.type == "s3" and self.s3 is None:
            raise ValueError("storage type 's3' requires an 's3' section")
        if self.type == "local" and self.local is None:
            raise ValueError("storage type 'local' requires a 'local' section")
        return self


class ArchiveSettings(BaseModel):
    """How file sets are packed into archives and uploaded."""

    split_size_mb: int = Field(DEFAULT_SPLIT_SIZE_MB, description="Archive split size in MiB")
    compression: Literal["fast", "legacy"] = Field(
        "fast", description="fast = system tar+gzip, legacy = in-process ZIP"
    )
    skip_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_SKIP_PATTERNS))
    upload_workers: int = Field(3, description="Concurrent chunk uploads")

    @field_validator("split_size_mb")
    @classmethod
    def bound_split_size(cls, v: int) -> int:
        return clamp_split_size_mb(v)

    @field_validator("upload_workers")
    @classmethod
    def bound_upload_workers(cls, v: int) -> int:
        return max(MIN_UPLOAD_WORKERS, min(MAX_UPLOAD_WORKERS, v))

    @property
    def split_size_bytes(self) -> int:
        return self.split_size_mb * MIB


class VaultConfig(BaseModel):
    """Root configuration model."""

    storage: AdapterConfig = Field(default_factory=AdapterConfig)
    archive: ArchiveSettings = Field(default_factory=ArchiveSettings)
    work_dir: Path = Field(Path("wp-vault-backups"), description="Local backup directory")

    @field_validator("work_dir")
    @classmethod
    def resolve_work_dir(cls, v: Path) -> Path:
        return v.expanduser().resolve()


class ConfigLoader:
    """Load and validate site-vault configuration."""

    OPTION_PREFIX = "wpv_"

    def _substitute_env_vars(self, value: Any) -> Any:
        """
        Recursively substitute environment variables in configuration values.

        Supports ``${VAR}`` (required), ``${VAR:-default}`` (empty counts as
        unset) and ``$$`` for a literal dollar sign.

        Raises:
            ConfigurationError: If a required environment variable is not set
        """
        if isinstance(value, str):
            result = value.replace("$$", "\x00")

            def replace_var(match: "re.Match[str]") -> str:
                expression = match.group(1)

                if ":-" in expression:
                    var_name, default_value = expression.split(":-", 1)
                    env_value = os.environ.get(var_name)
                    if env_value is None or env_value == "":
                        return default_value
                    return env_value

                env_value = os.environ.get(expression)
                if env_value is None:
                    raise ConfigurationError(
                        f"Required environment variable '{expression}' is not set",
                        variable=expression,
                    )
                return env_value

            result = re.sub(r"\$\{([^}]+)\}", replace_var, result)
            return result.replace("\x00", "$")

        if isinstance(value, dict):
            return {k: self._substitute_env_vars(v) for k, v in value.items()}

        if isinstance(value, list):
            return [self._substitute_env_vars(item) for item in value]

        return value

    def load_from_dict(self, raw_config: Optional[Dict[str, Any]]) -> VaultConfig:
        """Validate an already-parsed configuration mapping.

        Raises:
            ConfigurationError: If validation fails
        """
        substituted = self._substitute_env_vars(raw_config or {})
        if not isinstance(substituted, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        try:
            return VaultConfig(**substituted)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

    def load_from_file(self, file_path: Union[str, Path]) -> VaultConfig:
        """Load configuration from a YAML file.

        Args:
            file_path: Path to YAML configuration file

        Returns:
            Validated configuration

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        config_path = Path(file_path)

        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        try:
            with open(config_path, "r") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {file_path}: {e}") from e

        return self.load_from_dict(raw_config)

    def load_from_options(
        self,
        options: Mapping[str, Any],
        work_dir: Optional[Union[str, Path]] = None,
    ) -> VaultConfig:
        """Build configuration from the host's ``wpv_*`` option store.

        Args:
            options: Read-only key-value view of the option store
            work_dir: Local backup directory override

        Returns:
            Validated configuration

        Raises:
            ConfigurationError: If the stored options are inconsistent
        """

        def option(name: str, default: Any = None) -> Any:
            value = options.get(f"{self.OPTION_PREFIX}{name}")
            return default if value in (None, "") else value

        storage_type = option("primary_storage_type") or option("storage_type", "relay")
        # Older installs stored the relay variant under its cloud provider name.
        if storage_type in ("gcs", "wpvault", "cloud"):
            storage_type = "relay"

        storage: Dict[str, Any] = {
            "type": storage_type,
            "relay": {
                "endpoint": option("api_endpoint", "http://localhost:3000"),
                "site_id": str(option("site_id", "")),
                "site_token": option("site_token", ""),
                "tenant_id": str(option("tenant_id", "default")),
            },
        }
        if storage_type == "s3":
            storage["s3"] = {
                "endpoint": option("s3_endpoint", "https://s3.amazonaws.com"),
                "bucket": option("s3_bucket", ""),
                "region": option("s3_region", "us-east-1"),
                "access_key": option("s3_access_key", ""),
                "secret_key": option("s3_secret_key", ""),
            }

        try:
            split_size_mb = int(option("file_split_size", DEFAULT_SPLIT_SIZE_MB))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid wpv_file_split_size: {e}") from e

        raw: Dict[str, Any] = {
            "storage": storage,
            "archive": {
                "split_size_mb": split_size_mb,
                "compression": option("compression_mode", "fast"),
            },
        }
        if work_dir is not None:
            raw["work_dir"] = str(work_dir)

        try:
            return VaultConfig(**raw)
        except ValidationError as e:
            raise ConfigurationError(f"Stored options are invalid: {e}") from e
