"""
Pydantic v2 Configuration Models for DsasCCA

Provides strict, typed configuration for every subsystem of the proxy:
- Upstream portal settings (endpoints, credentials, timeouts, retry budgets)
- Redis cache keys and connection
- S3-compatible object storage for offloaded images
- Reconciliation thresholds and concurrency
- HTTP API binding and CORS
- Logging

All models use extra="forbid" for strict validation. Environment variables
and CLI overrides follow: file < env < CLI precedence.
"""

from __future__ import annotations

import hashlib
import json
from typing import ClassVar, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

# ============================================================================
# Upstream Portal
# ============================================================================


class EngageConfig(BaseModel):
    """Settings for the legacy Engage portal."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    base_url: str = Field(default="https://engage.nkcswx.cn", description="Portal origin")
    login_path: str = Field(default="/Login.aspx", description="Login page path")
    details_path: str = Field(
        default="/Services/ActivitiesService.asmx/GetActivityDetails",
        description="Activity detail endpoint path",
    )
    username: Optional[str] = Field(default=None, description="Portal username")
    password: Optional[SecretStr] = Field(default=None, description="Portal password")
    user_agent: str = Field(
        default="Mozilla/5.0 (DSAS-CCA Engage Module)",
        description="User-Agent sent with every upstream request",
    )
    timeout_s: float = Field(default=20.0, description="Per-request timeout in seconds")
    probe_activity_id: str = Field(
        default="3350", description="Activity id used to probe credential validity"
    )
    probe_max_attempts: int = Field(default=3, description="Attempts per validity probe")
    fetch_max_attempts: int = Field(default=3, description="Attempts per detail fetch")
    fetch_backoff_step_s: float = Field(
        default=1.0, description="Delay before attempt n+1 is n times this value"
    )
    login_template_path: Optional[str] = Field(
        default=None,
        description="Login form template with {{USERNAME}}/{{PASSWORD}} (packaged default if unset)",
    )
    token_store: Literal["redis", "file"] = Field(
        default="redis", description="Durable slot backing the session credential"
    )
    token_file_path: str = Field(
        default="cookies.txt", description="Credential file when token_store='file'"
    )

    @field_validator("timeout_s", "fetch_backoff_step_s")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Durations must be >= 0")
        return v

    @field_validator("probe_max_attempts", "fetch_max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Attempt budgets must be >= 1")
        return v

    @property
    def has_credentials(self) -> bool:
        return bool(self.username) and self.password is not None and bool(
            self.password.get_secret_value()
        )

    def password_value(self) -> str:
        return self.password.get_secret_value() if self.password is not None else ""


# ============================================================================
# Storage
# ============================================================================


class RedisConfig(BaseModel):
    """Redis connection and key layout."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    url: str = Field(default="redis://localhost:6379", description="Redis connection URL")
    activity_key_prefix: str = Field(default="activity:", description="Per-activity key prefix")
    staff_key: str = Field(default="staffs:all", description="Staff aggregate key")
    token_key: str = Field(default="engage:cookie", description="Session credential key")
    scan_count: int = Field(default=100, description="SCAN batch hint")
    socket_timeout_s: float = Field(default=5.0, description="Socket timeout in seconds")


class ObjectStoreConfig(BaseModel):
    """S3-compatible storage for offloaded activity photos."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    endpoint: Optional[str] = Field(default=None, description="S3 endpoint URL")
    region: str = Field(default="us-east-1", description="S3 region")
    access_key_id: Optional[str] = Field(default=None, description="Access key id")
    secret_access_key: Optional[SecretStr] = Field(default=None, description="Secret key")
    bucket: Optional[str] = Field(default=None, description="Bucket name")
    public_url_prefix: str = Field(default="files", description="Key prefix for uploads")
    acl: Optional[str] = Field(default="public-read", description="Canned ACL for uploads")
    avif_quality: int = Field(default=80, ge=1, le=100, description="AVIF encoder quality")

    @field_validator("public_url_prefix")
    @classmethod
    def strip_prefix(cls, v: str) -> str:
        stripped = v.strip("/")
        if not stripped:
            raise ValueError("public_url_prefix must not be empty")
        return stripped

    @property
    def enabled(self) -> bool:
        return bool(
            self.endpoint and self.access_key_id and self.secret_access_key and self.bucket
        )


# ============================================================================
# Reconciliation
# ============================================================================


class CacheConfig(BaseModel):
    """Population range, staleness thresholds and sweep cadence."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    min_activity_id: int = Field(default=0, description="First activity id to populate")
    max_activity_id: int = Field(default=9999, description="Last activity id to populate")
    concurrent_api_calls: int = Field(default=10, description="Concurrent upstream fetches")
    club_update_interval_mins: float = Field(
        default=60, description="Age after which an activity entry is stale"
    )
    staff_update_interval_mins: float = Field(
        default=60, description="Age after which the staff aggregate is stale"
    )
    fixed_staff_activity_id: Optional[str] = Field(
        default=None, description="Activity whose detail carries the staff list"
    )
    club_check_interval_s: float = Field(default=300, description="Activity sweep period")
    staff_check_interval_s: float = Field(default=300, description="Staff sweep period")

    @field_validator("concurrent_api_calls")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("concurrent_api_calls must be >= 1")
        return v

    @field_validator("min_activity_id", "max_activity_id")
    @classmethod
    def validate_ids(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Activity ids must be >= 0")
        return v

    @field_validator("fixed_staff_activity_id", mode="before")
    @classmethod
    def coerce_staff_id(cls, v):
        if v is None or v == "":
            return None
        return str(v)


# ============================================================================
# Surfaces
# ============================================================================


class ApiConfig(BaseModel):
    """HTTP API binding."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=3000, description="Bind port")
    allowed_origins: List[str] = Field(default=["*"], description="CORS allowed origins")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def split_origins(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


class LoggingConfig(BaseModel):
    """Logging level and optional JSONL sink."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    level: str = Field(default="INFO", description="Log level")
    log_dir: Optional[str] = Field(default=None, description="Directory for JSONL logs")
    max_log_size_mb: int = Field(default=50, description="Rotation threshold in MB")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        upper = v.upper()
        if upper == "WARN":
            upper = "WARNING"
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return upper


# ============================================================================
# Top-level
# ============================================================================


class AppConfig(BaseModel):
    """
    Single source of truth for DsasCCA configuration.

    Loaded from file (YAML/JSON), overlaid with environment variables,
    and finally overridden by CLI arguments. Precedence: file < env < CLI.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid", validate_assignment=True)

    engage: EngageConfig = Field(default_factory=EngageConfig, description="Upstream portal")
    redis: RedisConfig = Field(default_factory=RedisConfig, description="Redis cache")
    object_store: ObjectStoreConfig = Field(
        default_factory=ObjectStoreConfig, description="S3-compatible object storage"
    )
    cache: CacheConfig = Field(default_factory=CacheConfig, description="Reconciliation")
    api: ApiConfig = Field(default_factory=ApiConfig, description="HTTP API")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging")

    def config_hash(self) -> str:
        """
        Compute deterministic SHA256 hash of config for reproducibility.

        Secrets are excluded from the hashed payload.

        Returns:
            Hex-encoded SHA256 hash of normalized config JSON.
        """
        payload = self.model_dump(
            mode="json",
            exclude={
                "engage": {"password"},
                "object_store": {"secret_access_key"},
            },
        )
        normalized = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(normalized.encode()).hexdigest()
