"""Pipeline configuration."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

ENV_PREFIX = "CLINIC_MIGRATION_"
LLM_PROVIDERS = ("anthropic", "openai")


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PipelineConfig:
    """Configuration for the migration pipeline."""

    # Storage
    data_dir: str = "./data"

    # Execution options
    batch_size: int = 100
    page_size: int = 100
    lease_timeout_seconds: int = 3600
    dry_run_sample_size: int = 10

    # Target store
    target_url: Optional[str] = None
    target_api_key: Optional[str] = None
    dry_run: bool = False

    # Source access
    request_timeout: float = 30.0
    retry_config: Dict[str, Any] = field(default_factory=lambda: {
        "max_retries": 3,
        "backoff_factor": 2.0,
    })

    # Secrets
    credentials_key: Optional[str] = None  # Fernet key for sealing source credentials
    masking_secret: str = "dev-secret"  # HMAC secret for the hash_token transform

    log_level: str = "INFO"

    # LLM-assisted mapping drafts; off unless a provider is named
    llm_provider: Optional[str] = None  # "anthropic" or "openai"
    llm_model: Optional[str] = None
    llm_api_key: Optional[str] = None

    def __post_init__(self):
        for name in ("batch_size", "page_size", "lease_timeout_seconds", "dry_run_sample_size"):
            value = getattr(self, name)
            if value < 1:
                raise ValueError(f"{name} must be at least 1, got {value}")
        if self.llm_provider is not None and self.llm_provider not in LLM_PROVIDERS:
            raise ValueError(f"Unknown LLM provider: {self.llm_provider}")

    @property
    def artifacts_dir(self) -> Path:
        return Path(self.data_dir) / "artifacts"

    @property
    def state_dir(self) -> Path:
        return Path(self.data_dir) / "state"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (secrets omitted)."""
        return {
            "data_dir": self.data_dir,
            "batch_size": self.batch_size,
            "page_size": self.page_size,
            "lease_timeout_seconds": self.lease_timeout_seconds,
            "dry_run_sample_size": self.dry_run_sample_size,
            "target_url": self.target_url,
            "dry_run": self.dry_run,
            "request_timeout": self.request_timeout,
            "retry_config": self.retry_config,
            "log_level": self.log_level,
            "llm_provider": self.llm_provider,
            "llm_model": self.llm_model,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """Create from dictionary representation."""
        return cls(
            data_dir=data.get("data_dir", "./data"),
            batch_size=int(data.get("batch_size", 100)),
            page_size=int(data.get("page_size", 100)),
            lease_timeout_seconds=int(data.get("lease_timeout_seconds", 3600)),
            dry_run_sample_size=int(data.get("dry_run_sample_size", 10)),
            target_url=data.get("target_url"),
            target_api_key=data.get("target_api_key"),
            dry_run=data.get("dry_run", False),
            request_timeout=float(data.get("request_timeout", 30.0)),
            retry_config=data.get("retry_config", {"max_retries": 3, "backoff_factor": 2.0}),
            credentials_key=data.get("credentials_key"),
            masking_secret=data.get("masking_secret", "dev-secret"),
            log_level=data.get("log_level", "INFO"),
            llm_provider=data.get("llm_provider") or None,
            llm_model=data.get("llm_model") or None,
            llm_api_key=data.get("llm_api_key") or None,
        )

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "PipelineConfig":
        """
        Build configuration from CLINIC_MIGRATION_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            PipelineConfig with defaults for anything unset
        """
        env = os.environ if environ is None else environ
        data: Dict[str, Any] = {}

        simple_keys = {
            "DATA_DIR": "data_dir",
            "BATCH_SIZE": "batch_size",
            "PAGE_SIZE": "page_size",
            "LEASE_TIMEOUT_SECONDS": "lease_timeout_seconds",
            "TARGET_URL": "target_url",
            "TARGET_API_KEY": "target_api_key",
            "REQUEST_TIMEOUT": "request_timeout",
            "CREDENTIALS_KEY": "credentials_key",
            "LOG_LEVEL": "log_level",
            "LLM_PROVIDER": "llm_provider",
            "LLM_MODEL": "llm_model",
            "LLM_API_KEY": "llm_api_key",
        }
        for suffix, key in simple_keys.items():
            value = env.get(ENV_PREFIX + suffix)
            if value:
                data[key] = value

        if env.get(ENV_PREFIX + "DRY_RUN"):
            data["dry_run"] = _env_bool(env[ENV_PREFIX + "DRY_RUN"])

        retry_config = {"max_retries": 3, "backoff_factor": 2.0}
        if env.get(ENV_PREFIX + "MAX_RETRIES"):
            retry_config["max_retries"] = int(env[ENV_PREFIX + "MAX_RETRIES"])
        if env.get(ENV_PREFIX + "BACKOFF_FACTOR"):
            retry_config["backoff_factor"] = float(env[ENV_PREFIX + "BACKOFF_FACTOR"])
        data["retry_config"] = retry_config

        # The masking secret keeps the name the host application already uses
        masking_secret = env.get(ENV_PREFIX + "MASKING_SECRET") or env.get("MIGRATION_MASKING_SECRET")
        if masking_secret:
            data["masking_secret"] = masking_secret

        return cls.from_dict(data)
