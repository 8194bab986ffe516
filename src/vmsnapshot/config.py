"""
Pydantic settings model for the controller process.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

ENV_PREFIX = "VMSNAPSHOT_"


class ControllerConfig(BaseModel):
    """Controller process settings with validation."""

    namespace: Optional[str] = Field(default=None, description="Namespace to watch; None for all")
    workers: int = Field(default=2, ge=1, le=64, description="Concurrent reconcile workers")
    retry_interval_seconds: float = Field(
        default=5.0, gt=0, description="Requeue delay while waiting for the source lock"
    )
    backoff_base_seconds: float = Field(default=0.005, gt=0, description="First error backoff")
    backoff_max_seconds: float = Field(default=300.0, gt=0, description="Error backoff ceiling")
    resync_period_seconds: float = Field(
        default=0.0, ge=0, description="Periodic requeue of all snapshots; 0 disables"
    )
    log_level: str = Field(default="INFO", description="DEBUG, INFO, WARNING or ERROR")
    log_json: bool = Field(default=False, description="Render console logs as JSON")
    log_file: Optional[Path] = Field(default=None, description="Additional JSON log file")
    audit_log: Optional[Path] = Field(default=None, description="JSON-lines event audit trail")
    kubeconfig: Optional[str] = Field(default=None, description="Path to a kubeconfig file")
    in_cluster: Optional[bool] = Field(
        default=None, description="Force (True) or forbid (False) in-cluster credentials"
    )

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_valid(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        level = v.upper()
        if level not in valid_levels:
            raise ValueError(f"log_level must be one of: {sorted(valid_levels)}")
        return level

    @field_validator("namespace")
    @classmethod
    def namespace_empty_means_all(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def backoff_must_be_ordered(self) -> "ControllerConfig":
        if self.backoff_base_seconds > self.backoff_max_seconds:
            raise ValueError("backoff_base_seconds must not exceed backoff_max_seconds")
        return self

    @classmethod
    def load(cls, path: Path) -> "ControllerConfig":
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        data = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(data)

    @classmethod
    def from_env(
        cls,
        base: Optional["ControllerConfig"] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ControllerConfig":
        """Overlay ``VMSNAPSHOT_<FIELD>`` environment variables onto ``base``."""
        environ = os.environ if environ is None else environ
        data: Dict[str, Any] = base.model_dump() if base is not None else {}
        for name in cls.model_fields:
            value = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if value is not None:
                data[name] = value
        return cls.model_validate(data)
