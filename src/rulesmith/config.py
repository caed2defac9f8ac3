"""
Engine settings for Rulesmith.

Settings are a frozen Pydantic model loaded from YAML. A handful of scalar
settings can be overridden from the environment, which is how the CLI and
CI jobs tune sandbox limits without editing files:

    RULESMITH_SANDBOX_TIMEOUT_MS
    RULESMITH_SANDBOX_MAX_MEMORY_MB
    RULESMITH_AUTO_APPROVAL
    RULESMITH_ENABLE_MARKETPLACE
    RULESMITH_DB_PATH

Example settings.yaml:
    sandbox:
      timeout_ms: 2000
      max_memory_mb: 128
    extensions:
      auto_approval: false
      enable_marketplace: true
      db_path: .rulesmith/extensions.db
"""

import os
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from rulesmith.errors import StructuralError


class SandboxSettings(BaseModel):
    """Limits applied to every sandboxed execution."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    timeout_ms: int = Field(default=5000, gt=0, description="Wall-clock timeout")
    max_memory_mb: int = Field(default=256, gt=0, description="Address-space ceiling")
    python_executable: str = Field(
        default_factory=lambda: sys.executable,
        description="Interpreter used for child processes",
    )
    max_output_bytes: int = Field(default=1024 * 1024, gt=0)


class ExtensionSettings(BaseModel):
    """Extension manager behavior."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    auto_approval: bool = Field(default=False, description="Skip approver checks")
    enable_marketplace: bool = Field(default=False, description="Allow publishing")
    enable_metrics: bool = Field(default=True, description="Track usage metrics")
    max_extensions_per_template: int = Field(default=50, gt=0)
    db_path: str | None = Field(default=None, description="SQLite file for persistence")


class CacheSettings(BaseModel):
    """Resolution and validation caching."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True


class Settings(BaseModel):
    """Top-level settings object passed to RuleEngine."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    extensions: ExtensionSettings = Field(default_factory=ExtensionSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)


_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "RULESMITH_SANDBOX_TIMEOUT_MS": ("sandbox", "timeout_ms"),
    "RULESMITH_SANDBOX_MAX_MEMORY_MB": ("sandbox", "max_memory_mb"),
    "RULESMITH_AUTO_APPROVAL": ("extensions", "auto_approval"),
    "RULESMITH_ENABLE_MARKETPLACE": ("extensions", "enable_marketplace"),
    "RULESMITH_DB_PATH": ("extensions", "db_path"),
}


def _apply_env(data: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    for var, (section, key) in _ENV_OVERRIDES.items():
        if var in environ:
            data.setdefault(section, {})[key] = environ[var]
    return data


def settings_from_dict(
    data: dict[str, Any] | None,
    environ: dict[str, str] | None = None,
    source: str = "<settings>",
) -> Settings:
    """
    Build Settings from a mapping plus environment overrides.

    Raises:
        StructuralError: If the data doesn't match the schema
    """
    data = dict(data or {})
    data = {k: dict(v) if isinstance(v, dict) else v for k, v in data.items()}
    data = _apply_env(data, dict(os.environ) if environ is None else environ)
    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        details = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise StructuralError(source=source, details=details) from e


def load_settings(path: Path | str, environ: dict[str, str] | None = None) -> Settings:
    """Load settings from a YAML file."""
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)
    return settings_from_dict(data, environ, source=str(path))


def load_settings_from_string(content: str, environ: dict[str, str] | None = None) -> Settings:
    """Load settings from a YAML string."""
    return settings_from_dict(yaml.safe_load(content), environ)
