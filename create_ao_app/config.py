"""create-ao-app configuration.

Two layers of configuration live here:

* ``AOConfig`` -- the per-project ``ao.config.yml`` document.  Keys in the
  file use the camelCase names the starter kits ship with; the models accept
  either spelling and always write camelCase back out.
* ``Settings`` -- per-user runtime settings (worker executable, record file
  locations, timeouts) read from the environment.

All settings use Pydantic v2 models so they are validated at construction
time.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from create_ao_app.utils import print_warning

CONFIG_FILE_NAME = "ao.config.yml"


class PortConfig(BaseModel):
    """Ports used by the project.  Only ``dev`` is required; extra named
    ports in the file are kept as-is."""

    model_config = ConfigDict(extra="allow")

    dev: int = Field(default=3000, ge=1, le=65535)


class SchedulerConfig(BaseModel):
    """The optional ``scheduler`` block of ``ao.config.yml``."""

    model_config = ConfigDict(populate_by_name=True)

    interval: int = Field(default=1000, gt=0, description="Tick interval in milliseconds")
    tick: str = Field(default="tick")
    patterns: list[str] = Field(default_factory=lambda: ["*"])
    max_retries: int = Field(default=3, ge=0, alias="maxRetries")
    on_error: str = Field(default="handleError", alias="onError")


class AOConfig(BaseModel):
    """Project configuration stored in ``<project>/ao.config.yml``."""

    model_config = ConfigDict(populate_by_name=True)

    lua_files: list[str] = Field(default_factory=list, alias="luaFiles")
    package_manager: Literal["npm", "yarn", "pnpm"] = Field(
        default="pnpm", alias="packageManager"
    )
    framework: Literal["nextjs", "nuxtjs"] | None = Field(default=None)
    process_name: str = Field(default="ao-process", alias="processName")
    ports: PortConfig = Field(default_factory=PortConfig)
    tags: dict[str, str] = Field(default_factory=lambda: {"Environment": "development"})
    cron_interval: str | None = Field(default=None, alias="cronInterval")
    run_with_ao: bool = Field(default=True, alias="runWithAO")
    monitor: bool = Field(default=False)
    env: dict[str, str] = Field(default_factory=dict)
    scheduler: SchedulerConfig | None = Field(default=None)

    @field_validator("tags", "env", mode="before")
    @classmethod
    def _stringify_values(cls, value: Any) -> Any:
        # YAML turns `PORT: 3000` into an int; the worker only takes strings.
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    def to_document(self) -> dict[str, Any]:
        """Return the camelCase mapping written to ``ao.config.yml``."""
        return self.model_dump(by_alias=True, exclude_none=True)


def config_path(project_path: str | Path) -> Path:
    """Path of the config file inside *project_path*."""
    return Path(project_path) / CONFIG_FILE_NAME


def load_config(
    project_path: str | Path,
    defaults: AOConfig | None = None,
) -> AOConfig:
    """Load ``ao.config.yml`` from *project_path*, merged over *defaults*.

    The merge is per top-level key: any key present in the file replaces the
    default wholesale.  A missing file yields the defaults.  An unreadable or
    invalid file is reported and also yields the defaults, so a broken config
    never prevents ``stop`` or ``list`` from working.

    Args:
        project_path: Project root directory.
        defaults: Base configuration; ``AOConfig()`` when omitted.

    Returns:
        A validated ``AOConfig``.
    """
    base = defaults or AOConfig()
    path = config_path(project_path)
    if not path.exists():
        return base

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"expected a mapping, got {type(raw).__name__}")
        merged = {**base.model_dump(by_alias=True), **raw}
        return AOConfig.model_validate(merged)
    except (OSError, yaml.YAMLError, ValidationError, ValueError) as exc:
        print_warning(f"Error loading config {path}: {exc}. Using defaults.")
        return base


def save_config(project_path: str | Path, config: AOConfig) -> Path:
    """Write *config* to ``<project_path>/ao.config.yml``.

    Returns:
        The path that was written.
    """
    path = config_path(project_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump(config.to_document(), sort_keys=False),
        encoding="utf-8",
    )
    return path


class Settings(BaseModel):
    """Per-user runtime settings.

    Defaults match a stock ``aos`` install; every value can be overridden
    through the environment (see ``from_env``).
    """

    worker_binary: str = Field(default="aos")
    process_file: Path = Field(default_factory=lambda: Path.home() / ".ao-processes.json")
    schedule_file: Path = Field(default_factory=lambda: Path.home() / ".ao-schedule.json")
    eval_timeout: float = Field(
        default=30.0, gt=0, description="Default seconds to wait for `eval` to exit"
    )
    readiness_timeout: float = Field(
        default=300.0, gt=0, description="Seconds to wait for the dev server to come up"
    )
    readiness_signal: str = Field(default="http://localhost:")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build ``Settings`` from environment variables.

        Recognised variables (all optional):
            AO_WORKER_BINARY, AO_PROCESS_FILE, AO_SCHEDULE_FILE,
            AO_EVAL_TIMEOUT, AO_READINESS_TIMEOUT.
        """
        kwargs: dict[str, Any] = {}
        if os.environ.get("AO_WORKER_BINARY"):
            kwargs["worker_binary"] = os.environ["AO_WORKER_BINARY"]
        if os.environ.get("AO_PROCESS_FILE"):
            kwargs["process_file"] = Path(os.environ["AO_PROCESS_FILE"]).expanduser()
        if os.environ.get("AO_SCHEDULE_FILE"):
            kwargs["schedule_file"] = Path(os.environ["AO_SCHEDULE_FILE"]).expanduser()
        if os.environ.get("AO_EVAL_TIMEOUT"):
            kwargs["eval_timeout"] = float(os.environ["AO_EVAL_TIMEOUT"])
        if os.environ.get("AO_READINESS_TIMEOUT"):
            kwargs["readiness_timeout"] = float(os.environ["AO_READINESS_TIMEOUT"])
        return cls(**kwargs)
