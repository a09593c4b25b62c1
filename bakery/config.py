"""Layered config loading and merging."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import ConfigurationError

# Values shipped in the config template; treated as "not configured".
_PLACEHOLDERS = {"", "your-organization", "your-project", "your-pat-token-here"}


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class TrackerConfig:
    base_url: str = "https://dev.azure.com"
    organization: str = ""
    project: str = ""
    pat_token: str = ""
    api_version: str = "7.1"
    comments_api_version: str = "7.1-preview.4"
    auth_scheme: str = "basic"  # "basic" | "bearer"
    timeout_sec: float = 30.0
    max_attempts: int = 3
    base_delay_sec: float = 0.5


@dataclass
class StorageConfig:
    base_directory: str = "~/devops-data"
    tickets_subdir: str = "Tickets"
    openspec_subdir: str = "openspec"
    local_baking: bool = False


@dataclass
class GeneratorConfig:
    command: str = "claude -p"  # no {prompt} → prompt goes to stdin
    timeout_sec: float = 600.0
    auto_generate: bool = True
    prompt_template: str = ""  # empty = built-in template


@dataclass
class ValidatorConfig:
    command: str = "openspec"
    strict: bool = True
    timeout_sec: float = 120.0
    enabled: bool = True


@dataclass
class DisplayConfig:
    truncate_at: int = 150


@dataclass
class Config:
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    project_root: str = ""

    def base_directory(self) -> Path:
        """Storage root; the current directory when local baking is on."""
        if self.storage.local_baking:
            return Path(self.project_root or Path.cwd())
        return Path(self.storage.base_directory).expanduser()

    def tickets_directory(self) -> Path:
        return self.base_directory() / self.storage.tickets_subdir

    def openspec_directory(self) -> Path:
        return self.base_directory() / self.storage.openspec_subdir

    def openspec_root(self) -> Path:
        """Directory holding ``openspec/``; the openspec CLI runs from here."""
        return self.openspec_directory().parent

    def require_tracker(self) -> None:
        """Pre-flight check before any network call."""
        t = self.tracker
        missing = [
            name for name, value in (
                ("organization", t.organization),
                ("project", t.project),
                ("pat_token", t.pat_token),
            )
            if value.strip() in _PLACEHOLDERS
        ]
        if missing:
            raise ConfigurationError(
                f"Missing tracker setting(s): {', '.join(missing)}. "
                "Set them in ~/.bakery/config.yaml, via AZURE_DEVOPS_* "
                "environment variables or on the command line."
            )
        if t.auth_scheme not in ("basic", "bearer"):
            raise ConfigurationError(
                f"Unknown tracker.auth_scheme '{t.auth_scheme}' (expected basic or bearer)"
            )
        if t.max_attempts < 1:
            raise ConfigurationError("tracker.max_attempts must be at least 1")


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Field-level deep merge. Lists are replaced, None values ignored."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Dict → Config mapping
# ---------------------------------------------------------------------------

def _section(data: dict, name: str) -> dict:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(
            f"Invalid config section '{name}': expected mapping, got {type(value).__name__}"
        )
    return value


def _dict_to_config(data: dict, project_root: str) -> Config:
    cfg = Config(project_root=project_root)

    t = _section(data, "tracker")
    cfg.tracker = TrackerConfig(
        base_url=str(t.get("base_url", cfg.tracker.base_url)).rstrip("/"),
        organization=str(t.get("organization", cfg.tracker.organization)),
        project=str(t.get("project", cfg.tracker.project)),
        pat_token=str(t.get("pat_token", cfg.tracker.pat_token)),
        api_version=str(t.get("api_version", cfg.tracker.api_version)),
        comments_api_version=str(
            t.get("comments_api_version", cfg.tracker.comments_api_version)),
        auth_scheme=str(t.get("auth_scheme", cfg.tracker.auth_scheme)).lower(),
        timeout_sec=float(t.get("timeout_sec", cfg.tracker.timeout_sec)),
        max_attempts=int(t.get("max_attempts", cfg.tracker.max_attempts)),
        base_delay_sec=float(t.get("base_delay_sec", cfg.tracker.base_delay_sec)),
    )

    s = _section(data, "storage")
    cfg.storage = StorageConfig(
        base_directory=str(s.get("base_directory", cfg.storage.base_directory)),
        tickets_subdir=s.get("tickets_subdir", cfg.storage.tickets_subdir),
        openspec_subdir=s.get("openspec_subdir", cfg.storage.openspec_subdir),
        local_baking=bool(s.get("local_baking", cfg.storage.local_baking)),
    )

    g = _section(data, "generator")
    cfg.generator = GeneratorConfig(
        command=g.get("command", cfg.generator.command),
        timeout_sec=float(g.get("timeout_sec", cfg.generator.timeout_sec)),
        auto_generate=bool(g.get("auto_generate", cfg.generator.auto_generate)),
        prompt_template=g.get("prompt_template", cfg.generator.prompt_template) or "",
    )

    v = _section(data, "validator")
    cfg.validator = ValidatorConfig(
        command=v.get("command", cfg.validator.command),
        strict=bool(v.get("strict", cfg.validator.strict)),
        timeout_sec=float(v.get("timeout_sec", cfg.validator.timeout_sec)),
        enabled=bool(v.get("enabled", cfg.validator.enabled)),
    )

    d = _section(data, "display")
    cfg.display = DisplayConfig(
        truncate_at=int(d.get("truncate_at", cfg.display.truncate_at)),
    )

    return cfg


def _read_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigurationError(
            f"Invalid {path}: expected mapping, got {type(parsed).__name__}"
        )
    return parsed


# ---------------------------------------------------------------------------
# Load config (layered)
# ---------------------------------------------------------------------------

def user_config_path(home: str | Path | None = None) -> Path:
    home = Path(home) if home is not None else Path.home()
    return home / ".bakery" / "config.yaml"


def load_config(
    project_root: str | Path | None = None,
    home: str | Path | None = None,
    overrides: dict | None = None,
) -> Config:
    """Load and merge config from up to 4 layers.

    Priority (highest first):
      1. ``overrides`` (CLI flags)
      2. Environment variables (AZURE_DEVOPS_PAT, AZURE_DEVOPS_ORG, ...)
      3. <project_root>/.bakery/config.yaml
      4. ~/.bakery/config.yaml
    """
    project_root = Path(project_root) if project_root is not None else Path.cwd()

    merged = deep_merge(
        _read_yaml(user_config_path(home)),
        _read_yaml(project_root / ".bakery" / "config.yaml"),
    )

    env: dict = {"tracker": {}, "storage": {}}
    for var, section, key in (
        ("AZURE_DEVOPS_PAT", "tracker", "pat_token"),
        ("AZURE_DEVOPS_ORG", "tracker", "organization"),
        ("AZURE_DEVOPS_PROJECT", "tracker", "project"),
        ("BAKERY_BASE_DIR", "storage", "base_directory"),
    ):
        value = os.environ.get(var)
        if value:
            env[section][key] = value
    merged = deep_merge(merged, env)

    if overrides:
        merged = deep_merge(merged, overrides)

    return _dict_to_config(merged, str(project_root))


def mask_secret(value: str) -> str:
    if not value:
        return ""
    return value[:4] + "..." if len(value) > 8 else "***"
