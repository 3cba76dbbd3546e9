"""Deployment configuration management.

Configuration is read from a YAML file and overridden by DEPLOYCTL_*
environment variables. The resulting DeployConfig is frozen: it is built
once per invocation and handed to the orchestrator, never mutated during a
run.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .shared.paths import STATE_DIR, USER_CONFIG_DIR

CONFIG_FILE_NAME = "deployctl.yaml"

DEFAULT_BASE_DIR = Path("/opt")
DEFAULT_BRANCH = "main"
DEFAULT_NETWORK = "app-network"
DEFAULT_PROXY_SERVICE = "nginx"
DEFAULT_RENEWAL_SCHEDULE = "0 3 * * *"
DEFAULT_PACKAGES = ("apt-transport-https", "ca-certificates", "curl", "gnupg", "git", "ufw", "certbot")
DEFAULT_FIREWALL_RULES = ("22/tcp", "80/tcp", "443/tcp")

LOCAL_DB_COMPOSE_PROFILE = "local-db"

# Environment variable mappings (key -> variable)
ENV_VARS = {
    "domain": "DEPLOYCTL_DOMAIN",
    "email": "DEPLOYCTL_EMAIL",
    "compose_file": "DEPLOYCTL_COMPOSE_FILE",
    "env_file": "DEPLOYCTL_ENV_FILE",
    "state_dir": "DEPLOYCTL_STATE_DIR",
    "health_url": "DEPLOYCTL_HEALTH_URL",
    "health_timeout": "DEPLOYCTL_HEALTH_TIMEOUT",
    "expected_containers": "DEPLOYCTL_EXPECTED_CONTAINERS",
    "disk_threshold": "DEPLOYCTL_DISK_THRESHOLD",
    "rollback_on_failure": "DEPLOYCTL_ROLLBACK_ON_FAILURE",
}


@dataclass(frozen=True)
class ComponentConfig:
    """A tracked code component checked out on the host."""

    name: str
    path: Path
    repo_url: str | None = None
    branch: str = DEFAULT_BRANCH
    required: bool = False


@dataclass(frozen=True)
class DeploymentProfile:
    """Named variant of the deployment plan."""

    name: str = "default"
    use_local_database: bool = False
    build_locally: bool = False
    compose_target: Path | None = None  # None: use the config's compose_file

    @property
    def compose_profile(self) -> str | None:
        return LOCAL_DB_COMPOSE_PROFILE if self.use_local_database else None


BUILTIN_PROFILES: dict[str, DeploymentProfile] = {
    "default": DeploymentProfile("default"),
    "local-db": DeploymentProfile("local-db", use_local_database=True),
    "dev": DeploymentProfile("dev", build_locally=True),
}


def _default_components(base_dir: Path) -> tuple[ComponentConfig, ...]:
    return (
        ComponentConfig("devops", base_dir / "devops", required=True),
        ComponentConfig("backend", base_dir / "backend"),
        ComponentConfig("frontend", base_dir / "frontend"),
    )


def _default_layout(base_dir: Path) -> dict[str, Any]:
    """Defaults for every setting that lives under `base_dir`."""
    devops = base_dir / "devops"
    return {
        "components": _default_components(base_dir),
        "compose_file": devops / "docker-compose.prod.yml",
        "env_file": base_dir / "backend" / ".env",
        "env_templates": (
            (base_dir / "backend" / ".env", devops / "config" / "env" / "backend.env.example"),
            (devops / ".env", devops / "config" / "env" / "docker-compose.env.example"),
        ),
        "ssl_dir": devops / "config" / "nginx" / "ssl",
    }


_DEFAULT_LAYOUT = _default_layout(DEFAULT_BASE_DIR)


@dataclass(frozen=True)
class DeployConfig:
    """Deployment configuration."""

    base_dir: Path = DEFAULT_BASE_DIR
    components: tuple[ComponentConfig, ...] = _DEFAULT_LAYOUT["components"]
    compose_file: Path = _DEFAULT_LAYOUT["compose_file"]
    env_file: Path = _DEFAULT_LAYOUT["env_file"]
    env_templates: tuple[tuple[Path, Path], ...] = _DEFAULT_LAYOUT["env_templates"]
    network: str = DEFAULT_NETWORK
    expected_containers: int = 2
    health_timeout: float = 30.0
    health_interval: float = 3.0
    health_url: str | None = None
    disk_threshold: float = 90.0
    disk_path: Path = Path("/")
    domain: str | None = None
    email: str | None = None
    ssl_dir: Path = _DEFAULT_LAYOUT["ssl_dir"]
    renewal_threshold_days: int = 30
    renewal_schedule: str = DEFAULT_RENEWAL_SCHEDULE
    cert_timeout: float = 300.0
    log_tail_lines: int = 50
    rollback_on_failure: bool = True
    packages: tuple[str, ...] = DEFAULT_PACKAGES
    firewall_rules: tuple[str, ...] = DEFAULT_FIREWALL_RULES
    proxy_service: str = DEFAULT_PROXY_SERVICE
    state_dir: Path = STATE_DIR
    profiles: tuple[DeploymentProfile, ...] = tuple(BUILTIN_PROFILES.values())

    # Track where each value came from
    sources: dict[str, str] = field(default_factory=dict, compare=False, repr=False)

    def get_source(self, key: str) -> str:
        """Get the source of a config value."""
        return self.sources.get(key, "default")

    def component(self, name: str) -> ComponentConfig | None:
        for component in self.components:
            if component.name == name:
                return component
        return None

    def profile(self, name: str | None) -> DeploymentProfile:
        """Resolve a profile name (None means "default")."""
        wanted = name or "default"
        for profile in self.profiles:
            if profile.name == wanted:
                return profile
        known = ", ".join(p.name for p in self.profiles)
        raise ConfigError(
            message=f"Unknown deployment profile '{wanted}'",
            remediation=f"Use one of: {known}",
        )

    def compose_file_for(self, profile: DeploymentProfile) -> Path:
        return profile.compose_target or self.compose_file

    def to_dict(self) -> dict[str, Any]:
        """Plain representation for `config show`."""
        data: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "sources":
                continue
            data[f.name] = _plain(getattr(self, f.name))
        return data


def _plain(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, ComponentConfig):
        return {
            "name": value.name,
            "path": str(value.path),
            "repo_url": value.repo_url,
            "branch": value.branch,
            "required": value.required,
        }
    if isinstance(value, DeploymentProfile):
        return {
            "name": value.name,
            "use_local_database": value.use_local_database,
            "build_locally": value.build_locally,
            "compose_target": str(value.compose_target) if value.compose_target else None,
        }
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    return value


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


_PATH_KEYS = {"base_dir", "compose_file", "env_file", "ssl_dir", "state_dir", "disk_path"}
_FLOAT_KEYS = {"health_timeout", "health_interval", "disk_threshold", "cert_timeout"}
_INT_KEYS = {"expected_containers", "renewal_threshold_days", "log_tail_lines"}
_BOOL_KEYS = {"rollback_on_failure"}
_STR_KEYS = {"network", "health_url", "domain", "email", "renewal_schedule", "proxy_service"}


def _coerce(key: str, value: Any) -> Any:
    try:
        if value is None:
            return None
        if key in _PATH_KEYS:
            return Path(value)
        if key in _FLOAT_KEYS:
            return float(value)
        if key in _INT_KEYS:
            return int(value)
        if key in _BOOL_KEYS:
            return _to_bool(value)
        if key in _STR_KEYS:
            return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(message=f"Invalid value for '{key}': {value!r} ({e})") from e
    return value


def _parse_components(raw: Any, base_dir: Path) -> tuple[ComponentConfig, ...]:
    if not isinstance(raw, dict):
        raise ConfigError(message="'components' must be a mapping of name to settings")
    components = []
    for name, settings in raw.items():
        settings = settings or {}
        components.append(
            ComponentConfig(
                name=str(name),
                path=Path(settings.get("path", base_dir / str(name))),
                repo_url=settings.get("repo") or settings.get("repo_url"),
                branch=str(settings.get("branch", DEFAULT_BRANCH)),
                required=_to_bool(settings.get("required", False)),
            )
        )
    return tuple(components)


def _parse_profiles(raw: Any) -> tuple[DeploymentProfile, ...]:
    if not isinstance(raw, dict):
        raise ConfigError(message="'profiles' must be a mapping of name to settings")
    profiles = dict(BUILTIN_PROFILES)
    for name, settings in raw.items():
        settings = settings or {}
        unknown = set(settings) - {"use_local_database", "build_locally", "compose_file"}
        if unknown:
            raise ConfigError(
                message=f"Profile '{name}' has unknown options: {', '.join(sorted(unknown))}",
                remediation="Recognised options: use_local_database, build_locally, compose_file",
            )
        target = settings.get("compose_file")
        profiles[str(name)] = DeploymentProfile(
            name=str(name),
            use_local_database=_to_bool(settings.get("use_local_database", False)),
            build_locally=_to_bool(settings.get("build_locally", False)),
            compose_target=Path(target) if target else None,
        )
    return tuple(profiles.values())


def _parse_env_templates(raw: Any) -> tuple[tuple[Path, Path], ...]:
    if not isinstance(raw, dict):
        raise ConfigError(message="'env_templates' must map target file to template file")
    return tuple((Path(target), Path(template)) for target, template in raw.items())


def find_config_file(explicit: str | Path | None = None) -> Path | None:
    """Locate the config file: explicit path > ./deployctl.yaml > ~/.deployctl/config.yaml."""
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise ConfigError(message=f"Config file not found: {path}")
        return path
    for candidate in (Path.cwd() / CONFIG_FILE_NAME, USER_CONFIG_DIR / "config.yaml"):
        if candidate.exists():
            return candidate
    return None


def load_config(path: str | Path | None = None, environ: dict[str, str] | None = None) -> DeployConfig:
    """Load deployment configuration.

    Precedence (highest to lowest):
    1. Environment variables
    2. Config file
    3. Defaults

    Args:
        path: Explicit config file path (optional)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        DeployConfig with values and sources

    Raises:
        ConfigError: If the file is unreadable or a value is invalid
    """
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    sources: dict[str, str] = {}

    config_path = find_config_file(path)
    if config_path:
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(message=f"Cannot read config file {config_path}: {e}") from e
        if not isinstance(file_config, dict):
            raise ConfigError(message=f"Config file {config_path} must contain a mapping")

        known = {f.name for f in fields(DeployConfig)} - {"sources"}
        unknown = set(file_config) - known
        if unknown:
            raise ConfigError(
                message=f"Unknown config keys in {config_path}: {', '.join(sorted(unknown))}"
            )

        base_dir = Path(file_config.get("base_dir", DEFAULT_BASE_DIR))
        for key, raw in file_config.items():
            if key == "components":
                values[key] = _parse_components(raw, base_dir)
            elif key == "profiles":
                values[key] = _parse_profiles(raw)
            elif key == "env_templates":
                values[key] = _parse_env_templates(raw)
            elif key in ("packages", "firewall_rules"):
                values[key] = tuple(str(v) for v in raw or ())
            else:
                values[key] = _coerce(key, raw)
            sources[key] = "config file"

    for key, var in ENV_VARS.items():
        if environ.get(var):
            values[key] = _coerce(key, environ[var])
            sources[key] = "environment"

    # A relocated base_dir moves every default path with it
    if "base_dir" in values:
        for key, default in _default_layout(values["base_dir"]).items():
            values.setdefault(key, default)

    return DeployConfig(**values, sources=sources)


def with_overrides(config: DeployConfig, **overrides: Any) -> DeployConfig:
    """Copy of `config` with CLI-level overrides applied."""
    sources = dict(config.sources)
    for key in overrides:
        sources[key] = "command line"
    return replace(config, **overrides, sources=sources)
