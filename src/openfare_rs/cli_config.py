"""
Configuration management for openfare-rs.

Settings come from defaults, an optional JSON/YAML config file and
environment variables, in increasing order of precedence. Command line
options are applied on top by the CLI.
"""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union, get_args, get_origin

import yaml
from rich.console import Console

from .error_handling import ConfigurationError

console = Console(stderr=True)

DEPENDENCY_KINDS = ("normal", "build", "dev")

# Fields each profile URL template is formatted with
URL_TEMPLATE_FIELDS = {
    "crates.io": ("name", "version"),
    "registry": ("index", "name", "version"),
}


@dataclass
class NetworkConfig:
    """Profile lookup settings."""

    timeout_seconds: float = 10.0
    retry_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    user_agent: str = "openfare-rs/0.1.1 (+https://openfare.dev)"
    profile_url_templates: Dict[str, str] = field(
        default_factory=lambda: {
            "crates.io": "https://openfare.dev/api/v1/profiles/crates.io/{name}/{version}",
            "registry": "{index}/openfare/{name}/{version}.json",
        }
    )


@dataclass
class AggregationConfig:
    """Fee aggregation settings."""

    target_currency: Optional[str] = None
    max_concurrent: int = 16
    deadline_seconds: float = 120.0
    dependency_kinds: List[str] = field(default_factory=lambda: list(DEPENDENCY_KINDS))


@dataclass
class ReportConfig:
    """Report output settings."""

    template_path: Optional[str] = None
    output_format: str = "text"


@dataclass
class LoggingConfig:
    """Logging settings."""

    log_level: str = "WARNING"
    json_logs: bool = True


@dataclass
class OpenFareConfig:
    """Main configuration containing all subsections."""

    network: NetworkConfig = field(default_factory=NetworkConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Global configuration instance
_global_config: Optional[OpenFareConfig] = None


def validate_config_values(config: OpenFareConfig) -> List[str]:
    """
    Validate configuration values and return any errors.

    Returns:
        List[str]: List of validation errors (empty if valid)
    """
    errors = []

    if config.network.timeout_seconds <= 0:
        errors.append("network.timeout_seconds must be positive")
    if config.network.retry_attempts < 0:
        errors.append("network.retry_attempts must be non-negative")
    if config.network.backoff_base_seconds < 0:
        errors.append("network.backoff_base_seconds must be non-negative")
    if config.network.backoff_max_seconds < config.network.backoff_base_seconds:
        errors.append("network.backoff_max_seconds must be >= backoff_base_seconds")
    for key, allowed in URL_TEMPLATE_FIELDS.items():
        template = config.network.profile_url_templates.get(key)
        if not isinstance(template, str) or "{name}" not in template or "{version}" not in template:
            errors.append(
                f"network.profile_url_templates[{key!r}] must contain {{name}} and {{version}}"
            )
            continue
        try:
            template.format(**{name: "x" for name in allowed})
        except (KeyError, IndexError, ValueError, AttributeError) as e:
            errors.append(
                f"network.profile_url_templates[{key!r}] is not a valid template "
                f"(allowed fields: {', '.join(allowed)}): {e!r}"
            )

    if config.aggregation.max_concurrent <= 0:
        errors.append("aggregation.max_concurrent must be positive")
    if config.aggregation.deadline_seconds <= 0:
        errors.append("aggregation.deadline_seconds must be positive")
    unknown_kinds = set(config.aggregation.dependency_kinds) - set(DEPENDENCY_KINDS)
    if unknown_kinds:
        errors.append(
            "aggregation.dependency_kinds has unknown kinds: "
            + ", ".join(sorted(unknown_kinds))
        )
    if not config.aggregation.dependency_kinds:
        errors.append("aggregation.dependency_kinds must not be empty")
    currency = config.aggregation.target_currency
    if currency is not None and not (currency.strip() and currency.strip().isalpha()):
        errors.append("aggregation.target_currency must be an alphabetic code")

    if config.report.output_format not in ("text", "json"):
        errors.append("report.output_format must be 'text' or 'json'")

    return errors


def load_config_file(config_path: Path) -> Optional[Dict[str, Any]]:
    """Load config from a JSON or YAML file."""
    if not config_path.exists():
        return None

    try:
        with open(config_path, encoding="utf-8") as f:
            if config_path.suffix.lower() in [".yaml", ".yml"]:
                return yaml.safe_load(f)
            elif config_path.suffix.lower() == ".json":
                return json.load(f)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        console.print(f"⚠️  Error loading config from {config_path}: {e}", style="yellow")

    return None


def find_config_file() -> Optional[Path]:
    """Find config file in standard locations."""
    locations = [
        Path.cwd() / ".openfare-rs.json",
        Path.cwd() / ".openfare-rs.yaml",
        Path.cwd() / ".openfare-rs.yml",
        Path.home() / ".config" / "openfare-rs" / "config.json",
        Path.home() / ".config" / "openfare-rs" / "config.yaml",
    ]

    for location in locations:
        if location.exists():
            return location

    return None


def load_environment_overrides(config: OpenFareConfig) -> None:
    """Load environment variable overrides."""

    def get_env_int(key: str) -> Optional[int]:
        try:
            return int(os.environ[key]) if key in os.environ else None
        except ValueError:
            console.print(f"⚠️  Invalid integer value for {key}, using default", style="yellow")
            return None

    def get_env_float(key: str) -> Optional[float]:
        try:
            return float(os.environ[key]) if key in os.environ else None
        except ValueError:
            console.print(f"⚠️  Invalid float value for {key}, using default", style="yellow")
            return None

    if currency := os.environ.get("OPENFARE_RS_TARGET_CURRENCY"):
        config.aggregation.target_currency = currency.strip().upper()
    if (timeout := get_env_float("OPENFARE_RS_TIMEOUT")) is not None:
        config.network.timeout_seconds = timeout
    if (retry_attempts := get_env_int("OPENFARE_RS_RETRY_ATTEMPTS")) is not None:
        config.network.retry_attempts = retry_attempts
    if (max_concurrent := get_env_int("OPENFARE_RS_MAX_CONCURRENT")) is not None:
        config.aggregation.max_concurrent = max_concurrent
    if (deadline := get_env_float("OPENFARE_RS_DEADLINE")) is not None:
        config.aggregation.deadline_seconds = deadline
    if template := os.environ.get("OPENFARE_RS_TEMPLATE"):
        config.report.template_path = template
    if log_level := os.environ.get("OPENFARE_RS_LOG"):
        config.logging.log_level = log_level.upper()


def _coerce_value(expected: Any, value: Any) -> Any:
    """Convert a config file value to a field's declared type, or raise ValueError."""
    origin = get_origin(expected)
    if origin is Union:
        if value is None:
            return None
        expected = next(arg for arg in get_args(expected) if arg is not type(None))
        origin = get_origin(expected)

    if origin is list:
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ValueError("expected a list of strings")
        return list(value)
    if origin is dict:
        if not isinstance(value, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in value.items()
        ):
            raise ValueError("expected a mapping of strings")
        return dict(value)
    if expected is bool:
        if not isinstance(value, bool):
            raise ValueError("expected true or false")
        return value
    if expected in (int, float):
        if isinstance(value, bool) or (
            expected is int and isinstance(value, float) and not value.is_integer()
        ):
            raise ValueError(f"expected {expected.__name__}, got {value!r}")
        try:
            return expected(value)
        except (TypeError, ValueError):
            raise ValueError(f"expected {expected.__name__}, got {value!r}") from None
    if expected is str and not isinstance(value, str):
        raise ValueError(f"expected a string, got {value!r}")
    return value


def apply_config_section(
    config: Any, section_data: Dict[str, Any], section_name: str
) -> List[str]:
    """
    Apply configuration from dictionary to config section.

    Returns:
        List[str]: Values that do not match their field's type; those fields
        keep their previous value
    """
    errors = []
    field_types = {f.name: f.type for f in fields(config)}

    for key, value in section_data.items():
        if key not in field_types:
            console.print(
                f"⚠️  Unknown config key in {section_name}: {key}", style="yellow"
            )
            continue

        try:
            value = _coerce_value(field_types[key], value)
        except ValueError as e:
            errors.append(f"{section_name}.{key}: {e}")
            continue

        if isinstance(getattr(config, key), dict):
            getattr(config, key).update(value)
        else:
            setattr(config, key, value)

    return errors


def load_config(config_path: Optional[Path] = None) -> OpenFareConfig:
    """
    Load configuration from file and environment.

    Raises:
        ConfigurationError: If the resulting values are invalid
    """
    global _global_config

    config = OpenFareConfig()
    type_errors: List[str] = []

    config_file = config_path or find_config_file()
    if config_file:
        file_config = load_config_file(config_file)
        if file_config is not None and not isinstance(file_config, dict):
            type_errors.append(f"{config_file} must contain a mapping of config sections")
        elif file_config:
            for section_name in ("network", "aggregation", "report", "logging"):
                section_data = file_config.get(section_name)
                if section_data is None:
                    continue
                if not isinstance(section_data, dict):
                    type_errors.append(f"{section_name} must be a mapping")
                    continue
                type_errors.extend(
                    apply_config_section(
                        getattr(config, section_name), section_data, section_name
                    )
                )

    load_environment_overrides(config)

    if config.aggregation.target_currency:
        config.aggregation.target_currency = (
            config.aggregation.target_currency.strip().upper()
        )

    validation_errors = type_errors + validate_config_values(config)
    if validation_errors:
        raise ConfigurationError(validation_errors)

    _global_config = config
    return config


def get_config() -> OpenFareConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _global_config
    _global_config = None


def create_sample_config() -> str:
    """Generate a sample configuration document."""
    return json.dumps(OpenFareConfig().to_dict(), indent=2)
