"""
Report configuration loading.

Reads the optional YAML config that declares usage sources and pricing
defaults. Command-line options always take precedence over these values.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

from llm_usage_metrics.storage.paths import get_default_config_path


@dataclass(frozen=True)
class SourceConfig:
    """Location of one source's usage files."""
    directory: str

    def __post_init__(self):
        """Validate the directory is non-empty."""
        if not self.directory.strip():
            raise ValueError("source directory must be a non-empty string")


@dataclass(frozen=True)
class PricingConfig:
    """Pricing defaults."""
    url: Optional[str] = None
    offline: bool = False
    ignore_failures: bool = False


@dataclass(frozen=True)
class ReportConfig:
    """Complete report configuration."""
    sources: Dict[str, SourceConfig] = field(default_factory=dict)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    timezone: Optional[str] = None
    source_order: Tuple[str, ...] = ()

    def source_directories(self) -> Dict[str, str]:
        return {source_id: source.directory for source_id, source in self.sources.items()}


def load_report_config(path: Union[str, Path]) -> ReportConfig:
    """Load and validate report configuration from a YAML file.

    Unknown keys are rejected so that a typo never silently changes which
    sources are read or how they are priced.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ReportConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Report config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return ReportConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")

    allowed_top_keys = {'sources', 'pricing', 'timezone', 'source_order'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    timezone = raw_config.get('timezone')
    if timezone is not None and (not isinstance(timezone, str) or not timezone.strip()):
        raise ValueError("'timezone' must be a non-empty string")

    return ReportConfig(
        sources=_parse_sources(raw_config.get('sources') or {}),
        pricing=_parse_pricing(raw_config.get('pricing') or {}),
        timezone=timezone.strip() if timezone else None,
        source_order=_parse_source_order(raw_config.get('source_order') or []),
    )


def load_default_report_config(path: Optional[Union[str, Path]] = None) -> ReportConfig:
    """Load the config at ``path``, or the per-user default if it exists.

    An explicitly given path must exist; a missing default file yields an
    empty configuration.
    """
    if path is not None:
        return load_report_config(path)

    default_path = get_default_config_path()
    if not default_path.exists():
        return ReportConfig()
    return load_report_config(default_path)


def _parse_sources(data: Any) -> Dict[str, SourceConfig]:
    if not isinstance(data, dict):
        raise ValueError("'sources' must be a dictionary")

    sources = {}
    for source_id, source_data in data.items():
        if not isinstance(source_id, str) or not source_id.strip():
            raise ValueError("Source ids must be non-empty strings")
        path = f"sources.{source_id}"

        if not isinstance(source_data, dict):
            raise ValueError(f"Source '{source_id}' must be a dictionary")

        unknown_keys = set(source_data.keys()) - {'directory'}
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

        directory = source_data.get('directory')
        if not isinstance(directory, str):
            raise ValueError(f"Missing required 'directory' in {path}")

        sources[source_id.strip().lower()] = SourceConfig(directory=directory.strip())
    return sources


def _parse_pricing(data: Any) -> PricingConfig:
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")

    allowed_keys = {'url', 'offline', 'ignore_failures'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in pricing: {unknown_keys}")

    url = data.get('url')
    if url is not None and not isinstance(url, str):
        raise ValueError("'url' in pricing must be a string")

    for flag in ('offline', 'ignore_failures'):
        if flag in data and not isinstance(data[flag], bool):
            raise ValueError(f"'{flag}' in pricing must be true or false")

    return PricingConfig(
        url=url,
        offline=data.get('offline', False),
        ignore_failures=data.get('ignore_failures', False),
    )


def _parse_source_order(data: Any) -> Tuple[str, ...]:
    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        raise ValueError("'source_order' must be a list of source ids")
    return tuple(item.strip().lower() for item in data if item.strip())
