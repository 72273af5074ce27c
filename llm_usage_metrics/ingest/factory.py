"""
Adapter construction from configuration.
"""

from typing import Dict, List, Mapping, Optional

from llm_usage_metrics.config.loader import ReportConfig

from .jsonl_adapter import JsonlSourceAdapter
from .source_adapter import SourceAdapter


def create_adapters(
    config: ReportConfig,
    source_dir_overrides: Optional[Mapping[str, str]] = None,
) -> List[SourceAdapter]:
    """Build one adapter per configured source.

    ``--source-dir`` overrides replace a configured directory, or add a
    source that the config does not declare. Adapters are returned in
    config order followed by override-only sources in the order given.
    """
    directories: Dict[str, str] = config.source_directories()
    for source_id, directory in (source_dir_overrides or {}).items():
        directories[source_id] = directory

    return [JsonlSourceAdapter(source_id, directory) for source_id, directory in directories.items()]
