"""
expense_config -- single public entrypoint for service configuration.

Responsibility:
    Provides the ONLY way to obtain runtime settings through
    ``get_active_config()``.  Settings come from a YAML file (path given
    explicitly or through ``EXPENSE_APPROVAL_CONFIG``), with
    ``DATABASE_URL`` and ``LOG_LEVEL`` environment overrides on top.

Architecture position:
    Configuration -- sits above ``expense_kernel`` and below ``expense_api``
    and the scripts.  The kernel MUST NEVER import from ``expense_config``.

Failure modes:
    - ``FileNotFoundError`` -- an explicitly named file does not exist.
    - ``ValueError`` -- invalid settings values.

Audit relevance:
    Every call emits a ``CONFIG_TRACE`` log entry with the source path and
    the checksum of the effective settings.
"""

from __future__ import annotations

import logging
import os
from dataclasses import fields, replace
from pathlib import Path

from expense_config.loader import (
    compute_checksum,
    import_rules_file,
    load_rules_file,
    load_yaml_file,
    parse_rule,
    parse_settings,
)
from expense_config.schema import DEFAULT_EXCHANGE_RATES, WorkflowSettings

_logger = logging.getLogger("expense_kernel.config")

CONFIG_ENV_VAR = "EXPENSE_APPROVAL_CONFIG"


def get_active_config(config_path: Path | str | None = None) -> WorkflowSettings:
    """Return the effective ``WorkflowSettings``.

    Resolution order: explicit ``config_path``, then the
    ``EXPENSE_APPROVAL_CONFIG`` environment variable, then built-in
    defaults.  ``DATABASE_URL`` and ``LOG_LEVEL`` override the file.
    """
    source = config_path or os.environ.get(CONFIG_ENV_VAR)
    data = load_yaml_file(Path(source)) if source else {}
    settings = parse_settings(data)

    overrides = {}
    if os.environ.get("DATABASE_URL"):
        overrides["database_url"] = os.environ["DATABASE_URL"]
    if os.environ.get("LOG_LEVEL"):
        overrides["log_level"] = os.environ["LOG_LEVEL"].upper()
    if overrides:
        settings = replace(settings, **overrides)

    snapshot = {f.name: getattr(settings, f.name) for f in fields(settings)}
    snapshot["exchange_rates"] = dict(settings.exchange_rates)
    _logger.info(
        "CONFIG_TRACE",
        extra={
            "trace_type": "CONFIG_TRACE",
            "config_source": str(source) if source else "defaults",
            "checksum": compute_checksum(snapshot),
            "overrides": sorted(overrides),
        },
    )
    return settings


__all__ = [
    "CONFIG_ENV_VAR",
    "DEFAULT_EXCHANGE_RATES",
    "WorkflowSettings",
    "compute_checksum",
    "get_active_config",
    "import_rules_file",
    "load_rules_file",
    "parse_rule",
    "parse_settings",
]
