"""
Configuration Loader (``costing_config.loader``).

Responsibility
--------------
Loads YAML files, overlays an operator file on the packaged defaults and
parses the result into the frozen dataclasses of ``costing_config.schema``.
Runtime callers use ``costing_config.get_active_config()`` instead.

Invariants enforced
-------------------
* Unknown sections or keys raise ``ValueError``; a typo never silently
  falls back to a default.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  effective settings.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Top level or section not a mapping  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from costing_config.schema import (
    CostingConfig,
    CostingPolicy,
    DatabaseConfig,
    LockingConfig,
    LoggingConfig,
)

_SECTIONS: dict[str, type] = {
    "database": DatabaseConfig,
    "locking": LockingConfig,
    "costing": CostingPolicy,
    "logging": LoggingConfig,
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def merge_settings(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``override`` on ``base`` one section deep."""
    merged = {section: dict(values) for section, values in base.items()}
    for section, values in override.items():
        if not isinstance(values, dict):
            raise ValueError(f"Section '{section}' must be a mapping")
        merged.setdefault(section, {}).update(values)
    return merged


def _build_section(section: str, values: dict[str, Any]) -> Any:
    cls = _SECTIONS[section]
    known = set(cls.__dataclass_fields__)
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown keys in section '{section}': {sorted(unknown)}")
    return cls(**values)


def parse_config(data: dict[str, Any], sources: tuple[str, ...] = ()) -> CostingConfig:
    """
    Parse merged settings into a CostingConfig.

    Raises:
        ValueError: unknown section or key, or a value rejected by the schema.
        KeyError: the database section is missing.
    """
    unknown_sections = set(data) - set(_SECTIONS)
    if unknown_sections:
        raise ValueError(f"Unknown configuration sections: {sorted(unknown_sections)}")

    sections = {name: _build_section(name, values) for name, values in data.items()}

    config = CostingConfig(
        database=sections["database"],
        locking=sections.get("locking", LockingConfig()),
        policy=sections.get("costing", CostingPolicy()),
        logging=sections.get("logging", LoggingConfig()),
        sources=sources,
    )
    return replace(config, checksum=compute_checksum(config.to_dict()))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
