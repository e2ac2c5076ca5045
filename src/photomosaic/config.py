from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from photomosaic.errors import InvalidConfigurationError
from photomosaic.schema import MosaicConfig, parse_config


log = logging.getLogger(__name__)


def load_config_dict(cfg_path: str | Path) -> dict[str, Any]:
    """Read a YAML config as a plain dict.

    Adds ``config_path`` and ``config_dir`` (absolute). An empty file is an
    empty config (all defaults).
    """
    cfg_path = Path(cfg_path).expanduser().resolve()
    try:
        cfg = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise InvalidConfigurationError(f"{cfg_path}: not valid YAML ({e})", code="YAML") from e
    if not isinstance(cfg, dict):
        raise InvalidConfigurationError(
            f"{cfg_path}: top level must be a mapping, got {type(cfg).__name__}", code="YAML"
        )
    cfg["config_path"] = str(cfg_path)
    cfg["config_dir"] = str(cfg_path.parent)
    return cfg


def load_config(cfg_path: str | Path | None = None) -> MosaicConfig:
    """Load and validate a YAML config; None gives the defaults."""
    if cfg_path is None:
        return MosaicConfig()
    cfg = parse_config(load_config_dict(cfg_path))
    log.debug("loaded config %s", cfg.config_path)
    return cfg


def dump_config(cfg: MosaicConfig, path: str | Path) -> Path:
    """Write ``cfg`` as YAML (without the injected path keys)."""
    path = Path(path)
    data = cfg.model_dump(mode="json", exclude={"config_path", "config_dir"})
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return path
