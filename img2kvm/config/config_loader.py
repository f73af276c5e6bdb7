# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/config/config_loader.py
from __future__ import annotations

import argparse
import glob
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

import yaml

from ..core.utils import U

# YAML keys accepted as aliases of argparse dests
_KEY_ALIASES = {
    "image": "image_name",
    "vmid": "vm_id",
}


class Config:
    @staticmethod
    def expand_configs(logger: logging.Logger, paths: Sequence[str]) -> List[Path]:
        """Expand ~ and globs; keep command-line order (later overrides earlier)."""
        out: List[Path] = []
        for raw in paths:
            pattern = str(Path(raw).expanduser())
            matches = sorted(glob.glob(pattern)) if glob.has_magic(pattern) else [pattern]
            if not matches:
                U.die(logger, f"Config pattern matched nothing: {raw}", 1)
            for m in matches:
                p = Path(m)
                if not p.is_file():
                    U.die(logger, f"Config file not found: {p}", 1)
                out.append(p)
        return out

    @staticmethod
    def load(logger: logging.Logger, path: Path) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            U.die(logger, f"Invalid YAML in {path}: {e}", 1)
            raise
        if data is None:
            return {}
        if not isinstance(data, dict):
            U.die(logger, f"Config {path} must contain a mapping at top level (got {type(data).__name__})", 1)
        logger.debug("Loaded config %s (%d keys)", path, len(data))
        return Config.normalize(data)

    @staticmethod
    def normalize(data: Mapping[str, Any]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for k, v in data.items():
            key = str(k).strip().replace("-", "_")
            out[_KEY_ALIASES.get(key, key)] = v
        return out

    @staticmethod
    def merge(base: Dict[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
        """Deep merge; values from `extra` win."""
        out = dict(base)
        for k, v in extra.items():
            if isinstance(v, Mapping) and isinstance(out.get(k), dict):
                out[k] = Config.merge(out[k], v)
            else:
                out[k] = v
        return out

    @staticmethod
    def load_many(logger: logging.Logger, paths: Sequence[Path]) -> Dict[str, Any]:
        conf: Dict[str, Any] = {}
        for p in paths:
            conf = Config.merge(conf, Config.load(logger, Path(p)))
        return conf

    @staticmethod
    def apply_as_defaults(logger: logging.Logger, parser: argparse.ArgumentParser, conf: Mapping[str, Any]) -> None:
        """
        Feed config values to argparse as defaults so the command line still wins.
        Required options satisfied by the config stop being required.
        """
        known = {a.dest: a for a in parser._actions}
        defaults: Dict[str, Any] = {}
        for k, v in conf.items():
            action = known.get(k)
            if action is None:
                logger.warning("Ignoring unknown config key: %s", k)
                continue
            defaults[k] = v
            if action.required:
                action.required = False
        if defaults:
            parser.set_defaults(**defaults)
