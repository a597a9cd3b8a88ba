from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import PlanLimits, PlanTier

# Pull a local .env into os.environ before any oc.env interpolation runs
load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "config" / "gateway.yaml"
CONFIG_ENV_VAR = "PDF_GATEWAY_CONFIG"

MEGABYTE = 1024 * 1024


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not DEFAULT_CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {DEFAULT_CONFIG_PATH}")
    return OmegaConf.load(DEFAULT_CONFIG_PATH)


def _load_local_config() -> Optional[DictConfig]:
    local_path = os.environ.get(CONFIG_ENV_VAR)
    if not local_path:
        return None
    path = Path(local_path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"{CONFIG_ENV_VAR} points to a missing file: {path}")
    return OmegaConf.load(path)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the gateway configuration.

    The packaged defaults are merged with the optional file named by
    PDF_GATEWAY_CONFIG and then with ``overrides``. The base is put in struct
    mode first, so an override for an unknown key raises instead of being
    silently ignored.

    Args:
        overrides: Nested mapping of values to merge last (tests, embedding apps)

    Returns:
        A resolved, read-only DictConfig
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    layers = [base]
    local = _load_local_config()
    if local is not None:
        layers.append(local)
    if overrides:
        layers.append(OmegaConf.create(overrides))

    merged = DictConfig(OmegaConf.merge(*layers))
    OmegaConf.resolve(merged)
    OmegaConf.set_readonly(merged, True)
    return merged


@lru_cache(maxsize=1)
def get_settings() -> DictConfig:
    return make_runtime_config()


def plan_limits_from_config(config: DictConfig) -> Dict[PlanTier, PlanLimits]:
    """Translate the ``plans`` section into PlanLimits keyed by tier."""
    limits: Dict[PlanTier, PlanLimits] = {}
    for tier in PlanTier:
        section = config.plans[tier.value]
        size_mb = section.max_file_size_mb
        limits[tier] = PlanLimits(
            max_ops_per_day=section.max_ops_per_day,
            max_file_size_bytes=None if size_mb is None else int(size_mb) * MEGABYTE,
            max_pages=section.max_pages,
        )
    return limits


def allowed_origins(config: DictConfig) -> list[str]:
    raw = config.server.allowed_origins
    if isinstance(raw, str):
        return [origin.strip() for origin in raw.split(",") if origin.strip()]
    return list(raw)
