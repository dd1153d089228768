"""
Pyramid engine configuration
============================
Defaults for every PyramidConfig field, overridable from environment
variables (``PYRAMID_MAX_LEVERAGE`` etc., read through a ``.env`` file if
present) and from partial dict overrides such as an API request body.

Precedence: overrides > environment > defaults.
"""
import logging
import os
from dataclasses import fields
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from pyramid_trader.services.pyramid.models import PyramidConfig

load_dotenv()

logger = logging.getLogger(__name__)

ENV_PREFIX = "PYRAMID_"

DEFAULT_PYRAMID_CONFIG = PyramidConfig(
    max_leverage=88,
    base_risk_percent=0.3,
    max_pyramid_levels=5,
    confluence_thresholds=(3, 4, 5, 6, 7),
    pyramid_size_multipliers=(1.0, 0.75, 0.5, 0.35, 0.25),
    initial_stop_percent=0.8,
    trailing_stop_percent=0.5,
    take_profit_percent=8.0,
    min_confluence_to_enter=3,
    min_confluence_to_add=4,
    funding_rate_threshold=0.0005,
    liquidation_buffer=0.15,
)

DEFAULT_STARTING_CAPITAL = float(os.getenv("PYRAMID_STARTING_CAPITAL", "10000"))

_INT_FIELDS = frozenset({"max_pyramid_levels", "min_confluence_to_enter", "min_confluence_to_add"})
_INT_LIST_FIELDS = frozenset({"confluence_thresholds"})
_FLOAT_LIST_FIELDS = frozenset({"pyramid_size_multipliers"})


def _coerce(name: str, value: Any) -> Any:
    """Convert an env string or JSON value into the field's type."""
    if name in _INT_LIST_FIELDS or name in _FLOAT_LIST_FIELDS:
        if isinstance(value, str):
            value = [v for v in value.replace(" ", "").split(",") if v]
        cast = int if name in _INT_LIST_FIELDS else float
        return tuple(cast(float(v)) if cast is int else cast(v) for v in value)
    if name in _INT_FIELDS:
        return int(float(value))
    return float(value)


def _env_overrides() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for f in fields(PyramidConfig):
        raw = os.getenv(f"{ENV_PREFIX}{f.name.upper()}")
        if raw is None or raw.strip() == "":
            continue
        try:
            values[f.name] = _coerce(f.name, raw)
        except ValueError:
            raise ValueError(f"{ENV_PREFIX}{f.name.upper()}={raw!r} is not a valid value")
    return values


def load_pyramid_config(overrides: Optional[Mapping[str, Any]] = None,
                        use_env: bool = True) -> PyramidConfig:
    """Build a validated PyramidConfig.

    Unknown override keys raise ValueError so typos surface instead of
    silently running with defaults. ``None`` values are ignored.
    """
    values = DEFAULT_PYRAMID_CONFIG.to_dict()
    if use_env:
        values.update(_env_overrides())

    if overrides:
        known = {f.name for f in fields(PyramidConfig)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"Unknown config field(s): {', '.join(unknown)}")
        for name, value in overrides.items():
            if value is None:
                continue
            try:
                values[name] = _coerce(name, value)
            except (TypeError, ValueError):
                raise ValueError(f"Invalid value for {name}: {value!r}")

    values["confluence_thresholds"] = tuple(values["confluence_thresholds"])
    values["pyramid_size_multipliers"] = tuple(values["pyramid_size_multipliers"])
    config = PyramidConfig(**values).validate()
    logger.debug(f"Pyramid config: {config.to_dict()}")
    return config
