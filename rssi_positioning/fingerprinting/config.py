"""Estimator configuration loaded from YAML or JSON.

A configuration file holds the scalar settings of the fingerprint
estimators, either at the top level or under an ``estimator:`` section:

    estimator:
      order: third
      min_nearest_fingerprints: 1
      max_nearest_fingerprints: 5
      path_loss_exponent: 2.5
      fallback_rssi_std: 1.0
      propagate_path_loss_exponent_std: false

Fields left as None keep the estimator's own default.

Author: Navigation Engineer
Date: 2024
"""

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml


@dataclass
class EstimatorConfig:
    """Scalar settings shared by the fingerprint position estimators."""

    min_nearest_fingerprints: Optional[int] = None
    max_nearest_fingerprints: Optional[int] = None
    path_loss_exponent: Optional[float] = None
    fallback_rssi_std: Optional[float] = None
    order: Optional[str] = None
    propagate_fingerprint_rssi_std: Optional[bool] = None
    propagate_path_loss_exponent_std: Optional[bool] = None
    propagate_fingerprint_position_covariance: Optional[bool] = None
    propagate_radio_source_position_covariance: Optional[bool] = None
    use_sources_path_loss_exponent_when_available: Optional[bool] = None
    use_no_mean_nearest_fingerprint_finder: Optional[bool] = None
    remove_means_from_fingerprint_readings: Optional[bool] = None

    @classmethod
    def from_dict(cls, d: dict) -> "EstimatorConfig":
        return cls(**{k: v for k, v in d.items() if k in cls.__annotations__})

    def to_dict(self, include_unset: bool = False) -> Dict[str, Any]:
        values = asdict(self)
        if include_unset:
            return values
        return {k: v for k, v in values.items() if v is not None}

    def items(self):
        """Iterate over the (name, value) pairs that are set."""
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                yield f.name, value


def load_estimator_config(config_path: Union[str, Path]) -> EstimatorConfig:
    """
    Load an EstimatorConfig from a YAML (.yaml/.yml) or JSON (.json) file.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Parsed EstimatorConfig. Unknown keys are ignored.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the extension is not supported or the content is not
            a mapping.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()
    with open(config_path, "r") as f:
        if suffix in (".yaml", ".yml"):
            raw = yaml.safe_load(f)
        elif suffix == ".json":
            raw = json.load(f)
        else:
            raise ValueError(
                f"Unsupported config format '{suffix}'. Use .yaml, .yml or .json"
            )

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file must contain a mapping, got {type(raw).__name__}")
    if "estimator" in raw:
        raw = raw["estimator"] or {}

    return EstimatorConfig.from_dict(raw)


def save_estimator_config(config: EstimatorConfig, config_path: Union[str, Path]) -> None:
    """Write the settings that are set to a YAML or JSON file."""
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"estimator": config.to_dict()}

    suffix = config_path.suffix.lower()
    with open(config_path, "w") as f:
        if suffix in (".yaml", ".yml"):
            yaml.safe_dump(payload, f, sort_keys=False)
        elif suffix == ".json":
            json.dump(payload, f, indent=2)
        else:
            raise ValueError(
                f"Unsupported config format '{suffix}'. Use .yaml, .yml or .json"
            )
