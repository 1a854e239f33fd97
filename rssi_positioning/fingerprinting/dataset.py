"""Radio map container and JSON I/O.

A radio map bundles the radio sources, the located fingerprints of a survey
and, optionally, query fingerprints with their ground truth positions. Sources
are stored once and referenced by identifier from every reading.

File layout:
    {
        "dims": 2,
        "metadata": {...},
        "sources": [{"identifier": "AP1", "position": [10.0, 0.0], ...}],
        "located_fingerprints": [
            {"position": [0.0, 0.0], "readings": [{"source": "AP1", "rssi": -50.0}]}
        ],
        "queries": [{"readings": [...], "true_position": [1.0, 2.0]}]
    }

Author: Navigation Engineer
Date: 2024
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np

from .types import LocatedFingerprint, RadioSource, RssiFingerprint, RssiReading


@dataclass
class RadioMap:
    """
    Radio sources, located fingerprints and query fingerprints of one area.

    Attributes:
        sources: Radio sources referenced by the readings. Sources with
            unknown position are allowed.
        located_fingerprints: Fingerprints with known positions.
        queries: Query fingerprints to be positioned.
        query_positions: Ground truth position of each query, or None.
        metadata: Free-form description of the map (generator, units, ...).
    """

    sources: List[RadioSource]
    located_fingerprints: List[LocatedFingerprint]
    queries: List[RssiFingerprint] = field(default_factory=list)
    query_positions: List[Optional[np.ndarray]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.located_fingerprints:
            raise ValueError("A radio map needs at least one located fingerprint")

        dims = {f.dim for f in self.located_fingerprints}
        dims.update(source.dim for source in self.sources if source.is_located)
        if len(dims) != 1:
            raise ValueError(f"Inconsistent position dimensions in radio map: {sorted(dims)}")

        if not self.query_positions:
            self.query_positions = [None] * len(self.queries)
        if len(self.query_positions) != len(self.queries):
            raise ValueError(
                f"query_positions has {len(self.query_positions)} entries, "
                f"expected {len(self.queries)}"
            )
        self.query_positions = [
            None if p is None else np.asarray(p, dtype=float) for p in self.query_positions
        ]

    @property
    def dims(self) -> int:
        return self.located_fingerprints[0].dim

    @property
    def located_sources(self) -> List[RadioSource]:
        return [source for source in self.sources if source.is_located]

    def __repr__(self) -> str:
        return (
            f"RadioMap(dims={self.dims}, n_sources={len(self.sources)}, "
            f"n_located_fingerprints={len(self.located_fingerprints)}, "
            f"n_queries={len(self.queries)})"
        )


def _array_or_none(value) -> Optional[list]:
    return None if value is None else np.asarray(value).tolist()


def _source_to_dict(source: RadioSource) -> Dict[str, Any]:
    return {
        "identifier": source.identifier,
        "source_type": source.source_type,
        "frequency": source.frequency,
        "position": _array_or_none(source.position),
        "position_covariance": _array_or_none(source.position_covariance),
        "path_loss_exponent": source.path_loss_exponent,
        "path_loss_exponent_std": source.path_loss_exponent_std,
        "meta": source.meta,
    }


def _readings_to_list(fingerprint: RssiFingerprint) -> List[Dict[str, Any]]:
    return [
        {"source": r.source.identifier, "rssi": r.rssi, "rssi_std": r.rssi_std}
        for r in fingerprint.readings
    ]


def _readings_from_list(items, sources: Dict[Any, RadioSource]) -> List[RssiReading]:
    readings = []
    for item in items:
        identifier = item["source"]
        if identifier not in sources:
            raise ValueError(f"Reading references unknown source {identifier!r}")
        readings.append(RssiReading(sources[identifier], item["rssi"], item.get("rssi_std")))
    return readings


def save_radio_map(radio_map: RadioMap, path: Union[str, Path]) -> None:
    """
    Save a radio map as JSON.

    Args:
        radio_map: RadioMap to save.
        path: Destination file. Parent directories are created.

    Examples:
        >>> save_radio_map(radio_map, 'data/sim/rssi_radio_map.json')
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "dims": radio_map.dims,
        "metadata": radio_map.metadata,
        "sources": [_source_to_dict(source) for source in radio_map.sources],
        "located_fingerprints": [
            {
                "position": f.position.tolist(),
                "position_covariance": _array_or_none(f.position_covariance),
                "mean_rssi_bias": f.mean_rssi_bias,
                "readings": _readings_to_list(f),
            }
            for f in radio_map.located_fingerprints
        ],
        "queries": [
            {"readings": _readings_to_list(q), "true_position": _array_or_none(p)}
            for q, p in zip(radio_map.queries, radio_map.query_positions)
        ],
    }

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def load_radio_map(path: Union[str, Path]) -> RadioMap:
    """
    Load a radio map saved by save_radio_map().

    Args:
        path: JSON file.

    Returns:
        RadioMap whose readings reference the loaded RadioSource objects.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If a reading references an unknown source or the data
            fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Radio map file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    sources = {}
    for item in data["sources"]:
        source = RadioSource(
            identifier=item["identifier"],
            source_type=item.get("source_type", "wifi_access_point"),
            frequency=item.get("frequency"),
            position=item.get("position"),
            position_covariance=item.get("position_covariance"),
            path_loss_exponent=item.get("path_loss_exponent"),
            path_loss_exponent_std=item.get("path_loss_exponent_std"),
            meta=item.get("meta") or {},
        )
        sources[source.identifier] = source

    located_fingerprints = [
        LocatedFingerprint(
            readings=_readings_from_list(item["readings"], sources),
            position=item["position"],
            position_covariance=item.get("position_covariance"),
            mean_rssi_bias=item.get("mean_rssi_bias"),
        )
        for item in data["located_fingerprints"]
    ]

    queries = []
    query_positions = []
    for item in data.get("queries", []):
        queries.append(RssiFingerprint(_readings_from_list(item["readings"], sources)))
        query_positions.append(item.get("true_position"))

    radio_map = RadioMap(
        sources=list(sources.values()),
        located_fingerprints=located_fingerprints,
        queries=queries,
        query_positions=query_positions,
        metadata=data.get("metadata") or {},
    )

    if data.get("dims") is not None and data["dims"] != radio_map.dims:
        raise ValueError(f"File declares dims={data['dims']} but positions have {radio_map.dims}")

    return radio_map
