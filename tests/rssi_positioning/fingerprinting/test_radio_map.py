"""Unit tests for radio map I/O.

Author: Navigation Engineer
Date: 2024
"""

import json

import numpy as np
import pytest
from numpy.testing import assert_allclose

from rssi_positioning.fingerprinting import (
    LocatedFingerprint,
    RadioMap,
    RadioSource,
    RssiFingerprint,
    RssiReading,
    load_radio_map,
    save_radio_map,
)


@pytest.fixture
def radio_map():
    ap1 = RadioSource(
        "AP1",
        frequency=2.412e9,
        position=np.array([10.0, 0.0]),
        position_covariance=np.eye(2) * 0.25,
        path_loss_exponent=2.2,
        path_loss_exponent_std=0.1,
        meta={"ssid": "lab"},
    )
    ap2 = RadioSource("AP2", source_type="ble_beacon")
    located = [
        LocatedFingerprint(
            [RssiReading(ap1, -50.0, rssi_std=2.0), RssiReading(ap2, -70.0)],
            position=np.array([0.0, 0.0]),
            position_covariance=np.eye(2) * 0.01,
        ),
        LocatedFingerprint([RssiReading(ap2, -65.0)], position=np.array([2.0, 0.0]), mean_rssi_bias=-60.0),
    ]
    queries = [RssiFingerprint([RssiReading(ap1, -52.0)]), RssiFingerprint([RssiReading(ap2, -66.0)])]
    return RadioMap(
        sources=[ap1, ap2],
        located_fingerprints=located,
        queries=queries,
        query_positions=[np.array([0.5, 0.0]), None],
        metadata={"generator": "unit test"},
    )


class TestRadioMap:
    def test_properties(self, radio_map):
        assert radio_map.dims == 2
        assert [s.identifier for s in radio_map.located_sources] == ["AP1"]
        assert "n_located_fingerprints=2" in repr(radio_map)

    def test_query_positions_default_to_none(self, radio_map):
        radio_map = RadioMap(
            sources=radio_map.sources,
            located_fingerprints=radio_map.located_fingerprints,
            queries=radio_map.queries,
        )

        assert radio_map.query_positions == [None, None]

    def test_requires_located_fingerprints(self):
        with pytest.raises(ValueError, match="at least one located fingerprint"):
            RadioMap(sources=[], located_fingerprints=[])

    def test_mixed_dimensions_rejected(self, radio_map):
        with pytest.raises(ValueError, match="Inconsistent"):
            RadioMap(
                sources=radio_map.sources + [RadioSource("AP3", position=np.zeros(3))],
                located_fingerprints=radio_map.located_fingerprints,
            )

    def test_query_positions_length_checked(self, radio_map):
        with pytest.raises(ValueError, match="query_positions"):
            RadioMap(
                sources=radio_map.sources,
                located_fingerprints=radio_map.located_fingerprints,
                queries=radio_map.queries,
                query_positions=[None],
            )


class TestRadioMapIO:
    def test_save_then_load(self, radio_map, tmp_path):
        path = tmp_path / "maps" / "radio_map.json"

        save_radio_map(radio_map, path)
        loaded = load_radio_map(path)

        assert loaded.dims == 2
        assert loaded.metadata == {"generator": "unit test"}

        ap1, ap2 = loaded.sources
        assert ap1.identifier == "AP1" and ap2.identifier == "AP2"
        assert ap1.frequency == pytest.approx(2.412e9)
        assert_allclose(ap1.position_covariance, np.eye(2) * 0.25)
        assert ap1.path_loss_exponent_std == pytest.approx(0.1)
        assert ap1.meta == {"ssid": "lab"}
        assert ap2.source_type == "ble_beacon"
        assert not ap2.is_located

        first, second = loaded.located_fingerprints
        assert first.readings[0].source is ap1
        assert first.readings[0].rssi_std == pytest.approx(2.0)
        assert first.readings[1].rssi_std is None
        assert_allclose(first.position_covariance, np.eye(2) * 0.01)
        assert second.mean_rssi_bias == pytest.approx(-60.0)

        assert loaded.queries[1].readings[0].source is ap2
        assert_allclose(loaded.query_positions[0], [0.5, 0.0])
        assert loaded.query_positions[1] is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_radio_map(tmp_path / "missing.json")

    def test_unknown_source_reference(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(
            json.dumps(
                {
                    "sources": [{"identifier": "AP1"}],
                    "located_fingerprints": [
                        {"position": [0.0, 0.0], "readings": [{"source": "AP9", "rssi": -50.0}]}
                    ],
                }
            )
        )

        with pytest.raises(ValueError, match="unknown source 'AP9'"):
            load_radio_map(path)

    def test_declared_dims_checked(self, radio_map, tmp_path):
        path = tmp_path / "radio_map.json"
        save_radio_map(radio_map, path)
        data = json.loads(path.read_text())
        data["dims"] = 3
        path.write_text(json.dumps(data))

        with pytest.raises(ValueError, match="dims=3"):
            load_radio_map(path)
