import json
import os
from pathlib import Path

import pytest
import yaml

from sqwpy.config import Config
from sqwpy.errors import ConfigurationError


def _base_config() -> dict:
    return {
        "lattice": {
            "latvecs": [[1, 0, 0], [0, 1, 0], [0, 0, 1]],
            "positions": [[0, 0, 0], [0.5, 0.5, 0.5]],
        },
        "sampling": {"latsize": [2, 2, 2], "dt": 0.1, "nw": 4, "wmax": 2.0},
        "observables": {"Sx": [1, 0, 0], "Sz": {"real": [0, 0, 1]}},
        "correlations": [["Sx", "Sx"], ["Sz", "Sx"]],
        "accumulator": {"calculate_variance": True, "backend": "numpy"},
        "output": {"folder": "out", "filename": "run"},
    }


def test_yaml_config_builds_accumulator(tmp_path: Path) -> None:
    config_path = tmp_path / "campaign.yaml"
    config_path.write_text(yaml.safe_dump(_base_config()))

    config = Config(config_path)

    assert config.parameters.nw == 4
    assert config.lattice.natoms == 2
    assert config.output_filename == os.path.join("out", "run.bz2")

    sc = config.build()
    assert sc.natoms == 2
    assert sc.backend == "numpy"
    assert sc.calculate_variance
    assert sc.observables.names == ["Sx", "Sz"]
    assert sc.correlation_names() == [("Sx", "Sx"), ("Sx", "Sz")]

    assert not config.build(calculate_variance=False).calculate_variance


def test_json_static_config(tmp_path: Path) -> None:
    config_path = tmp_path / "static.json"
    config_path.write_text(
        json.dumps({"sampling": {"latsize": [3, 3, 1], "static": True}, "output": "sq.json"})
    )

    config = Config(str(config_path))

    assert config.parameters.is_static
    assert config.output_filename == "sq.json"
    sc = config.build(backend="numpy")
    assert sc.observables.names == ["Sx", "Sy", "Sz"]
    assert len(sc.correlations) == 6


def test_output_defaults_to_config_name(tmp_path: Path) -> None:
    values = _base_config()
    values["output"] = {"extension": "json"}
    config_path = tmp_path / "campaign.json"
    config_path.write_text(json.dumps(values))

    assert Config(config_path).output_filename == os.path.join(".", "campaign.json")


@pytest.mark.parametrize(
    "values",
    [
        {"lattice": {}},
        {"sampling": {"dt": 0.1, "nw": 4, "wmax": 1.0}},
        {"sampling": {"latsize": [2, 2, 2], "nw": 4}},
        {"sampling": {"latsize": [2, 2, 2], "dt": 1.0, "nw": 4, "wmax": 5.0}},
        {"sampling": {"latsize": [2, 2, 2], "static": True}, "observables": {"Q": "x"}},
    ],
)
def test_invalid_configs(tmp_path: Path, values: dict) -> None:
    config_path = tmp_path / "bad.json"
    config_path.write_text(json.dumps(values))
    with pytest.raises(ConfigurationError):
        Config(config_path)


def test_unsupported_or_missing_files(tmp_path: Path) -> None:
    text_path = tmp_path / "config.txt"
    text_path.write_text("sampling: {}")
    with pytest.raises(ConfigurationError):
        Config(text_path)
    with pytest.raises(ConfigurationError):
        Config(tmp_path / "missing.yaml")
