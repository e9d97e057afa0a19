import _pickle
import bz2
import json
from pathlib import Path
from typing import Any

import numpy as np
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.dataclasses import dataclass
from scipy.io import loadmat, savemat
from typing_extensions import Self

from sqwpy.errors import ConfigurationError, ShapeMismatch
from sqwpy.parameters import Lattice, SamplingParameters
from sqwpy.trajectory import Observables

FORMAT_VERSION = 1


def _flat(values: Any) -> list:
    return np.atleast_1d(np.asarray(values)).ravel().tolist()


def _builtin(value: Any) -> Any:
    """Strip numpy containers from a freshly loaded ``.mat`` structure."""
    if isinstance(value, dict):
        return {k: _builtin(v) for k, v in value.items() if not k.startswith("__")}
    if isinstance(value, (list, tuple)):
        return [_builtin(v) for v in value]
    if isinstance(value, np.ndarray):
        if value.dtype == object:
            return [_builtin(v) for v in value.ravel()]
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    return value


@dataclass
class Observable:
    name: str = Field()
    real: list[float] = Field()
    imag: list[float] = Field()

    @field_validator("real", "imag", mode="before")
    @classmethod
    def flatten(cls, value: Any) -> list:
        return _flat(value)


class Checkpoint(BaseModel):
    """Serializable snapshot of a :class:`~sqwpy.correlations.SampledCorrelations`.

    Mean and variance tensors are stored flattened in C order next to their
    shape. The file format is picked from the suffix: ``.json``,
    ``.yml``/``.yaml``, ``.pkl``, ``.bz2`` (compressed pickle) or ``.mat``.
    """

    version: int = Field(default=FORMAT_VERSION)
    parameters: dict = Field()
    latvecs: list[list[float]] = Field()
    positions: list[list[float]] = Field()
    observables: list[Observable] = Field()
    correlations: list[list[int]] = Field()
    process_trajectory: str = Field(default="none")
    apply_g: bool = Field(default=True)
    nsamples: int = Field(default=0, ge=0)
    shape: list[int] = Field()
    data_real: list[float] = Field()
    data_imag: list[float] = Field()
    variance: list[float] | None = Field(default=None)

    model_config: ConfigDict = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("latvecs", "positions", mode="before")
    @classmethod
    def vectors(cls, value: Any) -> list:
        return np.asarray(value, dtype=float).reshape(-1, 3).tolist()

    @field_validator("correlations", mode="before")
    @classmethod
    def pairs(cls, value: Any) -> list:
        return np.asarray(value, dtype=int).reshape(-1, 2).tolist()

    @field_validator("observables", mode="before")
    @classmethod
    def observable_list(cls, value: Any) -> list:
        return [value] if isinstance(value, dict) else value

    @field_validator("shape", "data_real", "data_imag", "variance", mode="before")
    @classmethod
    def flatten(cls, value: Any) -> list | None:
        return None if value is None else _flat(value)

    @model_validator(mode="after")
    def number_of_elements(self) -> Self:
        size = int(np.prod(self.shape))
        if len(self.data_real) != size or len(self.data_imag) != size:
            raise ValueError(
                f"Stored data holds {len(self.data_real)} elements but shape {self.shape} needs {size}"
            )
        if self.variance is not None and len(self.variance) != size:
            raise ValueError(
                f"Stored variance holds {len(self.variance)} elements but shape {self.shape} needs {size}"
            )
        return self

    @classmethod
    def from_correlations(cls, sc: Any) -> "Checkpoint":
        names = sc.observables.names
        return cls(
            parameters=sc.parameters.as_dict(),
            latvecs=sc.lattice.latvecs,
            positions=sc.lattice.positions,
            observables=[
                Observable(name=name, real=op.real.tolist(), imag=op.imag.tolist())
                for name, op in zip(names, sc.observables.covectors)
            ],
            correlations=sorted(sc.correlations, key=sc.correlations.get),
            process_trajectory=sc.process_trajectory,
            apply_g=sc.apply_g,
            nsamples=sc.nsamples,
            shape=list(sc.data.shape),
            data_real=sc.data.real.ravel().tolist(),
            data_imag=sc.data.imag.ravel().tolist(),
            variance=None if not sc.calculate_variance else sc.variance.ravel().tolist(),
        )

    def to_correlations(self, **kwargs) -> Any:
        """Rebuild the accumulator. ``kwargs`` are forwarded to its constructor (e.g. ``backend``)."""
        from sqwpy.correlations import SampledCorrelations

        parameters = SamplingParameters.from_dict(self.parameters)
        observables = Observables(
            [(obs.name, np.asarray(obs.real) + 1j * np.asarray(obs.imag)) for obs in self.observables]
        )
        sc = SampledCorrelations(
            parameters,
            lattice=Lattice(np.array(self.latvecs), np.array(self.positions)),
            observables=observables,
            correlations=[tuple(pair) for pair in self.correlations],
            calculate_variance=self.variance is not None,
            process_trajectory=self.process_trajectory,
            apply_g=self.apply_g,
            **kwargs,
        )
        if list(sc.data.shape) != self.shape:
            raise ShapeMismatch(
                f"Checkpoint data of shape {tuple(self.shape)} does not fit accumulator of shape {sc.data.shape}"
            )

        sc.data[...] = (np.asarray(self.data_real) + 1j * np.asarray(self.data_imag)).reshape(self.shape)
        if self.variance is not None:
            sc.variance[...] = np.asarray(self.variance).reshape(self.shape)
        sc.nsamples = self.nsamples
        return sc

    def save(self, filename: str | Path) -> None:
        if isinstance(filename, str):
            filename = Path(filename)

        match filename.suffix:
            case ".json":
                with open(filename, "w") as f:
                    json.dump(self.model_dump(), f)
            case ".yml" | ".yaml":
                with open(filename, "w") as f:
                    yaml.dump(self.model_dump(), f, sort_keys=False)
            case ".pkl":
                with open(filename, "wb") as f:
                    _pickle.dump(self.model_dump(), f)
            case ".bz2":
                with bz2.BZ2File(filename, "w") as outfile:
                    _pickle.dump(self.model_dump(), outfile)
            case ".mat":
                savemat(filename, self.model_dump(exclude_none=True))
            case _:
                raise ConfigurationError(f"Unknown file extension {filename.suffix}")

    @classmethod
    def load(cls, filename: str | Path) -> "Checkpoint":
        if isinstance(filename, str):
            filename = Path(filename)

        match filename.suffix:
            case ".json":
                with open(filename) as f:
                    values = json.load(f)
            case ".yml" | ".yaml":
                with open(filename) as f:
                    values = yaml.safe_load(f)
            case ".pkl":
                with open(filename, "rb") as f:
                    values = _pickle.load(f)
            case ".bz2":
                with bz2.BZ2File(filename, "r") as infile:
                    values = _pickle.load(infile)
            case ".mat":
                values = _builtin(loadmat(filename, simplify_cells=True))
            case _:
                raise ConfigurationError(f"Unknown file extension {filename.suffix}")

        if values is None:
            raise ConfigurationError(f"Could not read checkpoint {filename}")
        return cls.model_validate(values)
