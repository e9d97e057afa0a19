import json
import os
from numbers import Number
from pathlib import Path

import numpy as np
import yaml

from sqwpy.correlations import SampledCorrelations
from sqwpy.errors import ConfigurationError
from sqwpy.log import sampling_logger
from sqwpy.parameters import Lattice, SamplingParameters
from sqwpy.trajectory import Observables


class Config:
    """
    Sampling campaign described by a ``.json`` or ``.yaml``/``.yml`` file.

    Sections:

    - ``lattice``: ``latvecs`` (3x3, columns are lattice vectors) and fractional
      ``positions``. Optional, defaults to a simple cubic lattice.
    - ``sampling``: ``latsize`` plus either ``dt``, ``nw`` and ``wmax`` or
      ``static: true``.
    - ``observables``: mapping ``name -> covector``; a covector is a list of
      three numbers or a ``{real, imag}`` pair. Optional.
    - ``correlations``: list of channel pairs. Optional, defaults to all pairs.
    - ``accumulator``: ``calculate_variance``, ``process_trajectory``,
      ``apply_g`` and ``backend``. Optional.
    - ``output``: a file name, or ``folder``, ``filename`` and ``extension``.
      Optional.

    Args:
        path_config (str | Path): Path of the configuration file.
    """

    def __init__(self, path_config: str | Path):
        self.log = sampling_logger(self.__class__.__module__)
        self.path_config = Path(path_config)
        self.file_type = self.path_config.suffix

        if not self.path_config.is_file():
            raise ConfigurationError(f"Config file {self.path_config} does not exist")
        match self.file_type:
            case ".json":
                with open(self.path_config) as data:
                    self.config = json.load(data)
            case ".yaml" | ".yml":
                with open(self.path_config) as data:
                    self.config = yaml.safe_load(data)
            case _:
                raise ConfigurationError(
                    "The provided config file needs to be a json or yaml file!"
                )
        if not isinstance(self.config, dict):
            raise ConfigurationError(
                f"Could not read config file {self.path_config}. Expected a mapping at the top level."
            )
        if "sampling" not in self.config:
            raise ConfigurationError(f"Config file {self.path_config} has no 'sampling' section")

        self.__read()
        self.__folder()
        self.log.info("Read sampling configuration from %s", self.path_config)

    def __read(self):
        lattice = self.config.get("lattice", {}) or {}
        self.lattice = Lattice(
            latvecs=lattice.get("latvecs"),
            positions=lattice.get("positions"),
        )

        sampling = self.config["sampling"]
        if "latsize" not in sampling:
            raise ConfigurationError("The 'sampling' section needs a latsize")
        if sampling.get("static", False):
            self.parameters = SamplingParameters.instant(sampling["latsize"])
        else:
            missing = [key for key in ("dt", "nw", "wmax") if key not in sampling]
            if missing:
                raise ConfigurationError(
                    f"Dynamical sampling needs {missing}; set 'static: true' for instantaneous correlations"
                )
            self.parameters = SamplingParameters(
                sampling["latsize"], sampling["dt"], sampling["nw"], sampling["wmax"]
            )

        self.observables = None
        if "observables" in self.config:
            observables = {}
            for name, op in self.config["observables"].items():
                if isinstance(op, dict):
                    observables[name] = np.asarray(op["real"]) + 1j * np.asarray(
                        op.get("imag", np.zeros(3))
                    )
                elif isinstance(op, list) and all(isinstance(v, Number) for v in op):
                    observables[name] = np.asarray(op)
                else:
                    raise ConfigurationError(
                        f"Observable {name} must be a list of three numbers or a real/imag mapping"
                    )
            self.observables = Observables(observables)

        self.correlations = (
            [tuple(pair) for pair in self.config["correlations"]]
            if "correlations" in self.config
            else None
        )

        accumulator = self.config.get("accumulator", {}) or {}
        self.calculate_variance = bool(accumulator.get("calculate_variance", False))
        self.process_trajectory = accumulator.get("process_trajectory", "none")
        self.apply_g = bool(accumulator.get("apply_g", True))
        self.backend = accumulator.get("backend")

    def __folder(self):
        output = self.config.get("output")
        if output is None:
            self.output_filename = None
            return
        if isinstance(output, str):
            self.output_filename = output
            return

        folder = output.get("folder", ".")
        folder = os.sep.join(folder.replace("\\", "/").split("/"))
        extension = output.get("extension", "bz2")
        filename = output.get("filename", self.path_config.stem)
        filename = filename if Path(filename).suffix else f"{filename}.{extension}"
        self.output_filename = os.path.join(folder, filename)

    def build(self, **kwargs) -> SampledCorrelations:
        """
        Create an empty accumulator from the configuration.

        Keyword arguments override the ``accumulator`` section.
        """
        options = dict(
            calculate_variance=self.calculate_variance,
            process_trajectory=self.process_trajectory,
            apply_g=self.apply_g,
            backend=self.backend,
        )
        options.update(kwargs)
        return SampledCorrelations(
            self.parameters,
            lattice=self.lattice,
            observables=self.observables,
            correlations=self.correlations,
            **options,
        )
