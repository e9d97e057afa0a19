from .binning import BinningParameters, intensities_binned, unit_resolution_binning_parameters
from .checkpoint import Checkpoint
from .config import Config
from .correlations import SampledCorrelations
from .errors import (
    ConfigurationError,
    CorrelationNotFound,
    InvalidTemperature,
    ShapeMismatch,
    SqwError,
)
from .formula import (
    Custom,
    DipoleFactor,
    Element,
    FormFactor,
    FullTensor,
    IntensityFormula,
    Trace,
    classical_to_quantum,
    intensity_formula,
)
from .parameters import Lattice, SamplingParameters
from .retrieval import (
    available_energies,
    available_wave_vectors,
    broaden_energy,
    instant_intensities_interpolated,
    integrated_lorentzian,
    intensities_interpolated,
    lorentzian,
    powder_average,
)
from .trajectory import Observables, trajectory

__version__ = "0.1.0"
