from dataclasses import dataclass
import numpy as np


_DEFAULT_POPULATION_MUTATION_RATE = 0.001
_DEFAULT_GERMLINE_MUTATION_RATE = 2e-8
_DEFAULT_SOMATIC_MUTATION_RATE = 2e-8
_DEFAULT_SEQUENCING_ERROR_RATE = 0.005
_DEFAULT_DIRICHLET_DISPERSION = 1000.0
_DEFAULT_NUCLEOTIDE_FREQUENCIES = np.array([0.25, 0.25, 0.25, 0.25])

_FREQUENCY_SUM_ATOL = 1e-6

_DEFAULT_MAX_ITER = 100
_DEFAULT_RTOL = 1e-9
_DEFAULT_ATOL = 1e-12
_DEFAULT_ERROR_RATE_BOUNDS = (1e-10, 0.75)


def check_positive(name: str, value: float) -> float:
    value = float(value)
    if not np.isfinite(value) or value <= 0:
        raise ValueError(f"{name} must be a positive finite number, got {value!r}")
    return value


def check_non_negative(name: str, value: float) -> float:
    value = float(value)
    if not np.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be a non-negative finite number, got {value!r}")
    return value


def check_sequencing_error_rate(value: float) -> float:
    value = float(value)
    if not np.isfinite(value) or not 0 < value < 1:
        raise ValueError(f"sequencing_error_rate must lie in (0, 1), got {value!r}")
    return value


def check_nucleotide_frequencies(frequencies) -> np.ndarray:
    """
    Validate a base-frequency distribution over A, C, G, T.

    Every frequency must be strictly positive since the population prior
    uses them as Dirichlet parameters.
    """
    frequencies = np.asarray(frequencies, dtype=float)
    if frequencies.shape != (4,):
        raise ValueError("nucleotide_frequencies must have shape (4,)")
    if not np.all(np.isfinite(frequencies)) or np.any(frequencies <= 0):
        raise ValueError("nucleotide_frequencies must be positive")
    if abs(frequencies.sum() - 1.0) > _FREQUENCY_SUM_ATOL:
        raise ValueError(
            f"nucleotide_frequencies must sum to 1, got {frequencies.sum():.6g}"
        )
    return frequencies


@dataclass
class EMSpec:
    """
    Settings for the sequencing-error EM loop.

    The loop stops when a new estimate equals the current rate within
    (rtol, atol), or after max_iter M-steps.
    """

    max_iter: int = _DEFAULT_MAX_ITER
    rtol: float = _DEFAULT_RTOL
    atol: float = _DEFAULT_ATOL

    # Estimates are clipped into this interval
    error_rate_bounds: tuple = _DEFAULT_ERROR_RATE_BOUNDS

    def __post_init__(self):
        if int(self.max_iter) < 1:
            raise ValueError("max_iter must be at least 1")
        self.max_iter = int(self.max_iter)
        if self.rtol < 0 or self.atol < 0:
            raise ValueError("rtol and atol must be non-negative")
        low, high = self.error_rate_bounds
        if not 0 < low < high < 1:
            raise ValueError("error_rate_bounds must satisfy 0 < low < high < 1")
        self.error_rate_bounds = (float(low), float(high))
