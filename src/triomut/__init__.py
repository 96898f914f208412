"""
Trio model for de novo germline and somatic mutations.

Scores the probability that a child-mother-father trio's reads at a site
reflect a new mutation, and refits the sequencing error rate from many
sites by expectation-maximization.
"""

__version__ = "0.1.0"

from .utils import (
    # Genotype spaces
    NUCLEOTIDES,
    NUCLEOTIDE_COUNT,
    GENOTYPE_COUNT,
    GENOTYPE_PAIR_COUNT,
    GENOTYPE_NAMES,
    # Distribution functions
    dirichlet_multinomial_logpmf,
    approx_equal,
    as_read_data,
    # Data classes
    SequencingErrorFit,
)

from .params import EMSpec

from .peeling import (
    TreePeel,
    ReadDependentData,
)

from .trio import (
    TrioModel,
    mutation_probability,
)

from .em import (
    SufficientStatistics,
    fit_sequencing_error_rate,
)

from .simulation import (
    simulate_trios,
    tally_simulated_trios,
    empirical_probabilities,
    load_simulation_counts,
    write_probabilities,
)

__all__ = [
    # Classes
    "TrioModel",
    "SufficientStatistics",
    "TreePeel",
    "ReadDependentData",
    # Convenience functions
    "mutation_probability",
    "fit_sequencing_error_rate",
    "simulate_trios",
    "tally_simulated_trios",
    "empirical_probabilities",
    "load_simulation_counts",
    "write_probabilities",
    # Data classes
    "EMSpec",
    "SequencingErrorFit",
    # Utilities
    "NUCLEOTIDES",
    "NUCLEOTIDE_COUNT",
    "GENOTYPE_COUNT",
    "GENOTYPE_PAIR_COUNT",
    "GENOTYPE_NAMES",
    "dirichlet_multinomial_logpmf",
    "approx_equal",
    "as_read_data",
]
