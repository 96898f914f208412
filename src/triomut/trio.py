"""
Trio model for the probability of a de novo mutation.

Given the reads of a child and both parents at one site, the model computes
the posterior probability that at least one germline or somatic mutation
occurred, by peeling likelihoods up the trio tree twice: once with the full
transition kernels and once with only their no-mutation parts.

Layers (bottom-up):
    - Sequencing: Dirichlet-multinomial reads given the sequenced genotype,
      with means set by the sequencing error rate and precision set by the
      Dirichlet dispersion.
    - Somatic: Jukes-Cantor change of each allele between the true genotype
      and the sequenced cells.
    - Germline: each parent transmits one of its two alleles, which mutates
      under an F81 kernel on the nucleotide frequencies.
    - Population: ordered parental alleles drawn from a Dirichlet(θ·π) urn.

Example
-------
>>> model = TrioModel()
>>> model.mutation_probability([[40, 0, 0, 0], [40, 0, 0, 0], [40, 0, 0, 0]])
"""

import numpy as np
from typing import Optional

from .params import (
    _DEFAULT_POPULATION_MUTATION_RATE,
    _DEFAULT_GERMLINE_MUTATION_RATE,
    _DEFAULT_SOMATIC_MUTATION_RATE,
    _DEFAULT_SEQUENCING_ERROR_RATE,
    _DEFAULT_DIRICHLET_DISPERSION,
    _DEFAULT_NUCLEOTIDE_FREQUENCIES,
    check_positive,
    check_non_negative,
    check_sequencing_error_rate,
    check_nucleotide_frequencies,
)
from .peeling import ReadDependentData, mutation_fraction, peel_tree
from .utils import (
    NUCLEOTIDE_COUNT,
    GENOTYPE_COUNT,
    GENOTYPE_ALLELES,
    GENOTYPE_NAMES,
    GENOTYPE_NUCLEOTIDE_MASK,
    IS_HOMOZYGOUS,
    TRIO_MEMBERS,
    allele_counts,
    approx_equal,
    as_read_data,
    as_site_array,
    dirichlet_multinomial_logpmf,
    dirichlet_sequence_logprob,
    frozen,
)


# Cached matrices invalidated by each parameter
_DEPENDENTS = {
    "population_mutation_rate": ("population_priors", "population_priors_single"),
    "germline_mutation_rate": (
        "germline_probability_mat_single",
        "germline_probability_mat",
        "germline_probability_mat_num",
    ),
    "somatic_mutation_rate": ("somatic_probability_mat", "somatic_probability_mat_diag"),
    "sequencing_error_rate": ("alphas",),
    "dirichlet_dispersion": ("alphas",),
    "nucleotide_frequencies": (
        "population_priors",
        "population_priors_single",
        "germline_probability_mat_single",
        "germline_probability_mat",
        "germline_probability_mat_num",
    ),
}

_MATRICES = (
    "population_priors",
    "population_priors_single",
    "germline_probability_mat_single",
    "germline_probability_mat",
    "germline_probability_mat_num",
    "somatic_probability_mat",
    "somatic_probability_mat_diag",
    "alphas",
)


class TrioModel:
    """
    Probabilistic trio model over diploid nucleotide genotypes.

    Parameters
    ----------
    population_mutation_rate : float
        θ, concentration of the population allele urn (> 0).
    germline_mutation_rate : float
        Expected substitutions per transmitted allele (>= 0).
    somatic_mutation_rate : float
        Expected substitutions per allele between the zygote and the
        sequenced cells (>= 0).
    sequencing_error_rate : float
        Probability that a read reports a base absent from the genotype,
        in (0, 1).
    dirichlet_dispersion : float
        Precision of the Dirichlet over read base proportions (> 0).
    nucleotide_frequencies : array-like, optional
        Base frequencies of A, C, G, T; positive and summing to 1.

    Attributes
    ----------
    population_priors : np.ndarray
        (256,) prior over ordered (mother, father) genotype pairs.
    germline_probability_mat : np.ndarray
        (256, 16) child genotype distribution per parent pair.
    somatic_probability_mat : np.ndarray
        (16, 16) sequenced genotype distribution per true genotype.
    alphas : np.ndarray
        (16, 4) Dirichlet parameters of the reads per genotype.

    Notes
    -----
    Derived matrices are built on first access and cached. Every setter drops
    the caches that depend on the changed parameter. The model is not safe to
    mutate while other threads compute probabilities with it.
    """

    def __init__(
        self,
        population_mutation_rate: float = _DEFAULT_POPULATION_MUTATION_RATE,
        germline_mutation_rate: float = _DEFAULT_GERMLINE_MUTATION_RATE,
        somatic_mutation_rate: float = _DEFAULT_SOMATIC_MUTATION_RATE,
        sequencing_error_rate: float = _DEFAULT_SEQUENCING_ERROR_RATE,
        dirichlet_dispersion: float = _DEFAULT_DIRICHLET_DISPERSION,
        nucleotide_frequencies: Optional[np.ndarray] = None,
    ):
        if nucleotide_frequencies is None:
            nucleotide_frequencies = _DEFAULT_NUCLEOTIDE_FREQUENCIES

        self._population_mutation_rate = check_positive(
            "population_mutation_rate", population_mutation_rate
        )
        self._germline_mutation_rate = check_non_negative(
            "germline_mutation_rate", germline_mutation_rate
        )
        self._somatic_mutation_rate = check_non_negative(
            "somatic_mutation_rate", somatic_mutation_rate
        )
        self._sequencing_error_rate = check_sequencing_error_rate(sequencing_error_rate)
        self._dirichlet_dispersion = check_positive(
            "dirichlet_dispersion", dirichlet_dispersion
        )
        self._nucleotide_frequencies = frozen(
            check_nucleotide_frequencies(nucleotide_frequencies).copy()
        )

        self._cache: dict = {}

    # =========================================================================
    # Parameters
    # =========================================================================

    def _invalidate(self, parameter: str):
        for name in _DEPENDENTS[parameter]:
            self._cache.pop(name, None)

    @property
    def population_mutation_rate(self) -> float:
        return self._population_mutation_rate

    @population_mutation_rate.setter
    def population_mutation_rate(self, rate: float):
        self._population_mutation_rate = check_positive("population_mutation_rate", rate)
        self._invalidate("population_mutation_rate")

    @property
    def germline_mutation_rate(self) -> float:
        return self._germline_mutation_rate

    @germline_mutation_rate.setter
    def germline_mutation_rate(self, rate: float):
        self._germline_mutation_rate = check_non_negative("germline_mutation_rate", rate)
        self._invalidate("germline_mutation_rate")

    @property
    def somatic_mutation_rate(self) -> float:
        return self._somatic_mutation_rate

    @somatic_mutation_rate.setter
    def somatic_mutation_rate(self, rate: float):
        self._somatic_mutation_rate = check_non_negative("somatic_mutation_rate", rate)
        self._invalidate("somatic_mutation_rate")

    @property
    def sequencing_error_rate(self) -> float:
        return self._sequencing_error_rate

    @sequencing_error_rate.setter
    def sequencing_error_rate(self, rate: float):
        self._sequencing_error_rate = check_sequencing_error_rate(rate)
        self._invalidate("sequencing_error_rate")

    @property
    def dirichlet_dispersion(self) -> float:
        return self._dirichlet_dispersion

    @dirichlet_dispersion.setter
    def dirichlet_dispersion(self, dispersion: float):
        self._dirichlet_dispersion = check_positive("dirichlet_dispersion", dispersion)
        self._invalidate("dirichlet_dispersion")

    @property
    def nucleotide_frequencies(self) -> np.ndarray:
        return self._nucleotide_frequencies

    @nucleotide_frequencies.setter
    def nucleotide_frequencies(self, frequencies):
        self._nucleotide_frequencies = frozen(
            check_nucleotide_frequencies(frequencies).copy()
        )
        self._invalidate("nucleotide_frequencies")

    def get_params(self) -> dict:
        """Current parameters as keyword arguments of the constructor."""
        return {
            "population_mutation_rate": self._population_mutation_rate,
            "germline_mutation_rate": self._germline_mutation_rate,
            "somatic_mutation_rate": self._somatic_mutation_rate,
            "sequencing_error_rate": self._sequencing_error_rate,
            "dirichlet_dispersion": self._dirichlet_dispersion,
            "nucleotide_frequencies": self._nucleotide_frequencies.copy(),
        }

    def copy(self) -> "TrioModel":
        return TrioModel(**self.get_params())

    # =========================================================================
    # Derived matrices
    # =========================================================================

    def _cached(self, name: str, builder) -> np.ndarray:
        if name not in self._cache:
            self._cache[name] = frozen(builder())
        return self._cache[name]

    @property
    def population_priors(self) -> np.ndarray:
        """(256,) prior of (mother, father) genotypes, index 16 * m + f."""
        return self._cached("population_priors", self._population_priors)

    @property
    def population_priors_single(self) -> np.ndarray:
        """(16,) prior of a single individual's genotype."""
        return self._cached("population_priors_single", self._population_priors_single)

    @property
    def germline_probability_mat_single(self) -> np.ndarray:
        """(16, 4) transmitted allele distribution per parent genotype."""
        return self._cached(
            "germline_probability_mat_single",
            lambda: self._germline_probability_mat_single(no_mutation=False),
        )

    @property
    def germline_probability_mat(self) -> np.ndarray:
        """(256, 16) child genotype distribution per parent pair."""
        return self._cached(
            "germline_probability_mat",
            lambda: self._germline_probability_mat(no_mutation=False),
        )

    @property
    def germline_probability_mat_num(self) -> np.ndarray:
        """(256, 16) germline kernel restricted to faithful transmission."""
        return self._cached(
            "germline_probability_mat_num",
            lambda: self._germline_probability_mat(no_mutation=True),
        )

    @property
    def somatic_probability_mat(self) -> np.ndarray:
        """(16, 16) sequenced genotype distribution per true genotype."""
        return self._cached("somatic_probability_mat", self._somatic_probability_mat)

    @property
    def somatic_probability_mat_diag(self) -> np.ndarray:
        """(16, 16) somatic kernel restricted to unchanged genotypes."""
        return self._cached(
            "somatic_probability_mat_diag",
            lambda: np.diag(np.diag(self.somatic_probability_mat)),
        )

    @property
    def alphas(self) -> np.ndarray:
        """(16, 4) Dirichlet parameters of read base proportions per genotype."""
        return self._cached("alphas", self._alphas)

    def _population_priors(self) -> np.ndarray:
        # ordered alleles (mother 1, mother 2, father 1, father 2)
        alleles = np.concatenate(
            [
                np.repeat(GENOTYPE_ALLELES, GENOTYPE_COUNT, axis=0),
                np.tile(GENOTYPE_ALLELES, (GENOTYPE_COUNT, 1)),
            ],
            axis=1,
        )
        alpha = self._population_mutation_rate * self._nucleotide_frequencies
        return np.exp(dirichlet_sequence_logprob(allele_counts(alleles), alpha))

    def _population_priors_single(self) -> np.ndarray:
        alpha = self._population_mutation_rate * self._nucleotide_frequencies
        return np.exp(dirichlet_sequence_logprob(allele_counts(GENOTYPE_ALLELES), alpha))

    def _germline_allele_kernel(self, no_mutation: bool) -> np.ndarray:
        """
        (4, 4) F81 substitution probabilities of one transmitted allele.

        With no_mutation the off-diagonal mass is dropped, leaving the
        probability that the allele arrives unchanged.
        """
        pi = self._nucleotide_frequencies
        beta = 1.0 / (1.0 - np.sum(pi**2))
        exp_term = np.exp(-beta * self._germline_mutation_rate)
        kernel = exp_term * np.eye(NUCLEOTIDE_COUNT) + (1.0 - exp_term) * pi[None, :]
        if no_mutation:
            kernel = np.diag(np.diag(kernel))
        return kernel

    def _germline_probability_mat_single(self, no_mutation: bool) -> np.ndarray:
        kernel = self._germline_allele_kernel(no_mutation)
        return 0.5 * (
            kernel[GENOTYPE_ALLELES[:, 0]] + kernel[GENOTYPE_ALLELES[:, 1]]
        )

    def _germline_probability_mat(self, no_mutation: bool) -> np.ndarray:
        # child genotype = (allele from mother, allele from father)
        if no_mutation:
            single = self._germline_probability_mat_single(no_mutation=True)
        else:
            single = self.germline_probability_mat_single
        return np.kron(single, single)

    def _somatic_allele_kernel(self) -> np.ndarray:
        exp_term = np.exp(-4.0 / 3.0 * self._somatic_mutation_rate)
        return 0.25 - 0.25 * exp_term + exp_term * np.eye(NUCLEOTIDE_COUNT)

    def _somatic_probability_mat(self) -> np.ndarray:
        kernel = self._somatic_allele_kernel()
        return np.kron(kernel, kernel)

    def _alphas(self) -> np.ndarray:
        error = self._sequencing_error_rate
        alphas = np.where(
            IS_HOMOZYGOUS[:, None],
            np.where(GENOTYPE_NUCLEOTIDE_MASK > 0, 1.0 - error, error / 3.0),
            np.where(GENOTYPE_NUCLEOTIDE_MASK > 0, 0.5 - error / 3.0, error / 3.0),
        )
        return alphas * self._dirichlet_dispersion

    # =========================================================================
    # Read-dependent computation
    # =========================================================================

    def log_sequencing_probability_mat(self, read_data) -> np.ndarray:
        """
        (3, 16) Dirichlet-multinomial log-likelihood of each member's reads
        given each genotype. Members without reads get a row of zeros.
        """
        read_data = as_read_data(read_data)
        return dirichlet_multinomial_logpmf(
            read_data[:, None, :], self.alphas[None, :, :]
        )

    def read_dependent_data(self, read_data) -> ReadDependentData:
        """
        Peel one site's reads up the trio tree.

        Parameters
        ----------
        read_data : array-like
            (3, 4) read counts of child, mother and father for A, C, G, T.

        Returns
        -------
        ReadDependentData
            Fresh state for this site; the model itself is not modified.
        """
        read_data = as_read_data(read_data)
        log_seq = self.log_sequencing_probability_mat(read_data)
        sequencing = np.exp(log_seq - log_seq.max(axis=1, keepdims=True))

        total = peel_tree(
            sequencing,
            self.somatic_probability_mat,
            self.germline_probability_mat,
            self.population_priors,
        )
        no_mutation = peel_tree(
            sequencing,
            self.somatic_probability_mat_diag,
            self.germline_probability_mat_num,
            self.population_priors,
        )

        return ReadDependentData(
            read_data=read_data,
            log_sequencing_probability_mat=log_seq,
            sequencing=sequencing,
            total=total,
            no_mutation=no_mutation,
        )

    def mutation_probability(self, read_data) -> float:
        """
        Posterior probability of a germline or somatic mutation at a site.

        Parameters
        ----------
        read_data : array-like
            (3, 4) read counts of child, mother and father for A, C, G, T.

        Returns
        -------
        float
            Probability in [0, 1]. Sites without any reads return 0.
        """
        return self.read_dependent_data(read_data).mutation_probability

    def mutation_probabilities(self, sites) -> np.ndarray:
        """Mutation probability of each site in a sequence of sites."""
        sites = as_site_array(sites)
        return np.array([self.mutation_probability(site) for site in sites])

    def _partial_mutation_probability(self, read_data, germline: bool) -> float:
        data = self.read_dependent_data(read_data)
        if not data.has_reads:
            return 0.0

        if germline:
            somatic_mat = self.somatic_probability_mat
            germline_mat = self.germline_probability_mat_num
        else:
            somatic_mat = self.somatic_probability_mat_diag
            germline_mat = self.germline_probability_mat
        restricted = peel_tree(
            data.sequencing, somatic_mat, germline_mat, self.population_priors
        )
        return mutation_fraction(restricted.sum, data.denominator)

    def germline_mutation_probability(self, read_data) -> float:
        """Posterior probability that the child carries a germline mutation."""
        return self._partial_mutation_probability(read_data, germline=True)

    def somatic_mutation_probability(self, read_data) -> float:
        """Posterior probability of a somatic mutation in any trio member."""
        return self._partial_mutation_probability(read_data, germline=False)

    def genotype_posteriors(self, read_data) -> np.ndarray:
        """
        Posterior over the sequenced genotype of each trio member.

        Combines each member's own sequencing likelihood with the message
        sent down from the rest of the trio through the full kernels.

        Parameters
        ----------
        read_data : array-like or ReadDependentData
            (3, 4) read counts, or the already peeled state of a site.

        Returns
        -------
        np.ndarray
            (3, 16) rows ordered child, mother, father, each summing to 1.
        """
        if isinstance(read_data, ReadDependentData):
            data = read_data
        else:
            data = self.read_dependent_data(read_data)
        peel = data.total
        somatic_mat = self.somatic_probability_mat
        germline_mat = self.germline_probability_mat

        # messages into each member's true genotype from the rest of the tree
        child_outside = (self.population_priors * peel.parent_probability) @ germline_mat
        parents = (self.population_priors * peel.child_germline).reshape(
            GENOTYPE_COUNT, GENOTYPE_COUNT
        )
        members = peel.member_vectors()
        mother_outside = parents @ members["father"]
        father_outside = parents.T @ members["mother"]

        outside = np.stack([child_outside, mother_outside, father_outside])
        posteriors = data.sequencing * (outside @ somatic_mat)
        norm = posteriors.sum(axis=1, keepdims=True)
        if np.any(norm <= 0):
            raise ValueError("read data has zero likelihood under the model")
        return posteriors / norm

    def genotype_calls(self, read_data) -> dict:
        """Most probable sequenced genotype of each trio member, e.g. ``{"child": "AC", ...}``."""
        posteriors = self.genotype_posteriors(read_data)
        return {
            member: GENOTYPE_NAMES[best]
            for member, best in zip(TRIO_MEMBERS, posteriors.argmax(axis=1))
        }

    # =========================================================================
    # Comparison
    # =========================================================================

    def equals(self, other: "TrioModel", rtol: float = 1e-9, atol: float = 1e-12) -> bool:
        """
        True if both models hold equal parameters and derived matrices,
        within floating-point tolerance.
        """
        if not isinstance(other, TrioModel):
            return False
        mine = self.get_params()
        theirs = other.get_params()
        for key in mine:
            if not approx_equal(mine[key], theirs[key], rtol=rtol, atol=atol):
                return False
        return all(
            approx_equal(getattr(self, name), getattr(other, name), rtol=rtol, atol=atol)
            for name in _MATRICES
        )

    def __repr__(self) -> str:
        return (
            f"TrioModel(population_mutation_rate={self._population_mutation_rate!r}, "
            f"germline_mutation_rate={self._germline_mutation_rate!r}, "
            f"somatic_mutation_rate={self._somatic_mutation_rate!r}, "
            f"sequencing_error_rate={self._sequencing_error_rate!r}, "
            f"dirichlet_dispersion={self._dirichlet_dispersion!r}, "
            f"nucleotide_frequencies={self._nucleotide_frequencies.tolist()!r})"
        )


# =============================================================================
# Convenience Functions
# =============================================================================


def mutation_probability(read_data, model: Optional[TrioModel] = None, **params) -> float:
    """
    Convenience function to score one site.

    Parameters
    ----------
    read_data : array-like
        (3, 4) read counts of child, mother and father.
    model : TrioModel, optional
        Model to use. If None, one is built from ``params``.
    **params
        Passed to TrioModel().

    Returns
    -------
    float
        Mutation probability.
    """
    if model is None:
        model = TrioModel(**params)
    return model.mutation_probability(read_data)
