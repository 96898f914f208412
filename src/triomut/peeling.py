"""
Transient tree-peeling state for one site.

The trio is a tree: the population prior generates the parents' genotypes,
the germline kernel generates the child's genotype from them, the somatic
kernel turns each true genotype into the genotype of the sequenced cells,
and the Dirichlet-multinomial generates the reads.

Peeling runs bottom-up:

    reads → sequenced genotype → (somatic) true genotype
          → child via germline kernel, parents via Kronecker product
          → root, weighted by the population prior

A ``ReadDependentData`` is built fresh for each site by
``TrioModel.read_dependent_data`` and is never shared between sites.
"""

from dataclasses import dataclass, field
import numpy as np

from .utils import TRIO_MEMBERS

# differences of nearly equal likelihoods keep a few ulps of rounding noise
_RESOLUTION = 8 * np.finfo(float).eps


@dataclass(frozen=True)
class TreePeel:
    """
    Partial likelihoods at each level of the trio tree for one branch.

    The ``total`` branch uses the full somatic and germline kernels; the
    ``no_mutation`` branch keeps only their identity parts.
    """

    # (16,) likelihood of each member's reads given its true genotype
    child_somatic: np.ndarray
    mother_somatic: np.ndarray
    father_somatic: np.ndarray

    # (256,) child likelihood per parent pair, via the germline kernel
    child_germline: np.ndarray

    # (256,) joint parent likelihood, index 16 * mother + father
    parent_probability: np.ndarray

    # (256,) population prior × child_germline × parent_probability
    root_mat: np.ndarray

    sum: float

    def member_vectors(self) -> dict:
        """Somatic-level vectors keyed by trio member."""
        return dict(
            zip(
                TRIO_MEMBERS,
                (self.child_somatic, self.mother_somatic, self.father_somatic),
            )
        )


def peel_tree(
    sequencing: np.ndarray,
    somatic_mat: np.ndarray,
    germline_mat: np.ndarray,
    population_priors: np.ndarray,
) -> TreePeel:
    """
    Propagate sequencing likelihoods up to the root of the trio tree.

    Parameters
    ----------
    sequencing : np.ndarray
        (3, 16) likelihood of each member's reads per sequenced genotype,
        rows ordered child, mother, father.
    somatic_mat : np.ndarray
        (16, 16) true genotype → sequenced genotype kernel.
    germline_mat : np.ndarray
        (256, 16) parent pair → child genotype kernel.
    population_priors : np.ndarray
        (256,) prior over parent pairs.

    Returns
    -------
    TreePeel
    """
    # row i is somatic_mat @ sequencing[i]
    child, mother, father = sequencing @ somatic_mat.T
    child_germline = germline_mat @ child
    parent_probability = np.kron(mother, father)
    root_mat = population_priors * child_germline * parent_probability

    return TreePeel(
        child_somatic=child,
        mother_somatic=mother,
        father_somatic=father,
        child_germline=child_germline,
        parent_probability=parent_probability,
        root_mat=root_mat,
        sum=float(root_mat.sum()),
    )


@dataclass(frozen=True)
class ReadDependentData:
    """
    Everything computed from one site's reads.

    Attributes
    ----------
    read_data : np.ndarray
        (3, 4) validated read counts, child, mother, father.
    log_sequencing_probability_mat : np.ndarray
        (3, 16) Dirichlet-multinomial log-likelihood of each member's reads
        per genotype.
    sequencing : np.ndarray
        Sequencing likelihoods rescaled so each row peaks at 1. The scale
        cancels in every ratio computed from the peels.
    total : TreePeel
        Peel with the full kernels (the denominator).
    no_mutation : TreePeel
        Peel restricted to the no-mutation kernels.
    """

    read_data: np.ndarray
    log_sequencing_probability_mat: np.ndarray
    sequencing: np.ndarray = field(repr=False)
    total: TreePeel = field(repr=False)
    no_mutation: TreePeel = field(repr=False)

    @property
    def sequencing_probability_mat(self) -> np.ndarray:
        """(3, 16) Dirichlet-multinomial likelihoods of the reads."""
        return np.exp(self.log_sequencing_probability_mat)

    @property
    def has_reads(self) -> bool:
        return bool(self.read_data.sum() > 0)

    @property
    def denominator(self) -> float:
        return self.total.sum

    @property
    def numerator(self) -> float:
        """Likelihood mass of the branches with at least one mutation."""
        return max(self.total.sum - self.no_mutation.sum, 0.0)

    @property
    def mutation_probability(self) -> float:
        if not self.has_reads:
            return 0.0
        return mutation_fraction(self.no_mutation.sum, self.denominator)


def mutation_fraction(restricted: float, total: float) -> float:
    """
    Share of the total likelihood carried by branches with a mutation.

    The fraction is a difference of nearly equal quantities, so values at
    the level of floating-point rounding are reported as 0.
    """
    if not total > 0:
        return 0.0
    fraction = 1.0 - restricted / total
    if fraction < _RESOLUTION:
        return 0.0
    return float(min(fraction, 1.0))
