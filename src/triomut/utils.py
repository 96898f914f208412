from dataclasses import dataclass, field
import numpy as np
from scipy.special import gammaln


NUCLEOTIDES = "ACGT"
NUCLEOTIDE_COUNT = 4
GENOTYPE_COUNT = NUCLEOTIDE_COUNT * NUCLEOTIDE_COUNT
GENOTYPE_PAIR_COUNT = GENOTYPE_COUNT * GENOTYPE_COUNT
TRIO_SIZE = 3
TRIO_MEMBERS = ("child", "mother", "father")

# (16, 2) allele indices of each ordered genotype, g = 4 * first + second
GENOTYPE_ALLELES = np.array(
    [(a, b) for a in range(NUCLEOTIDE_COUNT) for b in range(NUCLEOTIDE_COUNT)]
)
GENOTYPE_NAMES = tuple(NUCLEOTIDES[a] + NUCLEOTIDES[b] for a, b in GENOTYPE_ALLELES)
IS_HOMOZYGOUS = GENOTYPE_ALLELES[:, 0] == GENOTYPE_ALLELES[:, 1]

# (16, 4) indicator of the nucleotides carried by each genotype
GENOTYPE_NUCLEOTIDE_MASK = np.zeros((GENOTYPE_COUNT, NUCLEOTIDE_COUNT))
GENOTYPE_NUCLEOTIDE_MASK[np.arange(GENOTYPE_COUNT), GENOTYPE_ALLELES[:, 0]] = 1.0
GENOTYPE_NUCLEOTIDE_MASK[np.arange(GENOTYPE_COUNT), GENOTYPE_ALLELES[:, 1]] = 1.0

_DEFAULT_RTOL = 1e-9
_DEFAULT_ATOL = 1e-12


def dirichlet_multinomial_logpmf(counts: np.ndarray, alphas: np.ndarray) -> np.ndarray:
    """
    Compute log probability mass function of the Dirichlet-multinomial.

    The Dirichlet-multinomial PMF is:
        P(n | α) = N! / ∏ nₓ! × Γ(A) / Γ(N + A) × ∏ Γ(nₓ + αₓ) / Γ(αₓ)

    with N = Σ nₓ and A = Σ αₓ. An all-zero count vector has probability 1
    under every α.

    Parameters
    ----------
    counts : np.ndarray
        Read counts per nucleotide, shape (..., 4).
    alphas : np.ndarray
        Dirichlet parameters, shape (..., 4), broadcast against counts.

    Returns
    -------
    np.ndarray
        Log-probabilities, with the last axis reduced.
    """
    counts = np.asarray(counts, dtype=float)
    alphas = np.maximum(np.asarray(alphas, dtype=float), 1e-300)

    n_total = counts.sum(axis=-1)
    alpha_total = alphas.sum(axis=-1)

    return (
        gammaln(n_total + 1.0)
        - gammaln(counts + 1.0).sum(axis=-1)
        + gammaln(alpha_total)
        - gammaln(n_total + alpha_total)
        + (gammaln(counts + alphas) - gammaln(alphas)).sum(axis=-1)
    )


def dirichlet_sequence_logprob(counts: np.ndarray, alphas: np.ndarray) -> np.ndarray:
    """
    Log probability of one ordered draw sequence with the given counts from
    a Pólya urn with parameters alphas (no multinomial coefficient).
    """
    counts = np.asarray(counts, dtype=float)
    alphas = np.asarray(alphas, dtype=float)
    alpha_total = alphas.sum(axis=-1)
    return (
        gammaln(alpha_total)
        - gammaln(counts.sum(axis=-1) + alpha_total)
        + (gammaln(counts + alphas) - gammaln(alphas)).sum(axis=-1)
    )


def allele_counts(alleles: np.ndarray) -> np.ndarray:
    """Nucleotide counts (..., 4) of an array of allele indices (..., k)."""
    alleles = np.asarray(alleles)
    return (alleles[..., None] == np.arange(NUCLEOTIDE_COUNT)).sum(axis=-2)


def as_read_data(data) -> np.ndarray:
    """
    Validate one site's trio read counts.

    Parameters
    ----------
    data : array-like
        Three records ordered child, mother, father; each holds the read
        counts for A, C, G, T.

    Returns
    -------
    np.ndarray
        Integer array of shape (3, 4).
    """
    arr = np.asarray(data)
    if arr.shape != (TRIO_SIZE, NUCLEOTIDE_COUNT):
        raise ValueError(
            f"read data must have shape (3, 4) (child, mother, father x A, C, G, T), "
            f"got {arr.shape}"
        )
    if arr.dtype.kind not in "iuf":
        raise ValueError("read counts must be numeric")
    if not np.all(np.isfinite(arr)) or np.any(arr != np.round(arr)):
        raise ValueError("read counts must be whole numbers")
    if np.any(arr < 0):
        raise ValueError("read counts must be non-negative")
    return arr.astype(np.int64)


def as_site_array(sites) -> np.ndarray:
    """Validate a sequence of sites into an integer array of shape (N, 3, 4)."""
    sites = list(sites) if not isinstance(sites, np.ndarray) else sites
    if len(sites) == 0:
        return np.zeros((0, TRIO_SIZE, NUCLEOTIDE_COUNT), dtype=np.int64)
    return np.stack([as_read_data(site) for site in sites])


def approx_equal(a, b, rtol: float = _DEFAULT_RTOL, atol: float = _DEFAULT_ATOL) -> bool:
    """Tolerance equality for scalars and arrays of equal shape."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        return False
    return bool(np.allclose(a, b, rtol=rtol, atol=atol))


def frozen(arr: np.ndarray) -> np.ndarray:
    """Mark a cached array read-only and return it."""
    arr.setflags(write=False)
    return arr


@dataclass
class SequencingErrorFit:
    """
    Results from refitting the sequencing error rate by EM.
    """

    sequencing_error_rate: float
    initial_rate: float
    n_sites: int
    n_iterations: int
    converged: bool
    log_likelihood: float

    # Rate committed to the model after each M-step
    history: list = field(default_factory=list, repr=False)

    @property
    def change(self) -> float:
        """Difference between the final and the initial estimate."""
        return self.sequencing_error_rate - self.initial_rate
