"""
Forward simulation of trios and empirical mutation probabilities.

Trios are sampled from the same generative process the trio model scores,
with each trio labelled by whether any germline or somatic mutation
occurred. Tallying the labels of simulated trios whose reads match a
reference read signature gives an empirical estimate

    P(mutation | reads) ≈ #trios with mutation / #matching trios

which converges to ``TrioModel.mutation_probability`` as the number of
simulated trios grows.
"""

import numpy as np
from typing import Optional

from .trio import TrioModel
from .utils import (
    GENOTYPE_COUNT,
    NUCLEOTIDE_COUNT,
    TRIO_SIZE,
    as_site_array,
)


def _sample_rows(rng: np.random.Generator, probs: np.ndarray) -> np.ndarray:
    """Draw one category per row of a (N, K) matrix of probabilities."""
    cumulative = np.cumsum(probs, axis=1)
    u = rng.random(len(probs)) * cumulative[:, -1]
    idx = (cumulative < u[:, None]).sum(axis=1)
    return np.minimum(idx, probs.shape[1] - 1)


def _keeps_identity(rng: np.random.Generator, full: np.ndarray, identity: np.ndarray) -> np.ndarray:
    """Sample whether an outcome arose without mutation, given its probabilities."""
    ratio = np.divide(identity, full, out=np.zeros_like(full), where=full > 0)
    return rng.random(len(full)) < ratio


def simulate_trios(
    model: TrioModel,
    n_trios: int,
    coverage: int,
    random_state: Optional[int] = 42,
):
    """
    Sample trios and their reads from the model's generative process.

    Parameters
    ----------
    model : TrioModel
        Source of all priors and kernels.
    n_trios : int
        Number of trios to draw.
    coverage : int
        Reads per trio member.
    random_state : int, optional
        Seed for ``numpy.random.default_rng``.

    Returns
    -------
    reads : np.ndarray
        (n_trios, 3, 4) read counts ordered child, mother, father.
    has_mutation : np.ndarray
        (n_trios,) True where at least one mutation occurred.
    """
    if n_trios < 0 or coverage < 0:
        raise ValueError("n_trios and coverage must be non-negative")
    rng = np.random.default_rng(random_state)

    # --- population ---
    parents = rng.choice(len(model.population_priors), size=n_trios, p=model.population_priors)
    mother, father = np.divmod(parents, GENOTYPE_COUNT)

    # --- germline ---
    germline = model.germline_probability_mat
    germline_num = model.germline_probability_mat_num
    child = _sample_rows(rng, germline[parents])
    has_mutation = ~_keeps_identity(
        rng, germline[parents, child], germline_num[parents, child]
    )

    # --- somatic ---
    somatic = model.somatic_probability_mat
    somatic_diag = np.diag(model.somatic_probability_mat_diag)
    true_genotypes = np.stack([child, mother, father], axis=1)
    cells = np.empty_like(true_genotypes)
    for member in range(TRIO_SIZE):
        genotype = true_genotypes[:, member]
        cells[:, member] = _sample_rows(rng, somatic[genotype])
        unchanged = cells[:, member] == genotype
        identity = np.where(unchanged, somatic_diag[genotype], 0.0)
        has_mutation |= ~_keeps_identity(
            rng, somatic[genotype, cells[:, member]], identity
        )

    # --- sequencing ---
    alphas = model.alphas[cells]
    proportions = rng.gamma(alphas)
    proportions /= proportions.sum(axis=-1, keepdims=True)
    reads = rng.multinomial(coverage, proportions)

    return reads.reshape(n_trios, TRIO_SIZE, NUCLEOTIDE_COUNT), has_mutation


def tally_simulated_trios(reference_sites, reads, has_mutation) -> np.ndarray:
    """
    Count simulated trios matching each reference read signature.

    Parameters
    ----------
    reference_sites : sequence
        (R, 3, 4) read signatures to tally.
    reads : np.ndarray
        (N, 3, 4) simulated reads.
    has_mutation : np.ndarray
        (N,) mutation labels of the simulated trios.

    Returns
    -------
    np.ndarray
        (R, 2) integer table of (mutation count, no-mutation count).
    """
    reference = as_site_array(reference_sites).reshape(-1, TRIO_SIZE * NUCLEOTIDE_COUNT)
    reads = as_site_array(reads).reshape(-1, TRIO_SIZE * NUCLEOTIDE_COUNT)
    has_mutation = np.asarray(has_mutation, dtype=bool).reshape(-1)
    if len(reads) != len(has_mutation):
        raise ValueError("reads and has_mutation must have the same length")

    counts = np.zeros((len(reference), 2), dtype=np.int64)
    if len(reference) == 0 or len(reads) == 0:
        return counts

    signatures, inverse = np.unique(reads, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    n_trios = np.bincount(inverse, minlength=len(signatures))
    n_mutated = np.bincount(inverse[has_mutation], minlength=len(signatures))
    row_of = {signature.tobytes(): i for i, signature in enumerate(signatures)}

    for r, site in enumerate(reference):
        i = row_of.get(site.tobytes())
        if i is not None:
            counts[r] = (n_mutated[i], n_trios[i] - n_mutated[i])
    return counts


def empirical_probabilities(counts) -> np.ndarray:
    """
    Empirical mutation probability of each row of a count table.

    Parameters
    ----------
    counts : array-like
        (R, 2) table of (mutation count, no-mutation count).

    Returns
    -------
    np.ndarray
        mutation count / total per row; 0 for rows without trios.
    """
    counts = np.asarray(counts, dtype=float)
    if counts.ndim != 2 or counts.shape[1] != 2:
        raise ValueError("counts must have shape (R, 2)")
    if np.any(counts < 0):
        raise ValueError("counts must be non-negative")
    total = counts.sum(axis=1)
    return np.divide(counts[:, 0], total, out=np.zeros_like(total), where=total > 0)


def load_simulation_counts(path) -> np.ndarray:
    """
    Read a simulation count file.

    Each line holds three whitespace-separated integers: the index of the
    reference trio, the number of matching trios with a mutation and the
    number without one.

    Returns
    -------
    np.ndarray
        (R, 2) table of (mutation count, no-mutation count), in file order.
    """
    table = np.loadtxt(path, dtype=np.int64, ndmin=2)
    if table.size == 0:
        return np.zeros((0, 2), dtype=np.int64)
    if table.shape[1] != 3:
        raise ValueError(f"expected 3 columns in {path}, got {table.shape[1]}")
    return table[:, 1:3]


def write_probabilities(path, probabilities):
    """Write one probability per line."""
    np.savetxt(path, np.asarray(probabilities, dtype=float), fmt="%.10g")
