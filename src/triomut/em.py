"""
Expectation-maximization of the sequencing error rate.

E-step: for each site, the posterior over every trio member's sequenced
genotype (under the current model) weights that member's reads into four
classes:

    hom_match      reads showing the base of a homozygous genotype
    hom_mismatch   other reads at a homozygous genotype
    het_match      reads showing one of the two bases of a heterozygous genotype
    het_mismatch   other reads at a heterozygous genotype

M-step: the mean read composition implied by the Dirichlet parameters is
(1 - ε, ε/3, ε/3, ε/3) for homozygous and (½ - ε/3, ½ - ε/3, ε/3, ε/3) for
heterozygous genotypes. Maximizing the expected multinomial log-likelihood

    h·log(1 - ε) + m·log(ε/3) + q·log(½ - ε/3)

with m = hom_mismatch + het_mismatch, h = hom_match, q = het_match gives

    (m + h + q)·ε² - (5/2·m + 3/2·h + q)·ε + 3/2·m = 0

whose smaller root lies in [0, 1].
"""

import logging
import numpy as np
from typing import Optional

from .params import EMSpec
from .trio import TrioModel
from .utils import (
    GENOTYPE_NUCLEOTIDE_MASK,
    IS_HOMOZYGOUS,
    SequencingErrorFit,
    approx_equal,
    as_site_array,
)

logger = logging.getLogger(__name__)


class SufficientStatistics:
    """
    Expected read-class counts accumulated over many sites.

    Parameters
    ----------
    n_sites : int, optional
        Number of sites each update is expected to cover. When given,
        ``update`` rejects site lists of any other length.
    spec : EMSpec, optional
        Bounds applied to the maximized error rate.

    Attributes
    ----------
    hom_match, hom_mismatch, het_match, het_mismatch : float
        Posterior-weighted read counts.
    log_likelihood : float
        Σ log P(reads) of the updated sites.
    count : int
        Number of sites accumulated since the last ``clear``.
    """

    def __init__(self, n_sites: Optional[int] = None, spec: Optional[EMSpec] = None):
        self.n_sites = n_sites
        self.spec = spec if spec is not None else EMSpec()
        self.clear()

    def clear(self):
        """Reset all accumulators to zero."""
        self.hom_match = 0.0
        self.hom_mismatch = 0.0
        self.het_match = 0.0
        self.het_mismatch = 0.0
        self.log_likelihood = 0.0
        self.count = 0

    def update(self, model: TrioModel, sites) -> "SufficientStatistics":
        """
        E-step: add the expected read-class counts of each site.

        Parameters
        ----------
        model : TrioModel
            Current parameters; not modified.
        sites : sequence
            Read data of each site, each (3, 4) ordered child, mother, father.

        Returns
        -------
        SufficientStatistics
            Self, for method chaining.
        """
        sites = as_site_array(sites)
        if self.n_sites is not None and len(sites) != self.n_sites:
            raise ValueError(
                f"expected {self.n_sites} sites, got {len(sites)}"
            )

        for site in sites:
            if site.sum() == 0:
                self.count += 1
                continue

            data = model.read_dependent_data(site)
            if not data.denominator > 0:
                # likelihood underflowed, e.g. reads contradicting a zero mutation rate
                logger.debug("Skipping site with zero likelihood: %s", site.tolist())
                self.count += 1
                continue
            posteriors = model.genotype_posteriors(data)

            # (3, 16) reads matching each genotype's bases
            matching = site @ GENOTYPE_NUCLEOTIDE_MASK.T
            depth = site.sum(axis=1, keepdims=True)
            mismatching = depth - matching

            hom = posteriors[:, IS_HOMOZYGOUS]
            het = posteriors[:, ~IS_HOMOZYGOUS]
            self.hom_match += float(np.sum(hom * matching[:, IS_HOMOZYGOUS]))
            self.hom_mismatch += float(np.sum(hom * mismatching[:, IS_HOMOZYGOUS]))
            self.het_match += float(np.sum(het * matching[:, ~IS_HOMOZYGOUS]))
            self.het_mismatch += float(np.sum(het * mismatching[:, ~IS_HOMOZYGOUS]))

            scale = data.log_sequencing_probability_mat.max(axis=1).sum()
            self.log_likelihood += float(np.log(data.denominator) + scale)
            self.count += 1

        return self

    def merge(self, other: "SufficientStatistics") -> "SufficientStatistics":
        """Add the accumulators of another instance, e.g. one per worker."""
        self.hom_match += other.hom_match
        self.hom_mismatch += other.hom_mismatch
        self.het_match += other.het_match
        self.het_mismatch += other.het_mismatch
        self.log_likelihood += other.log_likelihood
        self.count += other.count
        return self

    @property
    def mismatch(self) -> float:
        return self.hom_mismatch + self.het_mismatch

    @property
    def total_reads(self) -> float:
        return self.hom_match + self.het_match + self.mismatch

    def max_sequencing_error_rate(self) -> float:
        """
        M-step: maximum-likelihood sequencing error rate.

        Returns
        -------
        float
            Estimate clipped into ``spec.error_rate_bounds``.
        """
        if self.total_reads <= 0:
            raise ValueError("No reads accumulated; call update() with sites first")

        m = self.mismatch
        h = self.hom_match
        q = self.het_match

        a = m + h + q
        b = 2.5 * m + 1.5 * h + q
        c = 1.5 * m
        disc = max(b * b - 4.0 * a * c, 0.0)
        # stable form of the smaller root (b - sqrt(disc)) / (2a)
        denom = b + np.sqrt(disc)
        estimate = 2.0 * c / denom if denom > 0 else 0.0

        low, high = self.spec.error_rate_bounds
        return float(np.clip(estimate, low, high))

    def __repr__(self) -> str:
        return (
            f"SufficientStatistics(count={self.count}, hom_match={self.hom_match:.6g}, "
            f"hom_mismatch={self.hom_mismatch:.6g}, het_match={self.het_match:.6g}, "
            f"het_mismatch={self.het_mismatch:.6g})"
        )


# =============================================================================
# Convenience Functions
# =============================================================================


def fit_sequencing_error_rate(
    model: TrioModel,
    sites,
    spec: Optional[EMSpec] = None,
) -> SequencingErrorFit:
    """
    Refit the sequencing error rate of a model by EM.

    Alternates E-steps under the current model with M-steps until the new
    estimate equals the model's rate within ``spec`` tolerance, committing
    each new estimate into ``model``.

    Parameters
    ----------
    model : TrioModel
        Model to refit; its sequencing error rate is updated in place.
    sites : sequence
        Read data of each site, each (3, 4).
    spec : EMSpec, optional
        Iteration cap, tolerance and bounds.

    Returns
    -------
    SequencingErrorFit
        Final rate and diagnostics. ``converged`` is False when the cap was
        reached before the estimate stabilized.
    """
    if spec is None:
        spec = EMSpec()
    sites = as_site_array(sites)
    initial_rate = model.sequencing_error_rate

    stats = SufficientStatistics(len(sites), spec)
    stats.update(model, sites)
    maximized = stats.max_sequencing_error_rate()

    history = []
    converged = False
    iteration = 0
    while True:
        if approx_equal(model.sequencing_error_rate, maximized, rtol=spec.rtol, atol=spec.atol):
            converged = True
            break
        if iteration >= spec.max_iter:
            break
        model.sequencing_error_rate = maximized
        history.append(maximized)
        iteration += 1
        logger.debug(
            "EM iteration %d: sequencing_error_rate=%.10g loglik=%.6f",
            iteration,
            maximized,
            stats.log_likelihood,
        )

        stats.clear()
        stats.update(model, sites)
        maximized = stats.max_sequencing_error_rate()

    if not converged:
        logger.warning(
            "EM did not converge after %d iterations (last estimate %.10g, current %.10g)",
            spec.max_iter,
            maximized,
            model.sequencing_error_rate,
        )
    else:
        logger.info(
            "EM converged after %d iterations: sequencing_error_rate=%.10g",
            iteration,
            model.sequencing_error_rate,
        )

    return SequencingErrorFit(
        sequencing_error_rate=model.sequencing_error_rate,
        initial_rate=initial_rate,
        n_sites=len(sites),
        n_iterations=iteration,
        converged=converged,
        log_likelihood=stats.log_likelihood,
        history=history,
    )
