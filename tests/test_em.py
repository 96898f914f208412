import logging
from unittest.mock import patch

import numpy as np
import pytest

from triomut.em import SufficientStatistics, fit_sequencing_error_rate
from triomut.params import EMSpec
from triomut.simulation import simulate_trios
from triomut.trio import TrioModel
from triomut.utils import SequencingErrorFit


NOISY_HOMOZYGOUS_SITE = [[95, 5, 0, 0], [95, 5, 0, 0], [95, 5, 0, 0]]


class TestSufficientStatistics:
    """Tests for SufficientStatistics accumulation and M-step."""

    def test_starts_empty(self):
        stats = SufficientStatistics()
        assert stats.count == 0
        assert stats.total_reads == 0.0

    def test_update_counts_all_reads(self):
        """Every read lands in exactly one of the four classes."""
        model = TrioModel()
        sites = [NOISY_HOMOZYGOUS_SITE, [[20, 20, 0, 0], [40, 0, 0, 0], [40, 0, 0, 0]]]
        stats = SufficientStatistics(2).update(model, sites)

        assert stats.count == 2
        assert stats.total_reads == pytest.approx(420.0)
        assert np.isfinite(stats.log_likelihood)
        assert stats.log_likelihood < 0

    def test_homozygous_classes(self):
        model = TrioModel()
        stats = SufficientStatistics().update(model, [NOISY_HOMOZYGOUS_SITE])

        assert stats.hom_match == pytest.approx(285.0, rel=1e-6)
        assert stats.hom_mismatch == pytest.approx(15.0, rel=1e-4)
        assert stats.het_match + stats.het_mismatch < 1e-3

    def test_empty_sites_are_skipped(self):
        stats = SufficientStatistics().update(TrioModel(), [np.zeros((3, 4), dtype=int)])
        assert stats.count == 1
        assert stats.total_reads == 0.0

    def test_zero_likelihood_sites_are_skipped(self, caplog):
        """Reads impossible under zero mutation rates do not abort the E-step."""
        model = TrioModel(germline_mutation_rate=0.0, somatic_mutation_rate=0.0)
        impossible = [[0, 3000, 0, 0], [3000, 0, 0, 0], [3000, 0, 0, 0]]

        with caplog.at_level(logging.DEBUG, logger="triomut.em"):
            stats = SufficientStatistics().update(model, [impossible, NOISY_HOMOZYGOUS_SITE])

        assert model.mutation_probability(impossible) == 0.0
        assert stats.count == 2
        assert stats.total_reads == pytest.approx(300.0)
        assert np.isfinite(stats.log_likelihood)
        assert "zero likelihood" in caplog.text

    def test_site_count_checked(self):
        stats = SufficientStatistics(n_sites=3)
        with pytest.raises(ValueError, match="expected 3 sites"):
            stats.update(TrioModel(), [NOISY_HOMOZYGOUS_SITE])

    def test_clear(self):
        stats = SufficientStatistics().update(TrioModel(), [NOISY_HOMOZYGOUS_SITE])
        stats.clear()
        assert stats.count == 0
        assert stats.hom_match == 0.0
        assert stats.hom_mismatch == 0.0
        assert stats.het_match == 0.0
        assert stats.het_mismatch == 0.0
        assert stats.log_likelihood == 0.0

    def test_update_after_clear_recomputes(self):
        """Clearing and updating gives the same totals as a fresh instance."""
        model = TrioModel()
        stats = SufficientStatistics().update(model, [NOISY_HOMOZYGOUS_SITE])
        first = stats.max_sequencing_error_rate()
        stats.clear()
        stats.update(model, [NOISY_HOMOZYGOUS_SITE])
        assert stats.max_sequencing_error_rate() == first

    def test_merge_matches_single_update(self):
        model = TrioModel()
        sites = [NOISY_HOMOZYGOUS_SITE, [[20, 20, 0, 0], [20, 20, 0, 0], [40, 0, 0, 0]]]

        combined = SufficientStatistics().update(model, sites)
        left = SufficientStatistics().update(model, sites[:1])
        right = SufficientStatistics().update(model, sites[1:])
        left.merge(right)

        assert left.count == combined.count
        assert left.hom_match == pytest.approx(combined.hom_match)
        assert left.het_match == pytest.approx(combined.het_match)
        assert left.log_likelihood == pytest.approx(combined.log_likelihood)
        assert left.max_sequencing_error_rate() == pytest.approx(
            combined.max_sequencing_error_rate()
        )

    def test_max_without_data_raises(self):
        with pytest.raises(ValueError, match="No reads accumulated"):
            SufficientStatistics().max_sequencing_error_rate()

    def test_max_homozygous_only(self):
        """Homozygous reads alone give the raw mismatch fraction."""
        stats = SufficientStatistics()
        stats.hom_match = 990.0
        stats.hom_mismatch = 10.0
        assert stats.max_sequencing_error_rate() == pytest.approx(0.01)

    def test_max_heterozygous_only(self):
        """At heterozygous genotypes two of three error bases are mismatches."""
        stats = SufficientStatistics()
        stats.het_match = 990.0
        stats.het_mismatch = 10.0
        assert stats.max_sequencing_error_rate() == pytest.approx(0.015)

    def test_max_is_clipped(self):
        stats = SufficientStatistics(spec=EMSpec(error_rate_bounds=(1e-6, 0.5)))
        stats.hom_match = 1000.0
        assert stats.max_sequencing_error_rate() == 1e-6

    def test_max_maximizes_likelihood(self):
        """The closed form beats nearby rates on the expected log-likelihood."""
        stats = SufficientStatistics()
        stats.hom_match, stats.hom_mismatch = 900.0, 12.0
        stats.het_match, stats.het_mismatch = 450.0, 3.0
        best = stats.max_sequencing_error_rate()

        def loglik(e):
            m = stats.mismatch
            return (
                stats.hom_match * np.log(1 - e)
                + m * np.log(e / 3)
                + stats.het_match * np.log(0.5 - e / 3)
            )

        for e in (best * 0.9, best * 1.1):
            assert loglik(best) > loglik(e)


class TestFitSequencingErrorRate:
    """Tests for the EM loop."""

    def test_converges_on_noisy_homozygous_sites(self):
        model = TrioModel()
        fit = fit_sequencing_error_rate(model, [NOISY_HOMOZYGOUS_SITE] * 10)

        assert isinstance(fit, SequencingErrorFit)
        assert fit.converged is True
        assert fit.sequencing_error_rate == pytest.approx(0.05, rel=1e-4)
        assert model.sequencing_error_rate == fit.sequencing_error_rate
        assert fit.initial_rate == 0.005
        assert fit.n_sites == 10
        assert len(fit.history) == fit.n_iterations
        assert fit.change == pytest.approx(fit.sequencing_error_rate - 0.005)

    def test_fixed_point_is_stable(self):
        """Once converged, another E/M cycle returns the same rate."""
        model = TrioModel()
        sites = [NOISY_HOMOZYGOUS_SITE] * 5
        fit = fit_sequencing_error_rate(model, sites)

        stats = SufficientStatistics(len(sites)).update(model, sites)
        assert stats.max_sequencing_error_rate() == pytest.approx(
            fit.sequencing_error_rate, rel=1e-8
        )

    def test_already_converged_runs_no_iterations(self):
        model = TrioModel()
        sites = [NOISY_HOMOZYGOUS_SITE] * 5
        fit_sequencing_error_rate(model, sites)
        again = fit_sequencing_error_rate(model, sites)

        assert again.converged is True
        assert again.n_iterations == 0
        assert again.history == []

    def test_recovers_simulated_error_rate(self):
        truth = TrioModel(sequencing_error_rate=0.02)
        reads, _ = simulate_trios(truth, n_trios=200, coverage=50, random_state=1)

        model = TrioModel()
        fit = fit_sequencing_error_rate(model, reads)

        assert fit.converged is True
        assert 0.015 < fit.sequencing_error_rate < 0.025

    def test_non_convergence_is_reported(self, caplog):
        """A cycling estimate stops at max_iter with converged=False."""
        model = TrioModel()
        rates = iter([0.01, 0.02] * 10)

        with patch.object(
            SufficientStatistics,
            "max_sequencing_error_rate",
            side_effect=lambda: next(rates),
        ):
            with caplog.at_level(logging.WARNING, logger="triomut.em"):
                fit = fit_sequencing_error_rate(
                    model, [NOISY_HOMOZYGOUS_SITE], EMSpec(max_iter=3)
                )

        assert fit.converged is False
        assert fit.n_iterations == 3
        assert fit.history == [0.01, 0.02, 0.01]
        assert "did not converge" in caplog.text

    def test_no_reads_raises(self):
        with pytest.raises(ValueError, match="No reads accumulated"):
            fit_sequencing_error_rate(TrioModel(), [np.zeros((3, 4), dtype=int)])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
