import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest

from triomut.cli import EXIT_ERROR, EXIT_NOT_CONVERGED, main


class _Collector:
    def __init__(self, sites):
        self.read_data = np.asarray(sites)
        self.positions = [("chr1", 100 + i) for i in range(len(self.read_data))]

    def __len__(self):
        return len(self.positions)


DE_NOVO_SITE = [[20, 20, 0, 0], [40, 0, 0, 0], [40, 0, 0, 0]]
HOMOZYGOUS_SITE = [[40, 0, 0, 0], [40, 0, 0, 0], [40, 0, 0, 0]]
NOISY_HOMOZYGOUS_SITE = [[95, 5, 0, 0], [95, 5, 0, 0], [95, 5, 0, 0]]


@pytest.fixture
def vcf_path(tmp_path: Path) -> str:
    path = tmp_path / "trio.vcf"
    path.write_text("##fileformat=VCFv4.2\n")
    return str(path)


def _trio_args(vcf_path: str) -> list[str]:
    return [vcf_path, "--child", "kid", "--mother", "mom", "--father", "dad"]


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "triomut", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "triomut" in cp.stdout


def test_probability_writes_table(tmp_path: Path, vcf_path: str) -> None:
    out = tmp_path / "probs.tsv"
    with patch("triomut.cli._collect", return_value=_Collector([DE_NOVO_SITE, HOMOZYGOUS_SITE])):
        rc = main(["probability", *_trio_args(vcf_path), "-o", str(out)])

    assert rc == 0
    lines = out.read_text().splitlines()
    assert lines[0] == "chrom\tpos\tprobability\tchild\tmother\tfather"
    assert len(lines) == 3
    de_novo = float(lines[1].split("\t")[2])
    homozygous = float(lines[2].split("\t")[2])
    assert lines[1].startswith("chr1\t100\t")
    assert de_novo > 0.5
    assert homozygous < 1e-3
    assert lines[2].endswith("\tAA\tAA\tAA")
    assert lines[1].split("\t")[3] in ("AC", "CA")


def test_probability_zero_likelihood_site(tmp_path: Path, vcf_path: str) -> None:
    """Sites impossible under the model get no genotype calls."""
    impossible = [[0, 3000, 0, 0], [3000, 0, 0, 0], [3000, 0, 0, 0]]
    out = tmp_path / "probs.tsv"
    with patch("triomut.cli._collect", return_value=_Collector([impossible])):
        rc = main(
            [
                "probability",
                *_trio_args(vcf_path),
                "-o",
                str(out),
                "--germline-mutation-rate",
                "0",
                "--somatic-mutation-rate",
                "0",
            ]
        )

    assert rc == 0
    assert out.read_text().splitlines()[1] == "chr1\t100\t0\t.\t.\t."


def test_probability_min_probability_filter(tmp_path: Path, vcf_path: str) -> None:
    out = tmp_path / "probs.tsv"
    with patch("triomut.cli._collect", return_value=_Collector([DE_NOVO_SITE, HOMOZYGOUS_SITE])):
        rc = main(
            ["probability", *_trio_args(vcf_path), "-o", str(out), "--min-probability", "0.5"]
        )

    assert rc == 0
    lines = out.read_text().splitlines()
    assert len(lines) == 2
    assert lines[1].startswith("chr1\t100\t")


def test_probability_invalid_parameters(vcf_path: str, capsys) -> None:
    with patch("triomut.cli._collect", return_value=_Collector([HOMOZYGOUS_SITE])):
        rc = main(["probability", *_trio_args(vcf_path), "--sequencing-error-rate", "1.5"])

    assert rc == EXIT_ERROR
    assert "ValueError" in capsys.readouterr().err


def test_estimate(vcf_path: str, capsys) -> None:
    with patch("triomut.cli._collect", return_value=_Collector([NOISY_HOMOZYGOUS_SITE] * 5)):
        rc = main(["estimate", *_trio_args(vcf_path)])

    assert rc == 0
    fields = dict(line.split("\t") for line in capsys.readouterr().out.splitlines())
    assert float(fields["sequencing_error_rate"]) == pytest.approx(0.05, rel=1e-4)
    assert fields["converged"] == "True"


def test_estimate_not_converged(vcf_path: str, capsys) -> None:
    rates = iter([0.01, 0.02] * 5)
    with patch("triomut.cli._collect", return_value=_Collector([NOISY_HOMOZYGOUS_SITE])), patch(
        "triomut.em.SufficientStatistics.max_sequencing_error_rate",
        side_effect=lambda: next(rates),
    ):
        rc = main(["estimate", *_trio_args(vcf_path), "--max-iter", "2"])

    assert rc == EXIT_NOT_CONVERGED
    assert "converged\tFalse" in capsys.readouterr().out


def test_empirical(tmp_path: Path) -> None:
    counts = tmp_path / "counts.txt"
    counts.write_text("0 1 3\n1 0 0\n")
    out = tmp_path / "empirical.txt"

    rc = main(["empirical", str(counts), str(out)])

    assert rc == 0
    assert out.read_text().split() == ["0.25", "0"]


def test_empirical_bad_file(tmp_path: Path, capsys) -> None:
    counts = tmp_path / "counts.txt"
    counts.write_text("0 1\n")

    rc = main(["empirical", str(counts), str(tmp_path / "out.txt")])

    assert rc == EXIT_ERROR
    assert "3 columns" in capsys.readouterr().err


def test_missing_vcf_exits(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        main(["probability", *_trio_args(str(tmp_path / "absent.vcf"))])
