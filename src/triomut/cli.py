from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from . import __version__
from .em import fit_sequencing_error_rate
from .params import (
    EMSpec,
    _DEFAULT_DIRICHLET_DISPERSION,
    _DEFAULT_GERMLINE_MUTATION_RATE,
    _DEFAULT_POPULATION_MUTATION_RATE,
    _DEFAULT_SEQUENCING_ERROR_RATE,
    _DEFAULT_SOMATIC_MUTATION_RATE,
)
from .simulation import empirical_probabilities, load_simulation_counts, write_probabilities
from .trio import TrioModel
from .utils import TRIO_MEMBERS

EXIT_ERROR = 2
EXIT_NOT_CONVERGED = 3


def _setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _handle_error(err: Exception) -> int:
    sys.stderr.write(f"{err.__class__.__name__}: {err}\n")
    return EXIT_ERROR


def _model_from_args(args: argparse.Namespace) -> TrioModel:
    return TrioModel(
        population_mutation_rate=args.population_mutation_rate,
        germline_mutation_rate=args.germline_mutation_rate,
        somatic_mutation_rate=args.somatic_mutation_rate,
        sequencing_error_rate=args.sequencing_error_rate,
        dirichlet_dispersion=args.dirichlet_dispersion,
        nucleotide_frequencies=args.nucleotide_frequencies,
    )


def _collect(args: argparse.Namespace):
    # cyvcf2 is only needed by the VCF commands
    from .vcf import TrioSiteCollector

    return TrioSiteCollector(
        args.vcf, args.child, args.mother, args.father, min_depth=args.min_depth
    )


def cmd_probability(args: argparse.Namespace) -> int:
    logger = logging.getLogger("triomut")
    try:
        model = _model_from_args(args)
        collector = _collect(args)
        out = open(args.output, "w") if args.output else sys.stdout
        try:
            out.write("\t".join(("chrom", "pos", "probability") + TRIO_MEMBERS) + "\n")
            n_written = 0
            for (chrom, pos), site in zip(collector.positions, collector.read_data):
                data = model.read_dependent_data(site)
                probability = data.mutation_probability
                if probability < args.min_probability:
                    continue
                if data.denominator > 0:
                    calls = model.genotype_calls(data)
                    genotypes = [calls[member] for member in TRIO_MEMBERS]
                else:
                    genotypes = ["."] * len(TRIO_MEMBERS)
                out.write("\t".join([chrom, str(pos), f"{probability:.10g}"] + genotypes) + "\n")
                n_written += 1
        finally:
            if out is not sys.stdout:
                out.close()
    except Exception as e:
        return _handle_error(e)

    logger.info("Scored %d sites, reported %d", len(collector), n_written)
    return 0


def cmd_estimate(args: argparse.Namespace) -> int:
    try:
        model = _model_from_args(args)
        collector = _collect(args)
        spec = EMSpec(max_iter=args.max_iter)
        fit = fit_sequencing_error_rate(model, collector.read_data, spec)
    except Exception as e:
        return _handle_error(e)

    sys.stdout.write(f"sequencing_error_rate\t{fit.sequencing_error_rate:.10g}\n")
    sys.stdout.write(f"iterations\t{fit.n_iterations}\n")
    sys.stdout.write(f"converged\t{fit.converged}\n")
    return 0 if fit.converged else EXIT_NOT_CONVERGED


def cmd_empirical(args: argparse.Namespace) -> int:
    try:
        counts = load_simulation_counts(args.counts)
        write_probabilities(args.output, empirical_probabilities(counts))
    except Exception as e:
        return _handle_error(e)
    return 0


def _add_model_args(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("model parameters")
    g.add_argument("--population-mutation-rate", type=float, default=_DEFAULT_POPULATION_MUTATION_RATE)
    g.add_argument("--germline-mutation-rate", type=float, default=_DEFAULT_GERMLINE_MUTATION_RATE)
    g.add_argument("--somatic-mutation-rate", type=float, default=_DEFAULT_SOMATIC_MUTATION_RATE)
    g.add_argument("--sequencing-error-rate", type=float, default=_DEFAULT_SEQUENCING_ERROR_RATE)
    g.add_argument("--dirichlet-dispersion", type=float, default=_DEFAULT_DIRICHLET_DISPERSION)
    g.add_argument(
        "--nucleotide-frequencies",
        type=float,
        nargs=4,
        metavar=("A", "C", "G", "T"),
        default=None,
        help="Base frequencies (default: uniform)",
    )


def _add_trio_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("vcf", type=_path_exists, help="Multi-sample VCF/BCF with FORMAT/AD")
    p.add_argument("--child", required=True, help="Child sample name")
    p.add_argument("--mother", required=True, help="Mother sample name")
    p.add_argument("--father", required=True, help="Father sample name")
    p.add_argument("--min-depth", type=int, default=0, help="Minimum reads per member")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="triomut",
        description="De novo mutation probabilities for parent-child trios.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v info, -vv debug")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("probability", help="Score each trio site in a VCF")
    _add_trio_args(p)
    _add_model_args(p)
    p.add_argument("-o", "--output", default=None, help="Output TSV (default: stdout)")
    p.add_argument("--min-probability", type=float, default=0.0, help="Only report sites at or above this")

    p = sub.add_parser("estimate", help="Refit the sequencing error rate by EM")
    _add_trio_args(p)
    _add_model_args(p)
    p.add_argument("--max-iter", type=int, default=EMSpec().max_iter, help="EM iteration cap")

    p = sub.add_parser("empirical", help="Empirical probabilities from simulation counts")
    p.add_argument("counts", type=_path_exists, help="Whitespace table: index, mutation count, no-mutation count")
    p.add_argument("output", help="Output file, one probability per line")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if args.cmd == "probability":
        return cmd_probability(args)
    if args.cmd == "estimate":
        return cmd_estimate(args)
    if args.cmd == "empirical":
        return cmd_empirical(args)

    parser.error(f"Unknown command: {args.cmd}")
    return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
