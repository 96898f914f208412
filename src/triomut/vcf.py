from cyvcf2 import VCF
import logging
import numpy as np

from .utils import NUCLEOTIDES, NUCLEOTIDE_COUNT, TRIO_SIZE

logger = logging.getLogger(__name__)

_NUCLEOTIDE_INDEX = {base: i for i, base in enumerate(NUCLEOTIDES)}


class TrioSiteCollector:
    def __init__(self, vcf, child, mother, father, min_depth=0):
        """
        Collect per-site trio read counts from a multi-sample VCF.

        Parameters:
        -----------
        vcf : str
            Path to a VCF/BCF carrying the AD (allelic depth) FORMAT field.
        child, mother, father : str
            Sample names of the trio members.
        min_depth : int
            Skip sites where any member has fewer reads than this.
        """
        self.vcf_file = VCF(vcf)
        self.min_depth = min_depth
        self.sample_indices = self._trio_indices(
            list(self.vcf_file.samples), (child, mother, father)
        )
        self.positions, self.read_data = self._collect_sites()

    @staticmethod
    def _trio_indices(samples, trio):
        missing = [name for name in trio if name not in samples]
        if missing:
            raise ValueError(f"samples not found in VCF: {', '.join(missing)}")
        return [samples.index(name) for name in trio]

    @staticmethod
    def allele_nucleotides(ref, alts):
        """
        Nucleotide index of each allele, or None if any allele is not a
        single A, C, G or T (indels, symbolic or spanning-deletion alleles).
        """
        alleles = [ref] + list(alts)
        if not all(len(a) == 1 and a.upper() in _NUCLEOTIDE_INDEX for a in alleles):
            return None
        return [_NUCLEOTIDE_INDEX[a.upper()] for a in alleles]

    @staticmethod
    def counts_from_depths(allele_depths, nucleotides):
        """
        Convert one sample's AD values into A, C, G, T counts.

        Missing depths (negative values) count as zero reads.
        """
        counts = np.zeros(NUCLEOTIDE_COUNT, dtype=np.int64)
        for depth, nucleotide in zip(allele_depths, nucleotides):
            if depth > 0:
                counts[nucleotide] += int(depth)
        return counts

    def _collect_sites(self):
        positions = []
        read_data = []
        skipped = 0
        for variant in self.vcf_file:
            nucleotides = self.allele_nucleotides(variant.REF, variant.ALT)
            if nucleotides is None:
                skipped += 1
                continue
            depths = variant.format('AD')
            if depths is None:
                skipped += 1
                continue
            site = np.stack([
                self.counts_from_depths(depths[i], nucleotides)
                for i in self.sample_indices
            ])
            if site.sum(axis=1).min() < self.min_depth:
                skipped += 1
                continue
            positions.append((variant.CHROM, int(variant.POS)))
            read_data.append(site)

        logger.info("Collected %d trio sites (%d skipped)", len(read_data), skipped)
        if read_data:
            return positions, np.stack(read_data)
        return positions, np.zeros((0, TRIO_SIZE, NUCLEOTIDE_COUNT), dtype=np.int64)

    def __len__(self):
        return len(self.positions)
