"""Conversion of VCF-style alleles into canonical genomic HGVS descriptions."""

import logging
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

from Bio import SeqIO
from Bio.Seq import reverse_complement

from .error_handler import EquivalentAlleleError, UnknownChromosomeError
from .models import GenomicDescriptor, split_refseq

logger = logging.getLogger(__name__)

CHROMOSOMES = tuple([str(n) for n in range(1, 23)] + ['X', 'Y', 'M'])

_REFSEQ_VERSIONS = {
    'hg19': {
        '1': 10, '2': 11, '3': 11, '4': 11, '5': 9, '6': 11, '7': 13, '8': 10,
        '9': 11, '10': 10, '11': 9, '12': 11, '13': 10, '14': 8, '15': 9, '16': 9,
        '17': 10, '18': 9, '19': 9, '20': 10, '21': 8, '22': 10, 'X': 10, 'Y': 9,
    },
    'hg38': {
        '1': 11, '2': 12, '3': 12, '4': 12, '5': 10, '6': 12, '7': 14, '8': 11,
        '9': 12, '10': 11, '11': 10, '12': 12, '13': 11, '14': 9, '15': 10, '16': 10,
        '17': 11, '18': 10, '19': 10, '20': 11, '21': 9, '22': 11, 'X': 11, 'Y': 10,
    },
}
MITOCHONDRIAL_REFSEQ = 'NC_012920.1'
PLACEHOLDER_ALLELES = ('.', '-')


def normalize_chromosome(chromosome: str) -> str:
    """Strip a ``chr`` prefix and map the mitochondrial aliases to ``M``."""
    value = str(chromosome).strip()
    if value.lower().startswith('chr'):
        value = value[3:]
    value = value.upper()
    if value == 'MT':
        value = 'M'
    if value not in CHROMOSOMES:
        raise UnknownChromosomeError(f"Unknown chromosome {chromosome!r}.")
    return value


def chromosome_to_refseq(chromosome: str, build: str) -> str:
    """Get the NC reference sequence of a chromosome in a genome build."""
    chromosome = normalize_chromosome(chromosome)
    if build not in _REFSEQ_VERSIONS:
        raise UnknownChromosomeError(f"Unknown genome build {build!r}.")
    if chromosome == 'M':
        return MITOCHONDRIAL_REFSEQ
    number = {'X': 23, 'Y': 24}.get(chromosome) or int(chromosome)
    return f"NC_{number:06d}.{_REFSEQ_VERSIONS[build][chromosome]}"


def refseq_to_chromosome(refseq: str) -> str:
    """Get the chromosome from an NC accession, ignoring its version."""
    accession = refseq.split('.', 1)[0]
    if accession == MITOCHONDRIAL_REFSEQ.split('.', 1)[0]:
        return 'M'
    if not accession.startswith('NC_0000'):
        raise UnknownChromosomeError(f"Not a chromosomal reference sequence: {refseq!r}.")
    number = int(accession[3:])
    chromosome = {23: 'X', 24: 'Y'}.get(number, str(number))
    if chromosome not in CHROMOSOMES:
        raise UnknownChromosomeError(f"Not a chromosomal reference sequence: {refseq!r}.")
    return chromosome


class ReferenceLookup(Protocol):
    """Source of reference bases, 1-based and inclusive."""
    
    def bases(self, chromosome: str, start: int, end: int) -> str:
        ...


class DictReference:
    """Reference lookup over in-memory sequences keyed by chromosome."""
    
    def __init__(self, sequences: Dict[str, str], offsets: Optional[Dict[str, int]] = None):
        self.sequences = {normalize_chromosome(k): v.upper() for k, v in sequences.items()}
        # The first base of each sequence is at offset + 1.
        self.offsets = {normalize_chromosome(k): v for k, v in (offsets or {}).items()}
    
    def bases(self, chromosome: str, start: int, end: int) -> str:
        sequence = self.sequences.get(chromosome, '')
        offset = self.offsets.get(chromosome, 0)
        if start <= offset:
            return ''
        return sequence[start - offset - 1:end - offset]


class FastaReference:
    """Reference lookup over an indexed FASTA file of the genome build."""
    
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._index = SeqIO.index(str(self.path), 'fasta')
        self._names: Dict[str, str] = {}
        for name in self._index:
            try:
                self._names[normalize_chromosome(name)] = name
            except UnknownChromosomeError:
                try:
                    self._names[refseq_to_chromosome(name)] = name
                except UnknownChromosomeError:
                    logger.debug(f"Ignoring FASTA record {name}")
    
    def bases(self, chromosome: str, start: int, end: int) -> str:
        name = self._names.get(chromosome)
        if name is None or start < 1:
            return ''
        return str(self._index[name].seq[start - 1:end]).upper()
    
    def close(self) -> None:
        self._index.close()


def _clean_allele(allele: Optional[str]) -> str:
    allele = (allele or '').strip().upper()
    return '' if allele in PLACEHOLDER_ALLELES else allele


def _is_duplication(alt_original: str, inserted: str) -> bool:
    """Whether the inserted bases directly follow an identical stretch in ALT."""
    index = alt_original.rfind(inserted) - len(inserted)
    return index >= 0 and alt_original[index:index + len(inserted)] == inserted


def build_descriptor(chromosome: str,
                     position: int,
                     ref: str,
                     alt: str,
                     reference: Optional[ReferenceLookup] = None) -> GenomicDescriptor:
    """
    Build the genomic descriptor for a VCF-style variant.
    
    Shared leading bases are trimmed first (moving the start), then shared
    trailing bases (moving the end). The remaining difference decides the type.
    
    Args:
        chromosome: Chromosome name; ``M`` selects the ``m.`` numbering
        position: 1-based position of the first REF base
        ref: Reference allele, ``.`` or ``-`` meaning empty
        alt: Alternative allele, ``.`` or ``-`` meaning empty
        reference: Optional reference bases, used to recognize insertions
            that duplicate the flanking sequence
    
    Returns:
        The descriptor
    
    Raises:
        EquivalentAlleleError: REF and ALT are the same; there is no variant
        UnknownChromosomeError: The chromosome is not known
    """
    chromosome = normalize_chromosome(chromosome)
    prefix = 'm.' if chromosome == 'M' else 'g.'
    ref = _clean_allele(ref)
    alt = _clean_allele(alt)
    if ref == alt:
        raise EquivalentAlleleError(f"No variant: REF and ALT are both {ref or 'empty'}.")
    
    ref_original = ref
    alt_original = alt
    start = int(position)
    end = start + len(ref) - 1
    
    while ref and alt and ref[0] == alt[0]:
        ref = ref[1:]
        alt = alt[1:]
        start += 1
    while ref and alt and ref[-1] == alt[-1]:
        ref = ref[:-1]
        alt = alt[:-1]
        end -= 1
    
    if len(ref) == 1 and len(alt) == 1:
        return GenomicDescriptor(prefix, start, end, 'subst', f"{ref}>{alt}")
    
    if not alt:
        return GenomicDescriptor(prefix, start, end, 'del')
    
    if not ref:
        if ref_original and _is_duplication(alt_original, alt):
            return GenomicDescriptor(prefix, start - len(alt), end, 'dup')
        if ref_original:
            # After trimming, start is one past end; the insertion sits between them.
            ins_start, ins_end = end, start
        else:
            # An empty REF is not valid VCF, yet some centers send it. Without
            # an anchor base, the insertion is taken to follow the position.
            ins_start, ins_end = start, end + 2
        if reference is not None:
            duplicated = _duplicated_range(reference, chromosome, ins_start, alt)
            if duplicated:
                return GenomicDescriptor(prefix, duplicated[0], duplicated[1], 'dup')
        return GenomicDescriptor(prefix, ins_start, ins_end, 'ins', alt)
    
    if ref == reverse_complement(alt):
        return GenomicDescriptor(prefix, start, end, 'inv')
    
    return GenomicDescriptor(prefix, start, end, 'delins', alt)


def _duplicated_range(reference: ReferenceLookup, chromosome: str, anchor: int, inserted: str):
    """Range duplicated by inserting bases after ``anchor``, if any."""
    length = len(inserted)
    if reference.bases(chromosome, anchor + 1, anchor + length) == inserted:
        return anchor + 1, anchor + length
    if anchor - length + 1 >= 1 and reference.bases(chromosome, anchor - length + 1, anchor) == inserted:
        return anchor - length + 1, anchor
    return None


def descriptor_to_vcf(text: str) -> Dict[str, Union[str, int]]:
    """
    Convert a genomic description back into VCF-like fields.
    
    Unknown bases are written as ``N``; only substitutions, deletions,
    duplications and insertions are supported.
    """
    refseq, description = split_refseq(text)
    descriptor = GenomicDescriptor.parse(description)
    chromosome = refseq_to_chromosome(refseq) if refseq else ''
    length = descriptor.end - descriptor.start + 1
    
    if descriptor.type == 'subst':
        ref, alt = descriptor.payload.split('>')
    elif descriptor.type == 'del':
        ref, alt = 'N' * length, '.'
    elif descriptor.type == 'dup':
        ref, alt = 'N' * length, 'N' * (length * 2)
    elif descriptor.type == 'ins':
        ref, alt = 'N', 'N' + descriptor.payload
    else:
        raise ValueError(f"Cannot convert {descriptor.type} variants to VCF: {text}")
    
    return {'chr': chromosome, 'pos': descriptor.start, 'ref': ref, 'alt': alt}
