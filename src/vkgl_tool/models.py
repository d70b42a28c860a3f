"""Data models for the VKGL consensus tool."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .error_handler import DescriptorParseError

# Classification symbols, in order of increasing pathogenicity.
BENIGN = 'B'
LIKELY_BENIGN = 'LB'
VUS = 'VUS'
LIKELY_PATHOGENIC = 'LP'
PATHOGENIC = 'P'
BENIGN_CLASS = frozenset({BENIGN, LIKELY_BENIGN})
PATHOGENIC_CLASS = frozenset({LIKELY_PATHOGENIC, PATHOGENIC})

STATUS_PUBLIC = 'public'
STATUS_HIDDEN = 'hidden'

_DESCRIPTOR_PATTERN = re.compile(
    r'^(?:(?P<refseq>N[CG]_[0-9]+\.[0-9]+)(?:\([^)]*\))?:)?'
    r'(?P<prefix>[gm]\.)'
    r'(?P<start>[0-9]+)(?:_(?P<end>[0-9]+))?'
    r'(?:(?P<subst>[ACGTN]>[ACGTN])|(?P<type>delins|del|dup|ins|inv)(?P<payload>[ACGTN]*))$'
)


class ConsensusStatus(Enum):
    """Agreement between laboratories on one variant."""
    SINGLE_LAB = "single-lab"
    CONSENSUS = "consensus"
    NON_CONSENSUS = "non-consensus"
    OPPOSITE = "opposite"


@dataclass(frozen=True)
class GenomicDescriptor:
    """Canonical genomic HGVS description of one variant."""
    prefix: str
    start: int
    end: int
    type: str
    payload: str = ""
    
    def __str__(self) -> str:
        if self.type == 'subst':
            return f"{self.prefix}{self.start}{self.payload}"
        if self.type == 'ins' or self.start != self.end:
            positions = f"{self.start}_{self.end}"
        else:
            positions = str(self.start)
        return f"{self.prefix}{positions}{self.type}{self.payload}"
    
    @classmethod
    def parse(cls, text: str) -> 'GenomicDescriptor':
        """Parse a rendered description, optionally prefixed with its NC reference."""
        match = _DESCRIPTOR_PATTERN.match(text.strip())
        if not match:
            raise DescriptorParseError(f"Cannot parse variant description {text!r}.")
        start = int(match.group('start'))
        end = int(match.group('end') or start)
        if match.group('subst'):
            if match.group('end'):
                raise DescriptorParseError(f"Substitution with a range: {text!r}.")
            return cls(match.group('prefix'), start, end, 'subst', match.group('subst'))
        variant_type = match.group('type')
        payload = match.group('payload')
        if variant_type in ('ins', 'delins') and not payload:
            raise DescriptorParseError(f"Missing inserted sequence: {text!r}.")
        if variant_type == 'ins' and not match.group('end'):
            raise DescriptorParseError(f"Insertion needs two flanking positions: {text!r}.")
        if end < start:
            raise DescriptorParseError(f"Range end before start: {text!r}.")
        return cls(match.group('prefix'), start, end, variant_type, payload)


def split_refseq(text: str) -> Tuple[Optional[str], str]:
    """Split ``NC_000001.10:g.1A>G`` into the reference and the description."""
    if ':' in text:
        refseq, description = text.split(':', 1)
        return refseq, description
    return None, text


@dataclass
class VariantRecord:
    """One input row: a variant and the classification each center gave it."""
    source_id: str
    chromosome: str
    position: int
    ref: str
    alt: str
    gene: str = ""
    transcript: str = ""
    c_dna: str = ""
    protein: str = ""
    classifications: Dict[str, str] = field(default_factory=dict)
    links: Dict[str, str] = field(default_factory=dict)
    line: int = 0
    # Genomic description given instead of VCF fields, ``NC_...:g.``.
    genomic: str = ""
    
    @property
    def identity(self) -> str:
        return f"chr{self.chromosome}:{self.position} {self.ref or '-'}>{self.alt or '-'}"


def _append_unique(values: List[str], value: str) -> None:
    if value and value not in values:
        values.append(value)


@dataclass
class GroupedVariant:
    """All records that normalized to the same descriptor."""
    chromosome: str
    refseq: str
    descriptor: str
    original_descriptors: List[str] = field(default_factory=list)
    classifications: Dict[str, List[str]] = field(default_factory=dict)
    genes: List[str] = field(default_factory=list)
    transcripts: List[str] = field(default_factory=list)
    cdnas: List[str] = field(default_factory=list)
    proteins: List[str] = field(default_factory=list)
    source_ids: List[str] = field(default_factory=list)
    resolved: Dict[str, str] = field(default_factory=dict)
    conflicts: Dict[str, List[str]] = field(default_factory=dict)
    status: Optional[ConsensusStatus] = None
    
    @property
    def key(self) -> str:
        return f"{self.refseq}:{self.descriptor}"
    
    def add(self, record: VariantRecord, symbols: Dict[str, str], original: str) -> None:
        """Fold a record's metadata and per-center classification symbols in."""
        _append_unique(self.original_descriptors, original)
        _append_unique(self.genes, record.gene)
        _append_unique(self.transcripts, record.transcript)
        if record.transcript and record.c_dna:
            _append_unique(self.cdnas, f"{record.transcript}:{record.c_dna}")
        else:
            _append_unique(self.cdnas, record.c_dna)
        _append_unique(self.proteins, record.protein)
        _append_unique(self.source_ids, record.source_id)
        for center, symbol in symbols.items():
            self.classifications.setdefault(center, []).append(symbol)
    
    @property
    def published_as(self) -> str:
        return ", ".join(sorted(self.cdnas))


@dataclass(frozen=True)
class TranscriptRecord:
    """Transcript-level child row of a stored variant."""
    accession: str
    dna: str
    rna: str = "r.(?)"
    protein: str = ""


@dataclass
class PersistedRecord:
    """A laboratory's row for one variant in the variant store."""
    account: int
    chromosome: str
    dna: str
    position_start: int
    position_end: int
    type: str
    classification: str
    consensus: str
    published_as: str = ""
    transcripts: Dict[str, TranscriptRecord] = field(default_factory=dict)
    status: str = STATUS_PUBLIC
    remarks: str = ""
    audit: Dict[str, Any] = field(default_factory=lambda: {'ids': [], 'updates': {}})
    id: Optional[int] = None
    
    @property
    def key(self) -> Tuple[int, str]:
        return (self.account, self.dna)
