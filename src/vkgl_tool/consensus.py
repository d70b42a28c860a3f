"""Consensus classification across laboratories."""

import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .error_handler import ClassificationError, ErrorType, RunErrorHandler
from .models import (
    BENIGN, BENIGN_CLASS, LIKELY_BENIGN, LIKELY_PATHOGENIC, PATHOGENIC, PATHOGENIC_CLASS, VUS,
    ConsensusStatus, GroupedVariant, VariantRecord
)

logger = logging.getLogger(__name__)

_CLASSIFICATION_TEXT = {
    'benign': BENIGN,
    'b': BENIGN,
    'class 1': BENIGN,
    'likely benign': LIKELY_BENIGN,
    'lb': LIKELY_BENIGN,
    'class 2': LIKELY_BENIGN,
    'vus': VUS,
    'vous': VUS,
    'uncertain significance': VUS,
    'class 3': VUS,
    'likely pathogenic': LIKELY_PATHOGENIC,
    'lp': LIKELY_PATHOGENIC,
    'class 4': LIKELY_PATHOGENIC,
    'pathogenic': PATHOGENIC,
    'p': PATHOGENIC,
    'class 5': PATHOGENIC,
}


def parse_classification(text: str) -> str:
    """Map a laboratory's classification text to B, LB, VUS, LP or P."""
    key = ' '.join(text.strip().strip('"').lower().replace('_', ' ').split())
    if key not in _CLASSIFICATION_TEXT:
        raise ClassificationError(f"Unrecognized classification {text!r}.")
    return _CLASSIFICATION_TEXT[key]


def stable_variant_id(chromosome: str, position: int, ref: str, alt: str, gene: str) -> str:
    """Short id of a variant line; identical to the ids of earlier releases."""
    text = f"{chromosome}_{position}_{ref}_{alt}_{gene}"
    return hashlib.sha256(text.encode('utf-8')).hexdigest()[:10]


@dataclass
class LabReduction:
    """One laboratory's classifications reduced to a single value."""
    value: str
    internal_conflict: bool = False
    unresolved: bool = False


def reduce_lab(values: Iterable[str]) -> LabReduction:
    """
    Reduce the classifications one laboratory gave the same variant.
    
    Benign and pathogenic values together are an internal conflict, kept as
    the comma separated original values. Otherwise VUS wins, and the likely
    form wins over the definite one.
    """
    unique = list(dict.fromkeys(values))
    if not unique:
        raise ValueError("No classifications to reduce.")
    if len(unique) == 1:
        return LabReduction(unique[0])
    
    present = set(unique)
    if present & BENIGN_CLASS and present & PATHOGENIC_CLASS:
        return LabReduction(', '.join(unique), internal_conflict=True)
    if VUS in present:
        return LabReduction(VUS)
    
    collapsed = {BENIGN: LIKELY_BENIGN, PATHOGENIC: LIKELY_PATHOGENIC}
    remaining = list(dict.fromkeys(collapsed.get(value, value) for value in unique))
    return LabReduction(remaining[0], unresolved=len(remaining) > 1)


def compute_status(resolved: Mapping[str, str], internal_conflict: bool = False) -> ConsensusStatus:
    """Overall agreement between the laboratories' reduced classifications."""
    if internal_conflict:
        return ConsensusStatus.OPPOSITE
    if len(resolved) == 1:
        return ConsensusStatus.SINGLE_LAB
    
    values = set(resolved.values())
    if len(values) == 1:
        return ConsensusStatus.CONSENSUS
    if values & BENIGN_CLASS and values & PATHOGENIC_CLASS:
        return ConsensusStatus.OPPOSITE
    if VUS in values:
        return ConsensusStatus.NON_CONSENSUS
    return ConsensusStatus.CONSENSUS


def resolve_group(group: GroupedVariant, error_handler: Optional[RunErrorHandler] = None) -> ConsensusStatus:
    """Fill in the per-laboratory values and the status of a grouped variant."""
    group.resolved = {}
    group.conflicts = {}
    for center in sorted(group.classifications):
        reduction = reduce_lab(group.classifications[center])
        group.resolved[center] = reduction.value
        if reduction.internal_conflict:
            group.conflicts[center] = list(dict.fromkeys(group.classifications[center]))
            if error_handler is not None:
                error_handler.warn(
                    ErrorType.INTERNAL_CONFLICT,
                    f"Internal conflict in center {center}: {reduction.value}.",
                    variant=group.key
                )
        elif reduction.unresolved and error_handler is not None:
            error_handler.warn(
                ErrorType.UNRESOLVED_CLASSIFICATION,
                f"Could not resolve classifications of center {center}, using {reduction.value}.",
                variant=group.key
            )
    
    group.status = compute_status(group.resolved, bool(group.conflicts))
    return group.status


class VariantGrouper:
    """Folds records that normalized to the same descriptor into one group."""
    
    def __init__(self, error_handler: Optional[RunErrorHandler] = None):
        self.error_handler = error_handler
        self._groups: Dict[Tuple[str, str], GroupedVariant] = {}
    
    def add(self, record: VariantRecord, refseq: str, descriptor: str, original: str) -> GroupedVariant:
        """
        Add a record under its corrected descriptor.
        
        Args:
            record: Input record
            refseq: Reference sequence of the chromosome
            descriptor: Corrected description without the reference
            original: Description the record itself produced
        """
        symbols = {}
        for center, text in record.classifications.items():
            if text and text.strip():
                symbols[center] = parse_classification(text)
        
        key = (record.chromosome, descriptor)
        if key not in self._groups:
            self._groups[key] = GroupedVariant(record.chromosome, refseq, descriptor)
        group = self._groups[key]
        group.add(record, symbols, original)
        return group
    
    def __len__(self) -> int:
        return len(self._groups)
    
    def groups(self) -> List[GroupedVariant]:
        return list(self._groups.values())
    
    def finalize(self) -> List[GroupedVariant]:
        """Resolve every group and return them in input order."""
        groups = self.groups()
        for group in groups:
            resolve_group(group, self.error_handler)
        return groups
