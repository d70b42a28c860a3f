"""Transcript-level mapping of normalized genomic variants."""

import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from .cache_manager import METHOD_SECONDARY, MappingCache
from .error_handler import ErrorType, OracleUnavailableError, RunErrorHandler
from .models import TranscriptRecord
from .oracle_cache import Resolution
from .oracles import MutalyzerClient, is_noncoding_accession

logger = logging.getLogger(__name__)

# Positions relative to upstream/downstream of the transcript, like c.-1u5.
_UNSUPPORTED_POSITION = re.compile(r'[0-9][ud][0-9]')

_POSITION = r'[-*]?[0-9]+(?:[-+][0-9]+)?'
_CDNA = re.compile(
    r'^[cn]\.\(?(?P<start>' + _POSITION + r')(?:_(?P<end>' + _POSITION + r'))?\)?(?P<change>.*)$'
)
_POSITION_PARTS = re.compile(r'^(?P<region>[-*]?)(?P<position>[0-9]+)(?:(?P<offset>[-+][0-9]+))?$')

SPLICE_DISTANCE = 5

EFFECT_SPLICING = ('r.spl?', 'p.?')
EFFECT_NONE = ('r.(=)', 'p.(=)')
EFFECT_TRANSCRIPT_LOSS = ('r.0?', 'p.0?')
EFFECT_UNKNOWN = ('r.(?)', 'p.?')


def _split_position(text: str) -> Tuple[str, int, int]:
    """Split ``-12+3`` into the region marker, the position and the intronic offset."""
    match = _POSITION_PARTS.match(text)
    offset = int(match.group('offset')) if match.group('offset') else 0
    return match.group('region'), int(match.group('position')), offset


def predict_effect(dna: str) -> Tuple[str, str]:
    """
    Predict the RNA and protein effect of a cDNA change from its positions alone.
    
    Used for coding transcripts that have no protein prediction of their own.
    
    Args:
        dna: cDNA description like ``c.100+2T>G``
    
    Returns:
        Tuple of RNA and protein descriptions
    """
    match = _CDNA.match(dna)
    if not match:
        return EFFECT_UNKNOWN
    
    positions = [_split_position(match.group('start'))]
    if match.group('end'):
        positions.append(_split_position(match.group('end')))
    change = match.group('change')
    
    if any(offset and abs(offset) <= SPLICE_DISTANCE for _, _, offset in positions):
        return EFFECT_SPLICING
    
    if all(abs(offset) > SPLICE_DISTANCE for _, _, offset in positions):
        # Deep intronic, as long as both ends are in the same intron.
        first, last = positions[0], positions[-1]
        if first[0] == last[0] and last[1] - first[1] in (0, 1):
            return EFFECT_NONE
    
    regions = [region for region, _, _ in positions]
    if all(region == '-' for region in regions):
        return EFFECT_NONE
    
    if regions[0] == '-' and regions[-1] == '*' and change.startswith('del'):
        return EFFECT_TRANSCRIPT_LOSS
    
    if all(region == '*' for region in regions) and ('>' in change or len(positions) > 1):
        return EFFECT_NONE
    
    return EFFECT_UNKNOWN


def split_accession(accession: str) -> Tuple[str, int]:
    """Split ``NM_000001.3`` into ``NM_000001`` and 3."""
    base, _, version = accession.rpartition('.')
    if not base or not version.isdigit():
        return accession, 0
    return base, int(version)


class TranscriptMapper:
    """Selects the transcript predictions the variant store can use."""
    
    def __init__(self,
                 known_transcripts: Iterable[str],
                 mapping_cache: MappingCache,
                 secondary: Optional[MutalyzerClient],
                 build: str,
                 error_handler: Optional[RunErrorHandler] = None):
        """
        Initialize the mapper.
        
        Args:
            known_transcripts: Versioned accessions known to the variant store
            mapping_cache: Cache that receives derived mappings
            secondary: Client for numberConversion, or None to never fall back
            build: Genome build for numberConversion
            error_handler: Receives unmapped and unavailable warnings
        """
        self.known_transcripts = set(known_transcripts)
        self.mapping_cache = mapping_cache
        self.secondary = secondary
        self.build = build
        self.error_handler = error_handler or RunErrorHandler()
        self.api_calls = 0
    
    def map_variant(self, resolution: Resolution, original: str, variant: str = "") -> List[TranscriptRecord]:
        """
        Build the transcript rows for one normalized variant.
        
        Args:
            resolution: The cached or fresh normalization
            original: Fully qualified, uncorrected description sent to the oracles
            variant: Identity used in warnings
        
        Returns:
            Transcript records, empty when no known transcript could be mapped
        """
        mappings = resolution.mappings
        covered = [accession for accession in mappings if accession in self.known_transcripts]
        
        if not covered and mappings and self.secondary is not None:
            derived = self._derive_lower_versions(resolution, original, variant)
            if derived:
                mappings = dict(mappings)
                mappings.update(derived)
                covered = sorted(derived)
        
        records = []
        for accession in covered:
            mapping = mappings[accession]
            dna = mapping.get('c', '')
            if not dna or _UNSUPPORTED_POSITION.search(dna):
                logger.debug(f"Dropping unsupported mapping {accession}:{dna}")
                continue
            records.append(self.build_record(accession, dna, mapping.get('p', '')))
        
        if not records:
            self.error_handler.warn(
                ErrorType.UNMAPPED,
                f"Could not map variant {resolution.corrected} to any known transcript.",
                variant=variant
            )
        return records
    
    @staticmethod
    def build_record(accession: str, dna: str, protein: str = "") -> TranscriptRecord:
        if protein:
            rna = 'r.(?)'
        else:
            rna, protein = predict_effect(dna)
        if is_noncoding_accession(accession):
            protein = '-'
        return TranscriptRecord(accession=accession, dna=dna, rna=rna, protein=protein)
    
    def _derive_lower_versions(self, resolution: Resolution, original: str,
                               variant: str) -> Dict[str, Dict[str, str]]:
        """Reuse predictions for older transcript versions with identical coordinates."""
        try:
            self.api_calls += 1
            converted = self.secondary.number_conversion(self.build, original)
        except OracleUnavailableError as e:
            self.error_handler.warn(ErrorType.ORACLE_UNAVAILABLE, str(e), variant=variant)
            return {}
        
        coordinates = {}
        for item in converted:
            accession, _, dna = item.partition(':')
            if dna:
                coordinates.setdefault(accession, dna)
        
        derived = {}
        for accession, mapping in resolution.mappings.items():
            if accession not in coordinates:
                continue
            base, version = split_accession(accession)
            for lower in range(version - 1, 0, -1):
                candidate = f"{base}.{lower}"
                if candidate in self.known_transcripts and coordinates.get(candidate) == coordinates[accession]:
                    derived[candidate] = dict(mapping)
                    break
        
        if derived:
            entry = dict(self.mapping_cache.peek(resolution.corrected)
                         or dict(resolution.mappings, methods=resolution.methods))
            methods = list(entry.get('methods', []))
            for candidate, mapping in derived.items():
                entry.setdefault(candidate, mapping)
            if METHOD_SECONDARY not in methods:
                methods.append(METHOD_SECONDARY)
            entry['methods'] = methods
            self.mapping_cache.append(resolution.corrected, entry)
            resolution.methods = methods
        return derived
