"""Reconciliation of freshly computed records with the variant store."""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .descriptor import chromosome_to_refseq
from .error_handler import RunErrorHandler
from .models import (
    STATUS_HIDDEN, STATUS_PUBLIC, GenomicDescriptor, GroupedVariant, PersistedRecord,
    TranscriptRecord, split_refseq
)
from .store import VariantStore

logger = logging.getLogger(__name__)

RecordKey = Tuple[int, str]

# Fields compared between a fresh and a persisted record, with their audit names.
COMPARED_FIELDS = (
    ('position_start', 'Start position'),
    ('position_end', 'End position'),
    ('type', 'Type'),
    ('classification', 'Classification'),
    ('consensus', 'Consensus'),
    ('published_as', 'Published as'),
)

REMARK_NO_LONGER_REPORTED = "Variant no longer reported by this center."


class SyncAction(Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    TOMBSTONE = "tombstone"


@dataclass
class SyncDecision:
    """What to do with one (account, description) pair."""
    action: SyncAction
    key: RecordKey
    record: Optional[PersistedRecord] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    transcripts_saved: List[TranscriptRecord] = field(default_factory=list)
    transcripts_removed: List[str] = field(default_factory=list)
    changes: List[str] = field(default_factory=list)


@dataclass
class SyncStats:
    """Number of decisions per kind."""
    created: int = 0
    updated: int = 0
    skipped: int = 0
    tombstoned: int = 0
    renormalized: int = 0
    
    def add(self, decision: SyncDecision) -> None:
        if decision.action == SyncAction.CREATE:
            self.created += 1
        elif decision.action == SyncAction.UPDATE:
            self.updated += 1
        elif decision.action == SyncAction.TOMBSTONE:
            self.tombstoned += 1
        else:
            self.skipped += 1
    
    def merge(self, other: 'SyncStats') -> None:
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.tombstoned += other.tombstoned
        self.renormalized += other.renormalized
    
    def to_dict(self) -> Dict[str, int]:
        return {
            'created': self.created,
            'updated': self.updated,
            'skipped': self.skipped,
            'tombstoned': self.tombstoned,
            'renormalized': self.renormalized,
        }


def _with_audit_lines(audit: Mapping[str, Any], timestamp: str, lines: List[str]) -> Dict[str, Any]:
    """A copy of the audit field with lines appended under the run timestamp."""
    updated = copy.deepcopy(dict(audit))
    updated.setdefault('ids', [])
    updated.setdefault('updates', {})
    updated['updates'].setdefault(timestamp, []).extend(lines)
    return updated


def _describe_transcript(transcript: TranscriptRecord) -> str:
    return f"{transcript.dna}/{transcript.rna}/{transcript.protein}"


def diff_transcripts(fresh: Mapping[str, TranscriptRecord],
                     persisted: Mapping[str, TranscriptRecord]) -> Tuple[List[TranscriptRecord], List[str], List[str]]:
    """
    Compare transcript rows keyed by accession.
    
    Returns:
        Rows to save, accessions to remove and the audit lines
    """
    saved, removed, lines = [], [], []
    for accession in sorted(fresh):
        transcript = fresh[accession]
        if accession not in persisted:
            saved.append(transcript)
            lines.append(f"Transcript {accession} added: {_describe_transcript(transcript)}.")
        elif persisted[accession] != transcript:
            saved.append(transcript)
            lines.append(f"Transcript {accession} changed from "
                         f"{_describe_transcript(persisted[accession])} to {_describe_transcript(transcript)}.")
    for accession in sorted(set(persisted) - set(fresh)):
        removed.append(accession)
        lines.append(f"Transcript {accession} removed.")
    return saved, removed, lines


def diff_record(fresh: Optional[PersistedRecord],
                persisted: Optional[PersistedRecord],
                timestamp: str,
                delete_missing: bool = False) -> SyncDecision:
    """
    Decide how to bring the store in line with a freshly computed record.
    
    Args:
        fresh: Record computed in this run, None if the center no longer reports it
        persisted: Record currently in the store, None if absent
        timestamp: Run timestamp the audit lines are filed under
        delete_missing: Whether records no longer reported are tombstoned
    
    Returns:
        The decision; computing it has no side effects
    """
    if fresh is None and persisted is None:
        raise ValueError("Nothing to compare.")
    
    if persisted is None:
        return SyncDecision(SyncAction.CREATE, fresh.key, record=fresh)
    
    if fresh is None:
        if not delete_missing or persisted.status == STATUS_HIDDEN:
            return SyncDecision(SyncAction.SKIP, persisted.key, record=persisted)
        lines = ["Variant no longer reported; hidden."]
        return SyncDecision(
            SyncAction.TOMBSTONE, persisted.key, record=persisted,
            fields={
                'status': STATUS_HIDDEN,
                'remarks': REMARK_NO_LONGER_REPORTED,
                'audit': _with_audit_lines(persisted.audit, timestamp, lines),
            },
            changes=lines
        )
    
    fields: Dict[str, Any] = {}
    lines: List[str] = []
    for name, label in COMPARED_FIELDS:
        old, new = getattr(persisted, name), getattr(fresh, name)
        if old != new:
            fields[name] = new
            lines.append(f"{label} changed from '{old}' to '{new}'.")
    
    if persisted.status != STATUS_PUBLIC:
        fields['status'] = STATUS_PUBLIC
        fields['remarks'] = ''
        lines.append("Variant reported again; made public.")
    
    new_ids = [source_id for source_id in fresh.audit.get('ids', []) if source_id not in persisted.audit.get('ids', [])]
    
    saved, removed, transcript_lines = diff_transcripts(fresh.transcripts, persisted.transcripts)
    lines.extend(transcript_lines)
    
    if new_ids:
        lines.append(f"Source IDs added: {', '.join(new_ids)}.")
    
    if not lines:
        return SyncDecision(SyncAction.SKIP, persisted.key, record=persisted)
    
    audit = _with_audit_lines(persisted.audit, timestamp, lines)
    audit['ids'] = audit['ids'] + new_ids
    fields['audit'] = audit
    return SyncDecision(
        SyncAction.UPDATE, persisted.key, record=persisted, fields=fields,
        transcripts_saved=saved, transcripts_removed=removed, changes=lines
    )


def apply_decision(store: VariantStore, decision: SyncDecision) -> None:
    """Write one decision to the store in a single transaction."""
    if decision.action == SyncAction.SKIP:
        return
    with store.transaction():
        if decision.action == SyncAction.CREATE:
            store.create(decision.record)
            return
        record_id = decision.record.id
        store.update(record_id, decision.fields)
        for transcript in decision.transcripts_saved:
            store.save_transcript(record_id, transcript)
        for accession in decision.transcripts_removed:
            store.delete_transcript(record_id, accession)


def plan_renormalization(persisted: Mapping[RecordKey, PersistedRecord],
                         refseq: str,
                         corrected_for: Callable[[str], Optional[str]],
                         timestamp: str,
                         fresh_keys: Iterable[RecordKey] = ()) -> Tuple[Dict[RecordKey, PersistedRecord], List[SyncDecision]]:
    """
    Rekey stored records whose description is now normalized differently.
    
    Args:
        persisted: Stored records of one chromosome
        refseq: Reference sequence of that chromosome
        corrected_for: Looks up the corrected description of ``refseq:description``
        timestamp: Run timestamp for the audit lines
        fresh_keys: Keys reported in this run; their stored records stay where they are
    
    Returns:
        The records keyed by their corrected description, and the decisions
        that move (or, when the corrected key is taken, hide) the stale rows
    """
    result = dict(persisted)
    fresh_keys = set(fresh_keys)
    decisions = []
    for key in sorted(set(persisted) - fresh_keys):
        record = persisted[key]
        corrected = corrected_for(f"{refseq}:{record.dna}")
        if not corrected:
            continue
        _, corrected = split_refseq(corrected)
        if corrected == record.dna:
            continue
        
        new_key = (record.account, corrected)
        del result[key]
        if new_key in result:
            if record.status != STATUS_HIDDEN:
                lines = [f"Description {record.dna} is now normalized to {corrected}, which is already stored; hidden."]
                decisions.append(SyncDecision(
                    SyncAction.TOMBSTONE, key, record=record,
                    fields={
                        'status': STATUS_HIDDEN,
                        'remarks': f"Duplicate of {corrected}.",
                        'audit': _with_audit_lines(record.audit, timestamp, lines),
                    },
                    changes=lines
                ))
            continue
        
        descriptor = GenomicDescriptor.parse(corrected)
        lines = [f"Description renormalized from {record.dna} to {corrected}."]
        moved = copy.deepcopy(record)
        moved.dna = corrected
        moved.position_start = descriptor.start
        moved.position_end = descriptor.end
        moved.type = descriptor.type
        moved.audit = _with_audit_lines(record.audit, timestamp, lines)
        decisions.append(SyncDecision(
            SyncAction.UPDATE, key, record=record,
            fields={
                'dna': moved.dna,
                'position_start': moved.position_start,
                'position_end': moved.position_end,
                'type': moved.type,
                'audit': moved.audit,
            },
            changes=lines
        ))
        result[new_key] = moved
    return result, decisions


def build_fresh_records(group: GroupedVariant,
                        transcripts: Iterable[TranscriptRecord],
                        accounts: Mapping[str, int]) -> List[PersistedRecord]:
    """One record per reporting center of a resolved group."""
    descriptor = GenomicDescriptor.parse(group.descriptor)
    transcript_rows = {transcript.accession: transcript for transcript in transcripts}
    records = []
    for center, classification in sorted(group.resolved.items()):
        records.append(PersistedRecord(
            account=accounts[center],
            chromosome=group.chromosome,
            dna=group.descriptor,
            position_start=descriptor.start,
            position_end=descriptor.end,
            type=descriptor.type,
            classification=classification,
            consensus=group.status.value,
            published_as=group.published_as,
            transcripts=dict(transcript_rows),
            audit={'ids': list(group.source_ids), 'updates': {}},
        ))
    return records


class Synchronizer:
    """Synchronizes the store one chromosome at a time."""
    
    def __init__(self,
                 store: VariantStore,
                 accounts: Mapping[str, int],
                 build: str,
                 timestamp: str,
                 delete_missing: bool = False,
                 corrected_for: Optional[Callable[[str], Optional[str]]] = None,
                 error_handler: Optional[RunErrorHandler] = None):
        self.store = store
        self.accounts = dict(accounts)
        self.build = build
        self.timestamp = timestamp
        self.delete_missing = delete_missing
        self.corrected_for = corrected_for
        self.error_handler = error_handler
        self.stats = SyncStats()
    
    def chromosomes(self, fresh_chromosomes: Iterable[str]) -> List[str]:
        """Chromosomes with fresh data or stored rows of our accounts."""
        stored = self.store.chromosomes_for(sorted(set(self.accounts.values())))
        return sorted(set(fresh_chromosomes) | set(stored), key=_chromosome_order)
    
    def sync_chromosome(self, chromosome: str, fresh: Mapping[RecordKey, PersistedRecord]) -> SyncStats:
        """Apply all decisions for one chromosome."""
        stats = SyncStats()
        persisted = self.store.records_for(sorted(set(self.accounts.values())), chromosome)
        
        if self.corrected_for is not None:
            refseq = chromosome_to_refseq(chromosome, self.build)
            persisted, moves = plan_renormalization(persisted, refseq, self.corrected_for, self.timestamp,
                                                    fresh_keys=fresh)
            for decision in moves:
                apply_decision(self.store, decision)
                if decision.action == SyncAction.TOMBSTONE:
                    stats.tombstoned += 1
                else:
                    stats.renormalized += 1
        
        for key in sorted(set(fresh) | set(persisted)):
            decision = diff_record(fresh.get(key), persisted.get(key), self.timestamp, self.delete_missing)
            apply_decision(self.store, decision)
            stats.add(decision)
            if decision.action != SyncAction.SKIP:
                logger.debug(f"{decision.action.value} {key}: {' '.join(decision.changes)}")
        
        logger.info(f"Chromosome {chromosome}: {stats.created} created, {stats.updated} updated, "
                    f"{stats.skipped} unchanged, {stats.tombstoned} hidden.")
        self.stats.merge(stats)
        return stats


def _chromosome_order(chromosome: str) -> Tuple[int, str]:
    return (int(chromosome), '') if chromosome.isdigit() else (100, chromosome)
