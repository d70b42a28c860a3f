"""The processing run: input file to synchronized variant store."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from .cache_manager import MappingCache, NCCache
from .config import Config, get_run_date
from .consensus import VariantGrouper
from .descriptor import FastaReference, ReferenceLookup, build_descriptor, chromosome_to_refseq
from .error_handler import (
    EquivalentAlleleError, ErrorType, OracleError, OracleUnavailableError, RunErrorHandler, SettingsError
)
from .input_parser import ConsensusFileReader
from .logging_config import LogTimer, ProgressLogger
from .mapper import TranscriptMapper
from .models import ConsensusStatus, PersistedRecord, split_refseq
from .oracle_cache import CachedError, OracleCache, Resolution
from .oracles import MutalyzerClient
from .reports import RunReporter
from .store import SQLiteVariantStore, VariantStore
from .sync import Synchronizer, SyncStats, build_fresh_records

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Everything a run needs, passed explicitly to each stage."""
    config: Config
    nc_cache: NCCache
    mapping_cache: MappingCache
    mutalyzer: MutalyzerClient
    store: VariantStore
    error_handler: RunErrorHandler
    reference: Optional[ReferenceLookup] = None
    timestamp: str = field(default_factory=lambda: datetime.now().strftime('%Y-%m-%d %H:%M:%S'))
    run_date: str = field(default_factory=get_run_date)
    
    @classmethod
    def from_config(cls, config: Config, error_handler: Optional[RunErrorHandler] = None) -> 'RunContext':
        error_handler = error_handler or RunErrorHandler()
        reference = FastaReference(config.store.reference_fasta) if config.store.reference_fasta else None
        return cls(
            config=config,
            nc_cache=NCCache(config.cache.nc_cache, error_handler),
            mapping_cache=MappingCache(config.cache.mapping_cache, error_handler),
            mutalyzer=MutalyzerClient(config.oracle),
            store=SQLiteVariantStore(config.store.path),
            error_handler=error_handler,
            reference=reference,
        )
    
    def close(self) -> None:
        self.mutalyzer.close()
        if isinstance(self.store, SQLiteVariantStore):
            self.store.close()
        if isinstance(self.reference, FastaReference):
            self.reference.close()


@dataclass
class RunSummary:
    """Outcome of one processing run."""
    records_read: int = 0
    no_variant: int = 0
    lost_variants: int = 0
    variants_grouped: int = 0
    unmapped: int = 0
    internal_conflicts: int = 0
    opposites: int = 0
    status_counts: Dict[str, int] = field(default_factory=dict)
    sync: SyncStats = field(default_factory=SyncStats)
    oracle_calls: int = 0
    warnings: int = 0
    warnings_by_type: Dict[str, int] = field(default_factory=dict)
    exit_code: int = 0
    reports: Dict[str, Path] = field(default_factory=dict)


class Pipeline:
    """Runs reader, descriptor builder, caches, consensus, mapper and sync in order."""
    
    def __init__(self, context: RunContext):
        self.context = context
        self.config = context.config
        self.error_handler = context.error_handler
        self.oracle_cache = OracleCache(context.nc_cache, context.mapping_cache, context.mutalyzer)
        self.reader = ConsensusFileReader()
    
    def run(self, input_path: Union[str, Path], write_reports: bool = True) -> RunSummary:
        """
        Process one consensus file.
        
        Raises:
            MalformedInputError: Input that cannot be interpreted; nothing is synchronized
            SettingsError: A center in the file has no store account, or the
                store holds data of another genome build
        """
        summary = RunSummary()
        consensus_file = self.reader.read(input_path)
        accounts = {center: self.config.account_for(center) for center in consensus_file.centers}
        build = self.config.store.refseq_build
        self._check_store(accounts, build)
        summary.records_read = len(consensus_file.records)
        
        with LogTimer("Normalizing variants", logger):
            grouper, resolutions = self._normalize(consensus_file.records, build, summary)
        groups = [group for group in grouper.finalize() if group.resolved]
        summary.variants_grouped = len(groups)
        
        mapper = TranscriptMapper(
            self.context.store.known_transcripts(), self.context.mapping_cache,
            self.context.mutalyzer, build, self.error_handler
        )
        fresh_by_chromosome: Dict[str, Dict[Tuple[int, str], PersistedRecord]] = {}
        for group in groups:
            status = group.status.value
            summary.status_counts[status] = summary.status_counts.get(status, 0) + 1
            summary.internal_conflicts += len(group.conflicts)
            if group.status == ConsensusStatus.OPPOSITE:
                summary.opposites += 1
            
            resolution, original = resolutions[group.key]
            transcripts = mapper.map_variant(resolution, original, group.key)
            if not transcripts:
                summary.unmapped += 1
            chromosome_records = fresh_by_chromosome.setdefault(group.chromosome, {})
            for record in build_fresh_records(group, transcripts, accounts):
                chromosome_records[record.key] = record
        
        synchronizer = Synchronizer(
            self.context.store, accounts, build, self.context.timestamp,
            delete_missing=self.config.store.delete_missing,
            corrected_for=self.oracle_cache.corrected_for,
            error_handler=self.error_handler,
        )
        with LogTimer("Synchronizing variant store", logger):
            for chromosome in synchronizer.chromosomes(fresh_by_chromosome):
                synchronizer.sync_chromosome(chromosome, fresh_by_chromosome.get(chromosome, {}))
        summary.sync = synchronizer.stats
        
        if write_reports:
            reporter = RunReporter(self.config.output.report_dir, self.context.run_date)
            summary.reports = reporter.write_all(groups, self.error_handler.history, consensus_file.centers)
        
        summary.oracle_calls = self.oracle_cache.api_calls + mapper.api_calls
        error_summary = self.error_handler.get_error_summary()
        summary.warnings = error_summary['total_warnings']
        summary.warnings_by_type = error_summary['by_type']
        summary.exit_code = self.error_handler.exit_code()
        logger.info(
            f"Records read: {summary.records_read}, variants: {summary.variants_grouped}, "
            f"lost: {summary.lost_variants}, warnings: {summary.warnings}."
        )
        return summary
    
    def _check_store(self, accounts: Dict[str, int], build: str) -> None:
        """Refuse a store of another build or without the centers' accounts.
        
        A new store is initialized with the configured build and accounts.
        """
        store = self.context.store
        stored_build = store.refseq_build()
        if stored_build is None:
            store.initialize(build, self.config.centers)
        elif stored_build != build:
            raise SettingsError(
                f"Variant store holds {stored_build} variants, but the run is configured for {build}.")
        
        known = store.accounts()
        for center, account in sorted(accounts.items()):
            if account not in known:
                raise SettingsError(
                    f"Account {account} of center {center} does not exist in the variant store; "
                    f"register it with init-store.")
    
    def _normalize(self, records, build: str,
                   summary: RunSummary) -> Tuple[VariantGrouper, Dict[str, Tuple[Resolution, str]]]:
        """Describe, resolve and group every record."""
        grouper = VariantGrouper(self.error_handler)
        resolutions: Dict[str, Tuple[Resolution, str]] = {}
        progress = ProgressLogger(logger, len(records), "Normalizing variants",
                                  self.config.output.progress_interval_seconds)
        
        for index, record in enumerate(records, start=1):
            self.error_handler.set_progress(index, len(records))
            refseq = chromosome_to_refseq(record.chromosome, build)
            details = {
                'chromosome': record.chromosome,
                'position': record.position,
                'ref': record.ref,
                'alt': record.alt,
            }
            
            try:
                descriptor = build_descriptor(record.chromosome, record.position, record.ref, record.alt,
                                              self.context.reference)
            except EquivalentAlleleError:
                summary.no_variant += 1
                self.error_handler.warn(ErrorType.NO_VARIANT, "REF and ALT are equal; skipping.",
                                        variant=record.identity)
                progress.update(False)
                continue
            
            key = OracleCache.make_key(refseq, str(descriptor))
            try:
                resolution = self.oracle_cache.resolve(refseq, str(descriptor))
            except OracleError as e:
                self._lost(summary, ErrorType.ORACLE_REJECTED, str(e), key, details, code=e.code)
                progress.update(False)
                continue
            except OracleUnavailableError as e:
                self._lost(summary, ErrorType.ORACLE_UNAVAILABLE, str(e), key, details, code='EFAILED')
                progress.update(False)
                continue
            
            if isinstance(resolution, CachedError):
                self._lost(summary, ErrorType.ORACLE_REJECTED, str(resolution), key, details,
                           code=resolution.code)
                progress.update(False)
                continue
            
            _, corrected = split_refseq(resolution.corrected)
            group = grouper.add(record, refseq, corrected, str(descriptor))
            resolutions.setdefault(group.key, (resolution, key))
            progress.update(True)
        
        progress.complete()
        return grouper, resolutions
    
    def _lost(self, summary: RunSummary, error_type: ErrorType, message: str, key: str,
              details: Dict, code: str) -> None:
        summary.lost_variants += 1
        self.error_handler.warn(error_type, f"Variant lost: {message}", variant=key,
                                code=code, **details)
