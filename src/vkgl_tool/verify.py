"""Cross-checking of cached normalizations against VariantValidator."""

import logging
from dataclasses import dataclass
from typing import Optional

from .cache_manager import METHOD_VALIDATOR, MappingCache, NCCache
from .error_handler import ErrorType, OracleUnavailableError, RunErrorHandler
from .logging_config import ProgressLogger
from .oracles import VariantValidatorClient

logger = logging.getLogger(__name__)


@dataclass
class VerificationSummary:
    variants_seen: int = 0
    variants_verified: int = 0
    mappings_added: int = 0
    disagreements: int = 0
    failures: int = 0


class CacheVerifier:
    """Verifies the NC cache and extends the mapping cache with validator mappings.
    
    Disagreements are only reported. The primary cache is never corrected,
    and existing transcript mappings are never replaced.
    """
    
    def __init__(self,
                 nc_cache: NCCache,
                 mapping_cache: MappingCache,
                 validator: VariantValidatorClient,
                 build: str,
                 error_handler: Optional[RunErrorHandler] = None,
                 progress_interval: float = 5.0):
        self.nc_cache = nc_cache
        self.mapping_cache = mapping_cache
        self.validator = validator
        self.build = build
        self.error_handler = error_handler or RunErrorHandler()
        self.progress_interval = progress_interval
    
    def run(self) -> VerificationSummary:
        summary = VerificationSummary()
        entries = self.nc_cache.items()
        total = len(self.nc_cache)
        progress = ProgressLogger(logger, total, "Verifying variants and mappings", self.progress_interval)
        
        for key, corrected in entries:
            summary.variants_seen += 1
            self.error_handler.set_progress(summary.variants_seen, total)
            success = self.verify_entry(key, corrected, summary)
            progress.update(success)
        
        progress.complete()
        logger.info(f"{summary.variants_seen} variants verified, "
                    f"mappings added to cache: {summary.mappings_added}.")
        return summary
    
    def verify_entry(self, key: str, corrected, summary: VerificationSummary) -> bool:
        # Cached errors never reach the mapping cache; sending them again is pointless.
        if NCCache.is_error(corrected):
            return True
        
        entry = self.mapping_cache.peek(corrected)
        if entry is not None and METHOD_VALIDATOR in entry.get('methods', []):
            return True
        
        try:
            result = self.validator.verify_genomic(self.build, key)
        except OracleUnavailableError as e:
            summary.failures += 1
            self.error_handler.warn(
                ErrorType.ORACLE_UNAVAILABLE, f"Variant Validator failed: {e}",
                variant=key, corrected=corrected, code='EVVFAILED'
            )
            return False
        
        if result.errors:
            summary.disagreements += 1
            self.error_handler.warn(
                ErrorType.ORACLE_DISAGREEMENT,
                f"Variant Validator error disagrees: {';'.join(result.errors.values())}",
                variant=key, corrected=corrected, code=','.join(result.errors)
            )
            return False
        
        if result.corrected != corrected:
            summary.disagreements += 1
            self.error_handler.warn(
                ErrorType.ORACLE_DISAGREEMENT,
                f"Variant predictors disagree: {corrected} versus {result.corrected}.",
                variant=key, corrected=corrected
            )
            return False
        
        summary.variants_verified += 1
        updated = dict(entry) if entry is not None else {}
        methods = list(updated.pop('methods', []))
        for accession, mapping in result.mappings.items():
            updated.setdefault(accession, mapping)
        methods.append(METHOD_VALIDATOR)
        updated['methods'] = methods
        self.mapping_cache.append(corrected, updated)
        summary.mappings_added += 1
        return True
