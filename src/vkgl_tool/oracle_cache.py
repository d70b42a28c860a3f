"""Two-tier memoization in front of the primary normalization service."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from .cache_manager import (
    CACHEABLE_ERROR_CODES, METHOD_PRIMARY, MappingCache, NCCache
)
from .error_handler import OracleError, OracleUnavailableError, VKGLError
from .oracles import MutalyzerClient, PrimaryResult

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """A normalized variant and its transcript predictions."""
    key: str
    corrected: str
    mappings: Dict[str, Dict[str, str]] = field(default_factory=dict)
    methods: List[str] = field(default_factory=list)
    from_cache: bool = True


@dataclass
class CachedError:
    """A rejection by the primary service, remembered across runs."""
    key: str
    code: str
    message: str
    
    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class OracleCache:
    """Resolves genomic descriptions through the NC and mapping caches.
    
    The NC cache maps ``refseq:description`` to the corrected description (or
    a cached error), the mapping cache maps the corrected description to its
    transcript predictions. Only cache misses reach the primary service.
    """
    
    def __init__(self,
                 nc_cache: NCCache,
                 mapping_cache: MappingCache,
                 primary: MutalyzerClient):
        self.nc_cache = nc_cache
        self.mapping_cache = mapping_cache
        self.primary = primary
        # Failures that are not cached; remembered for this run only.
        self._failures: Dict[str, VKGLError] = {}
        # Outcome of fetching mappings for NC lines that had none, per key.
        self._filled: Dict[str, Union[Resolution, CachedError]] = {}
        self.api_calls = 0
    
    @staticmethod
    def make_key(refseq: str, descriptor: str) -> str:
        return f"{refseq}:{descriptor}"
    
    def resolve(self, refseq: str, descriptor: str) -> Union[Resolution, CachedError]:
        """
        Resolve one description.
        
        Returns:
            A Resolution, or a CachedError for variants the service rejects
        
        Raises:
            OracleError: Rejected with a code that is not cached
            OracleUnavailableError: The service could not be used
        """
        key = self.make_key(refseq, descriptor)
        
        cached = self.nc_cache.get(key)
        if cached is not None:
            if NCCache.is_error(cached):
                code, message = next(iter(cached.items()))
                return CachedError(key, code, message)
            entry = self.mapping_cache.peek(cached)
            if entry is not None:
                return Resolution(key, cached, MappingCache.transcripts(entry),
                                  list(entry.get('methods', [])))
            return self._fill_mapping(key, cached)
        
        result = self._call_primary(key, cache_errors=True)
        if isinstance(result, CachedError):
            return result
        
        entry = self._store_mapping(result.corrected, result.mappings)
        self.nc_cache.append(key, result.corrected)
        return Resolution(key, result.corrected, MappingCache.transcripts(entry),
                          list(entry.get('methods', [])), from_cache=False)
    
    def _fill_mapping(self, key: str, cached: str) -> Union[Resolution, CachedError]:
        """Fetch the mappings of an NC line that has none, once per run.
        
        The NC cache may be filled by another application that does not write
        mappings. The NC line stays as it is; the mappings are filed under the
        description it holds.
        """
        if key in self._filled:
            return self._filled[key]
        result = self._call_primary(key)
        if isinstance(result, CachedError):
            logger.warning(f"{key} is cached as {cached}, but now fails with {result}")
            self._filled[key] = result
            return result
        if result.corrected != cached:
            logger.debug(f"{key} is cached as {cached}, but now corrects to {result.corrected}")
        entry = self._store_mapping(cached, result.mappings)
        resolution = Resolution(key, cached, MappingCache.transcripts(entry),
                                list(entry.get('methods', [])), from_cache=False)
        self._filled[key] = resolution
        return resolution
    
    def _call_primary(self, key: str, cache_errors: bool = False) -> Union[PrimaryResult, CachedError]:
        if key in self._failures:
            raise self._failures[key]
        self.api_calls += 1
        try:
            return self.primary.run_mutalyzer_light(key)
        except OracleError as e:
            if e.code in CACHEABLE_ERROR_CODES:
                if cache_errors:
                    self.nc_cache.append(key, e.to_cache_payload())
                return CachedError(key, e.code, e.message)
            self._failures[key] = e
            raise
        except OracleUnavailableError as e:
            self._failures[key] = e
            raise
    
    def _store_mapping(self, descriptor: str, mappings: Dict[str, Dict[str, str]]) -> Dict:
        """Write the predictions unless the description is already known."""
        existing = self.mapping_cache.peek(descriptor)
        if existing is not None:
            logger.debug(f"Keeping cached mapping for {descriptor}")
            return existing
        entry = dict(mappings)
        entry['methods'] = [METHOD_PRIMARY]
        self.mapping_cache.append(descriptor, entry)
        return entry
    
    def corrected_for(self, key: str) -> Optional[str]:
        """The corrected description cached for a key, if any; never calls out."""
        value = self.nc_cache.peek(key)
        if value is None or NCCache.is_error(value):
            return None
        return value
