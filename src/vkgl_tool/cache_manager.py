"""Append-only, tab-separated cache files for the normalization oracles."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Tuple, Union

from .error_handler import CacheFileError, ErrorType, RunErrorHandler

logger = logging.getLogger(__name__)

# Provenance tags stored in the mapping cache 'methods' list.
METHOD_PRIMARY = 'runMutalyzerLight'
METHOD_SECONDARY = 'numberConversion'
METHOD_VALIDATOR = 'VV'

# Error codes of the primary oracle that describe the variant itself, not the
# service; these are cached so they are not requested again.
CACHEABLE_ERROR_CODES = ('EREF', 'ERANGE')


@dataclass
class CacheStats:
    """Cache statistics."""
    loaded_lines: int = 0
    malformed_lines: int = 0
    appended_lines: int = 0
    hit_count: int = 0
    miss_count: int = 0
    
    @property
    def hit_rate(self) -> float:
        total_requests = self.hit_count + self.miss_count
        return self.hit_count / total_requests if total_requests > 0 else 0.0


class AppendOnlyCache:
    """A key/value cache backed by an append-only log of ``key<TAB>value`` lines.
    
    The file is folded into a dict on load, later lines overriding earlier
    ones for the same key. Writes only ever append, so the file can be edited
    by hand between runs and an interrupted run leaves it usable.
    """
    
    def __init__(self,
                 path: Union[str, Path],
                 name: str,
                 decode: Callable[[str], Any] = lambda value: value,
                 encode: Callable[[Any], str] = str,
                 error_handler: Optional[RunErrorHandler] = None):
        """
        Initialize and load the cache.
        
        Args:
            path: Cache file, created when missing
            name: Name used in messages
            decode: Turns the stored value column into a Python value
            encode: Turns a Python value into the value column
            error_handler: Receives a warning per malformed line
        """
        self.path = Path(path)
        self.name = name
        self.decode = decode
        self.encode = encode
        self.error_handler = error_handler
        self.stats = CacheStats()
        self._data: Dict[str, Any] = {}
        self.load()
    
    def load(self) -> None:
        """(Re)load the cache file; the last line for a key wins."""
        self._data = {}
        if not self.path.exists():
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.path.touch()
            except OSError as e:
                raise CacheFileError(f"Cannot create {self.name} {self.path}: {e}") from e
            logger.info(f"Created empty {self.name} {self.path}")
            return
        
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                lines = f.read().splitlines()
        except OSError as e:
            raise CacheFileError(f"Unreadable {self.name} {self.path}: {e}") from e
        
        for line_number, line in enumerate(lines, start=1):
            if not line or line.startswith('#'):
                continue
            fields = line.split('\t')
            if len(fields) != 2:
                self._malformed(line_number, len(lines))
                continue
            try:
                self._data[fields[0]] = self.decode(fields[1])
            except ValueError:
                self._malformed(line_number, len(lines))
                continue
            self.stats.loaded_lines += 1
        
        logger.info(f"{self.name.capitalize()} loaded, {len(self._data)} variants.")
    
    def _malformed(self, line_number: int, total: int) -> None:
        self.stats.malformed_lines += 1
        message = f"{self.name.capitalize()} line {line_number} malformed."
        if self.error_handler is not None:
            self.error_handler.warn(ErrorType.MALFORMED_CACHE_LINE, message)
        else:
            logger.warning(message)
    
    def __contains__(self, key: str) -> bool:
        return key in self._data
    
    def __len__(self) -> int:
        return len(self._data)
    
    def items(self) -> Iterator[Tuple[str, Any]]:
        return iter(list(self._data.items()))
    
    def get(self, key: str) -> Optional[Any]:
        if key in self._data:
            self.stats.hit_count += 1
            return self._data[key]
        self.stats.miss_count += 1
        return None
    
    def peek(self, key: str) -> Optional[Any]:
        """Get a value without touching the statistics."""
        return self._data.get(key)
    
    def append(self, key: str, value: Any) -> None:
        """Store a value in memory and append its line to the file."""
        encoded = self.encode(value)
        if '\t' in key or '\n' in key or '\t' in encoded or '\n' in encoded:
            raise ValueError(f"Cannot store {key!r} in {self.name}: tab or newline in line.")
        try:
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(f"{key}\t{encoded}\n")
        except OSError as e:
            raise CacheFileError(f"Cannot update {self.name} {self.path}: {e}") from e
        self._data[key] = value
        self.stats.appended_lines += 1


def _decode_nc_value(value: str) -> Union[str, Dict[str, str]]:
    """Corrected descriptors are plain strings, cached errors JSON objects."""
    if value.startswith('{'):
        error = json.loads(value)
        if len(error) != 1 or not all(isinstance(item, str) for item in next(iter(error.items()))):
            raise ValueError("Cached errors hold exactly one code and its message.")
        return error
    if value == 'null':
        # Written for descriptions the service could not parse at all.
        return {'ESYNTAX': 'Variant description could not be parsed.'}
    return value


def _encode_nc_value(value: Union[str, Dict[str, str]]) -> str:
    if isinstance(value, dict):
        return json.dumps(value, separators=(',', ':'))
    return value


def _decode_mapping_value(value: str) -> Dict[str, Any]:
    data = json.loads(value)
    if not isinstance(data, dict):
        raise ValueError("Mapping cache values must be JSON objects.")
    data.setdefault('methods', [])
    return data


def _encode_mapping_value(value: Dict[str, Any]) -> str:
    return json.dumps(value, separators=(',', ':'))


class NCCache(AppendOnlyCache):
    """``NC_...:g.`` description -> corrected description or ``{code: message}``."""
    
    def __init__(self, path: Union[str, Path], error_handler: Optional[RunErrorHandler] = None):
        super().__init__(path, 'NC cache', _decode_nc_value, _encode_nc_value, error_handler)
    
    @staticmethod
    def is_error(value: Any) -> bool:
        return isinstance(value, dict)


class MappingCache(AppendOnlyCache):
    """Corrected description -> ``{accession: {c, p}, methods: [...]}``."""
    
    def __init__(self, path: Union[str, Path], error_handler: Optional[RunErrorHandler] = None):
        super().__init__(path, 'mapping cache', _decode_mapping_value, _encode_mapping_value,
                         error_handler)
    
    @staticmethod
    def transcripts(entry: Dict[str, Any]) -> Dict[str, Dict[str, str]]:
        """The transcript mappings of an entry, without the provenance list."""
        return {key: value for key, value in entry.items() if key != 'methods'}
