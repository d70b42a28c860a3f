"""Tests for the oracle cache."""

import pytest

from vkgl_tool.error_handler import OracleError, OracleUnavailableError
from vkgl_tool.oracle_cache import CachedError, OracleCache, Resolution
from vkgl_tool.oracles import PrimaryResult

from conftest import FakeMutalyzer

KEY = 'NC_000001.10:g.100387136_100387137insA'
CORRECTED = 'NC_000001.10:g.100387137dup'
MAPPINGS = {'NM_001918.3': {'c': 'c.1281dup', 'p': 'p.(Lys428fs)'}}


class TestOracleCache:
    """Test cases for OracleCache."""
    
    @pytest.fixture
    def primary(self):
        return FakeMutalyzer({KEY: PrimaryResult(CORRECTED, MAPPINGS)})
    
    @pytest.fixture
    def cache(self, nc_cache, mapping_cache, primary):
        return OracleCache(nc_cache, mapping_cache, primary)
    
    def test_miss_calls_service_and_fills_both_caches(self, cache, primary, nc_cache, mapping_cache):
        resolution = cache.resolve('NC_000001.10', 'g.100387136_100387137insA')
        
        assert isinstance(resolution, Resolution)
        assert resolution.corrected == CORRECTED
        assert resolution.mappings == MAPPINGS
        assert resolution.methods == ['runMutalyzerLight']
        assert not resolution.from_cache
        assert primary.primary_calls == [KEY]
        assert nc_cache.peek(KEY) == CORRECTED
        assert mapping_cache.peek(CORRECTED) == dict(MAPPINGS, methods=['runMutalyzerLight'])
    
    def test_second_resolve_is_served_from_cache(self, cache, primary):
        cache.resolve('NC_000001.10', 'g.100387136_100387137insA')
        resolution = cache.resolve('NC_000001.10', 'g.100387136_100387137insA')
        
        assert resolution.from_cache
        assert resolution.mappings == MAPPINGS
        assert primary.primary_calls == [KEY]
        assert cache.api_calls == 1
    
    def test_cache_survives_reload(self, tmp_path, cache, primary):
        from vkgl_tool.cache_manager import MappingCache, NCCache
        
        cache.resolve('NC_000001.10', 'g.100387136_100387137insA')
        reloaded = OracleCache(NCCache(tmp_path / "NC_cache.txt"),
                               MappingCache(tmp_path / "mapping_cache.txt"),
                               FakeMutalyzer())
        
        resolution = reloaded.resolve('NC_000001.10', 'g.100387136_100387137insA')
        assert resolution.corrected == CORRECTED
        assert reloaded.api_calls == 0
    
    def test_reference_mismatch_is_cached(self, nc_cache, mapping_cache):
        key = 'NC_000001.10:g.200C>T'
        primary = FakeMutalyzer({key: OracleError('EREF', 'C not found at position 200, found A instead.')})
        cache = OracleCache(nc_cache, mapping_cache, primary)
        
        first = cache.resolve('NC_000001.10', 'g.200C>T')
        second = cache.resolve('NC_000001.10', 'g.200C>T')
        
        assert isinstance(first, CachedError)
        assert first.code == 'EREF'
        assert second == first
        assert primary.primary_calls == [key]
        assert nc_cache.peek(key) == {'EREF': 'C not found at position 200, found A instead.'}
        assert len(mapping_cache) == 0
    
    def test_other_errors_are_not_cached(self, nc_cache, mapping_cache):
        key = 'NC_000001.10:g.200C>T'
        primary = FakeMutalyzer({key: OracleError('EPARSE', 'Could not parse the description.')})
        cache = OracleCache(nc_cache, mapping_cache, primary)
        
        with pytest.raises(OracleError):
            cache.resolve('NC_000001.10', 'g.200C>T')
        # Remembered for the rest of the run.
        with pytest.raises(OracleError):
            cache.resolve('NC_000001.10', 'g.200C>T')
        
        assert primary.primary_calls == [key]
        assert key not in nc_cache
    
    def test_unavailable_is_not_cached(self, nc_cache, mapping_cache):
        key = 'NC_000001.10:g.200C>T'
        primary = FakeMutalyzer({key: OracleUnavailableError('Mutalyzer request failed')})
        cache = OracleCache(nc_cache, mapping_cache, primary)
        
        with pytest.raises(OracleUnavailableError):
            cache.resolve('NC_000001.10', 'g.200C>T')
        
        assert key not in nc_cache
        assert len(mapping_cache) == 0
    
    def test_nc_hit_without_mapping_fetches_mapping_once(self, nc_cache, mapping_cache, primary):
        nc_cache.append(KEY, CORRECTED)
        cache = OracleCache(nc_cache, mapping_cache, primary)
        
        resolution = cache.resolve('NC_000001.10', 'g.100387136_100387137insA')
        cache.resolve('NC_000001.10', 'g.100387136_100387137insA')
        
        assert resolution.mappings == MAPPINGS
        assert primary.primary_calls == [KEY]
        assert nc_cache.path.read_text().count(KEY) == 1
    
    def test_nc_hit_with_different_correction_fetches_mapping_once(self, nc_cache, mapping_cache):
        key = 'NC_000001.10:g.5del'
        nc_cache.append(key, key)
        primary = FakeMutalyzer({key: PrimaryResult('NC_000001.10:g.4del', {'NM_000001.1': {'c': 'c.-20del'}})})
        cache = OracleCache(nc_cache, mapping_cache, primary)
        
        results = [cache.resolve('NC_000001.10', 'g.5del') for _ in range(3)]
        
        assert primary.primary_calls == [key]
        assert all(result.corrected == key for result in results)
        assert results[2].mappings == {'NM_000001.1': {'c': 'c.-20del'}}
        assert mapping_cache.peek(key) == {'NM_000001.1': {'c': 'c.-20del'}, 'methods': ['runMutalyzerLight']}
        assert nc_cache.peek(key) == key
    
    def test_nc_hit_whose_mapping_fetch_is_rejected_calls_once(self, nc_cache, mapping_cache):
        key = 'NC_000001.10:g.5del'
        nc_cache.append(key, key)
        primary = FakeMutalyzer({key: OracleError('EREF', 'Reference mismatch.')})
        cache = OracleCache(nc_cache, mapping_cache, primary)
        
        results = [cache.resolve('NC_000001.10', 'g.5del') for _ in range(3)]
        
        assert primary.primary_calls == [key]
        assert all(isinstance(result, CachedError) and result.code == 'EREF' for result in results)
        # The NC line is left alone.
        assert nc_cache.path.read_text().splitlines() == [f"{key}\t{key}"]
        assert len(mapping_cache) == 0
    
    def test_hand_edited_empty_error_is_a_miss(self, tmp_path, mapping_cache, primary, error_handler):
        from vkgl_tool.cache_manager import NCCache
        
        path = tmp_path / "edited_NC_cache.txt"
        path.write_text(f"{KEY}\t{{}}\n")
        cache = OracleCache(NCCache(path, error_handler), mapping_cache, primary)
        
        resolution = cache.resolve('NC_000001.10', 'g.100387136_100387137insA')
        
        assert resolution.corrected == CORRECTED
        assert primary.primary_calls == [KEY]
        assert error_handler.warning_count == 1
    
    def test_existing_mapping_is_kept(self, nc_cache, mapping_cache):
        other_key = 'NC_000001.10:g.100387136_100387137insA'
        existing = {'NM_001918.2': {'c': 'c.1281dup'}, 'methods': ['runMutalyzerLight', 'VV']}
        mapping_cache.append(CORRECTED, existing)
        primary = FakeMutalyzer({other_key: PrimaryResult(CORRECTED, MAPPINGS)})
        cache = OracleCache(nc_cache, mapping_cache, primary)
        
        resolution = cache.resolve('NC_000001.10', 'g.100387136_100387137insA')
        
        assert resolution.mappings == {'NM_001918.2': {'c': 'c.1281dup'}}
        assert resolution.methods == ['runMutalyzerLight', 'VV']
        assert mapping_cache.stats.appended_lines == 1
    
    def test_corrected_for(self, cache):
        assert cache.corrected_for(KEY) is None
        cache.resolve('NC_000001.10', 'g.100387136_100387137insA')
        assert cache.corrected_for(KEY) == CORRECTED
