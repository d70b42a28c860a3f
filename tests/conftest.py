"""Shared test doubles for the oracle-facing tests."""

from typing import Dict, List, Union

import pytest

from vkgl_tool.cache_manager import MappingCache, NCCache
from vkgl_tool.error_handler import RunErrorHandler
from vkgl_tool.oracles import PrimaryResult


class FakeMutalyzer:
    """Stands in for MutalyzerClient; answers from dictionaries and records calls."""
    
    def __init__(self,
                 primary: Dict[str, Union[PrimaryResult, Exception]] = None,
                 conversions: Dict[str, Union[List[str], Exception]] = None):
        self.primary = primary or {}
        self.conversions = conversions or {}
        self.primary_calls: List[str] = []
        self.conversion_calls: List[str] = []
    
    def run_mutalyzer_light(self, descriptor: str) -> PrimaryResult:
        self.primary_calls.append(descriptor)
        result = self.primary[descriptor]
        if isinstance(result, Exception):
            raise result
        return result
    
    def number_conversion(self, build: str, descriptor: str) -> List[str]:
        self.conversion_calls.append(descriptor)
        result = self.conversions.get(descriptor, [])
        if isinstance(result, Exception):
            raise result
        return result
    
    def close(self) -> None:
        pass


@pytest.fixture
def error_handler():
    return RunErrorHandler()


@pytest.fixture
def nc_cache(tmp_path, error_handler):
    return NCCache(tmp_path / "NC_cache.txt", error_handler)


@pytest.fixture
def mapping_cache(tmp_path, error_handler):
    return MappingCache(tmp_path / "mapping_cache.txt", error_handler)
