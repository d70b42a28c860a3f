"""Tests for the run reports."""

import pandas as pd
import pytest

from vkgl_tool.error_handler import ErrorType, RunErrorHandler
from vkgl_tool.models import ConsensusStatus, GroupedVariant
from vkgl_tool.reports import (
    RunReporter, error_code_summary, errors_frame, internal_conflicts_frame, opposites_frame
)


@pytest.fixture
def history():
    handler = RunErrorHandler()
    handler.warn(ErrorType.ORACLE_REJECTED, "Variant lost: EREF: mismatch", variant='NC_000010.10:g.5A>G',
                 code='EREF', chromosome='10', position=5, ref='A', alt='G')
    handler.warn(ErrorType.ORACLE_UNAVAILABLE, "Variant lost: timeout", variant='NC_000002.11:g.9A>G',
                 code='EFAILED', chromosome='2', position=9, ref='A', alt='G')
    handler.warn(ErrorType.ORACLE_REJECTED, "Variant lost: EREF: mismatch", variant='NC_000002.11:g.3A>G',
                 code='EREF', chromosome='2', position=3, ref='A', alt='G')
    handler.warn(ErrorType.UNMAPPED, "Could not map variant")
    return handler.history


@pytest.fixture
def groups():
    opposite = GroupedVariant('1', 'NC_000001.10', 'g.100A>G', genes=['DBT'],
                              cdnas=['NM_001918.3:c.10A>G'], source_ids=['a1', 'b2'],
                              classifications={'amc': ['LB', 'P'], 'umcg': ['B']},
                              resolved={'amc': 'LB, P', 'umcg': 'B'},
                              conflicts={'amc': ['LB', 'P']},
                              status=ConsensusStatus.OPPOSITE)
    agreed = GroupedVariant('1', 'NC_000001.10', 'g.200A>G', resolved={'amc': 'B', 'umcg': 'LB'},
                            status=ConsensusStatus.CONSENSUS)
    return [opposite, agreed]


class TestFrames:
    """Test cases for the report frames."""
    
    def test_errors_sorted_by_chromosome_and_position(self, history):
        frame = errors_frame(history)
        
        assert list(frame['variant']) == ['NC_000002.11:g.3A>G', 'NC_000002.11:g.9A>G', 'NC_000010.10:g.5A>G']
        assert list(frame.columns) == ['chromosome', 'position', 'ref', 'alt', 'variant', 'corrected',
                                       'code', 'message']
    
    def test_error_code_summary(self, history):
        summary = error_code_summary(errors_frame(history))
        assert summary.to_dict() == {'EFAILED': 1, 'EREF': 2}
        assert list(summary.index) == ['EFAILED', 'EREF']
    
    def test_empty_history(self):
        frame = errors_frame([])
        assert frame.empty
        assert error_code_summary(frame).empty
    
    def test_internal_conflicts(self, groups):
        frame = internal_conflicts_frame(groups)
        assert frame.to_dict('records') == [{
            'chromosome': '1', 'variant': 'NC_000001.10:g.100A>G', 'center': 'amc',
            'classifications': 'LB, P', 'ids': 'a1;b2',
        }]
    
    def test_opposites(self, groups):
        frame = opposites_frame(groups, ['umcg', 'amc'])
        assert list(frame.columns) == ['chromosome', 'variant', 'gene', 'published_as', 'umcg', 'amc']
        assert len(frame) == 1
        assert frame.iloc[0]['umcg'] == 'B'


class TestRunReporter:
    """Test cases for RunReporter."""
    
    def test_write_all(self, tmp_path, groups, history):
        reporter = RunReporter(tmp_path / "reports", '2024-04')
        
        paths = reporter.write_all(groups, history, ['amc', 'umcg'])
        
        assert sorted(paths) == ['error_summary', 'errors', 'internal_conflicts', 'opposites']
        assert paths['errors'].name == 'vkgl_errors_2024-04.tsv'
        errors = pd.read_csv(paths['errors'], sep='\t')
        assert len(errors) == 3
        summary = pd.read_csv(paths['error_summary'], sep='\t')
        assert list(summary.columns) == ['code', 'count']
