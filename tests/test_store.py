"""Tests for the SQLite variant store."""

import sqlite3

import pytest

from vkgl_tool.error_handler import SettingsError
from vkgl_tool.models import PersistedRecord, TranscriptRecord
from vkgl_tool.store import SQLiteVariantStore


def make_record(account=1001, dna='g.100A>G', chromosome='1', **overrides):
    values = dict(
        account=account,
        chromosome=chromosome,
        dna=dna,
        position_start=100,
        position_end=100,
        type='subst',
        classification='LB',
        consensus='single-lab',
        published_as='NM_000001.1:c.10A>G',
        transcripts={'NM_000001.1': TranscriptRecord('NM_000001.1', 'c.10A>G', 'r.(?)', 'p.(Lys4Glu)')},
        audit={'ids': ['abc'], 'updates': {}},
    )
    values.update(overrides)
    return PersistedRecord(**values)


class TestSQLiteVariantStore:
    """Test cases for SQLiteVariantStore."""
    
    @pytest.fixture
    def store(self):
        store = SQLiteVariantStore()
        yield store
        store.close()
    
    def test_create_and_read_back(self, store):
        record = make_record()
        record_id = store.create(record)
        
        assert record.id == record_id
        loaded = store.records_for([1001], '1')
        assert list(loaded) == [(1001, 'g.100A>G')]
        assert loaded[(1001, 'g.100A>G')] == record
    
    def test_records_are_filtered_by_account_and_chromosome(self, store):
        store.create(make_record())
        store.create(make_record(account=1002))
        store.create(make_record(dna='g.200A>G', chromosome='2'))
        
        assert list(store.records_for([1001], '1')) == [(1001, 'g.100A>G')]
        assert len(store.records_for([1001, 1002], '1')) == 2
        assert store.records_for([], '1') == {}
        assert store.chromosomes_for([1001]) == ['1', '2']
    
    def test_account_and_description_are_unique(self, store):
        store.create(make_record())
        with pytest.raises(sqlite3.IntegrityError):
            store.create(make_record())
    
    def test_update(self, store):
        record_id = store.create(make_record())
        store.update(record_id, {'classification': 'P', 'audit': {'ids': ['abc'], 'updates': {'t': ['x']}}})
        
        loaded = store.get(1001, 'g.100A>G')
        assert loaded.classification == 'P'
        assert loaded.audit == {'ids': ['abc'], 'updates': {'t': ['x']}}
    
    def test_update_rejects_unknown_fields(self, store):
        record_id = store.create(make_record())
        with pytest.raises(ValueError):
            store.update(record_id, {'account': 1002})
    
    def test_transcripts(self, store):
        record_id = store.create(make_record())
        store.save_transcript(record_id, TranscriptRecord('NM_000001.1', 'c.10A>G', 'r.(?)', 'p.?'))
        store.save_transcript(record_id, TranscriptRecord('NM_000002.1', 'c.20A>G', 'r.(=)', 'p.(=)'))
        store.delete_transcript(record_id, 'NM_000001.1')
        
        loaded = store.get(1001, 'g.100A>G')
        assert list(loaded.transcripts) == ['NM_000002.1']
    
    def test_transaction_rolls_back(self, store):
        record_id = store.create(make_record())
        
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.update(record_id, {'classification': 'P'})
                raise RuntimeError("interrupted")
        
        assert store.get(1001, 'g.100A>G').classification == 'LB'
    
    def test_nested_transactions_are_refused(self, store):
        with store.transaction():
            with pytest.raises(RuntimeError):
                with store.transaction():
                    pass
    
    def test_known_transcripts(self, store):
        assert store.add_transcripts(['NM_000001.1', 'NM_000001.2'], gene='GENE1') == 2
        assert store.add_transcripts(['NM_000001.1']) == 0
        
        assert store.known_transcripts() == {'NM_000001.1', 'NM_000001.2'}
    
    def test_new_store_has_no_build(self, store):
        assert store.refseq_build() is None
        assert store.accounts() == set()
    
    def test_initialize(self, store):
        store.initialize('hg19', {'amc': 1001})
        store.initialize('hg19', {'amc': 1001, 'umcg': 1002})
        
        assert store.refseq_build() == 'hg19'
        assert store.accounts() == {1001, 1002}
    
    def test_initialize_refuses_other_build(self, store):
        store.initialize('hg19', {'amc': 1001})
        
        with pytest.raises(SettingsError) as excinfo:
            store.initialize('hg38', {'umcg': 1002})
        
        assert excinfo.value.exit_code == 75
        assert store.refseq_build() == 'hg19'
        assert store.accounts() == {1001}
    
    def test_database_file(self, tmp_path):
        path = tmp_path / "db" / "variants.db"
        store = SQLiteVariantStore(path)
        store.create(make_record())
        store.close()
        
        reopened = SQLiteVariantStore(path)
        try:
            assert reopened.get(1001, 'g.100A>G') is not None
        finally:
            reopened.close()
