"""Tests for store reconciliation."""

import sqlite3

import pytest

from vkgl_tool.models import ConsensusStatus, GroupedVariant, TranscriptRecord
from vkgl_tool.store import SQLiteVariantStore
from vkgl_tool.sync import (
    REMARK_NO_LONGER_REPORTED, SyncAction, Synchronizer, apply_decision, build_fresh_records,
    diff_record, diff_transcripts, plan_renormalization
)

from test_store import make_record

T1 = '2024-04-01 10:00:00'
T2 = '2024-07-01 10:00:00'


class TestDiffRecord:
    """Test cases for diff_record."""
    
    def test_absent_record_is_created(self):
        fresh = make_record()
        decision = diff_record(fresh, None, T1)
        assert decision.action == SyncAction.CREATE
        assert decision.record is fresh
    
    def test_identical_record_is_skipped(self):
        persisted = make_record(id=1)
        decision = diff_record(make_record(), persisted, T1)
        assert decision.action == SyncAction.SKIP
        assert decision.fields == {}
    
    def test_changed_classification(self):
        persisted = make_record(id=1)
        fresh = make_record(classification='VUS', consensus='non-consensus')
        
        decision = diff_record(fresh, persisted, T2)
        
        assert decision.action == SyncAction.UPDATE
        assert decision.fields['classification'] == 'VUS'
        assert decision.fields['consensus'] == 'non-consensus'
        assert decision.fields['audit']['updates'] == {T2: [
            "Classification changed from 'LB' to 'VUS'.",
            "Consensus changed from 'single-lab' to 'non-consensus'.",
        ]}
        # The persisted record is left alone.
        assert persisted.audit == {'ids': ['abc'], 'updates': {}}
    
    def test_new_source_id(self):
        persisted = make_record(id=1)
        fresh = make_record(audit={'ids': ['abc', 'def'], 'updates': {}})
        
        decision = diff_record(fresh, persisted, T2)
        
        assert decision.action == SyncAction.UPDATE
        assert decision.fields['audit']['ids'] == ['abc', 'def']
        assert decision.fields['audit']['updates'][T2] == ["Source IDs added: def."]
    
    def test_missing_record_kept_without_delete(self):
        decision = diff_record(None, make_record(id=1), T2, delete_missing=False)
        assert decision.action == SyncAction.SKIP
    
    def test_missing_record_tombstoned(self):
        decision = diff_record(None, make_record(id=1), T2, delete_missing=True)
        
        assert decision.action == SyncAction.TOMBSTONE
        assert decision.fields['status'] == 'hidden'
        assert decision.fields['remarks'] == REMARK_NO_LONGER_REPORTED
    
    def test_hidden_record_is_not_tombstoned_again(self):
        persisted = make_record(id=1, status='hidden')
        assert diff_record(None, persisted, T2, delete_missing=True).action == SyncAction.SKIP
    
    def test_hidden_record_reported_again_is_restored(self):
        persisted = make_record(id=1, status='hidden', remarks=REMARK_NO_LONGER_REPORTED)
        
        decision = diff_record(make_record(), persisted, T2)
        
        assert decision.action == SyncAction.UPDATE
        assert decision.fields['status'] == 'public'
        assert decision.fields['remarks'] == ''
    
    def test_nothing_to_compare(self):
        with pytest.raises(ValueError):
            diff_record(None, None, T1)


def test_diff_transcripts():
    persisted = {
        'NM_1.1': TranscriptRecord('NM_1.1', 'c.1A>G'),
        'NM_2.1': TranscriptRecord('NM_2.1', 'c.2A>G'),
    }
    fresh = {
        'NM_1.1': TranscriptRecord('NM_1.1', 'c.1A>G', protein='p.(Met1?)'),
        'NM_3.1': TranscriptRecord('NM_3.1', 'c.3A>G'),
    }
    
    saved, removed, lines = diff_transcripts(fresh, persisted)
    
    assert [t.accession for t in saved] == ['NM_1.1', 'NM_3.1']
    assert removed == ['NM_2.1']
    assert len(lines) == 3


class TestApplyDecision:
    """Test cases for writing decisions."""
    
    @pytest.fixture
    def store(self):
        store = SQLiteVariantStore()
        yield store
        store.close()
    
    def test_update_is_atomic(self, store, monkeypatch):
        store.create(make_record())
        fresh = make_record(classification='P',
                            transcripts={'NM_000009.1': TranscriptRecord('NM_000009.1', 'c.1A>G')})
        decision = diff_record(fresh, store.get(1001, 'g.100A>G'), T2)
        
        # Fails half way, after the row update and the transcript insert.
        def fail(record_id, accession):
            raise sqlite3.OperationalError("disk I/O error")
        monkeypatch.setattr(store, 'delete_transcript', fail)
        
        with pytest.raises(sqlite3.OperationalError):
            apply_decision(store, decision)
        
        loaded = store.get(1001, 'g.100A>G')
        assert loaded.classification == 'LB'
        assert list(loaded.transcripts) == ['NM_000001.1']
    
    def test_create(self, store):
        apply_decision(store, diff_record(make_record(), None, T1))
        assert store.get(1001, 'g.100A>G') is not None


class TestRenormalization:
    """Test cases for plan_renormalization."""
    
    def test_record_is_rekeyed(self):
        persisted = {(1001, 'g.100_101insA'): make_record(dna='g.100_101insA', id=1, type='ins')}
        corrected = {'NC_000001.10:g.100_101insA': 'NC_000001.10:g.101dup'}
        
        records, decisions = plan_renormalization(persisted, 'NC_000001.10', corrected.get, T2)
        
        assert list(records) == [(1001, 'g.101dup')]
        moved = records[(1001, 'g.101dup')]
        assert (moved.position_start, moved.position_end, moved.type) == (101, 101, 'dup')
        assert len(decisions) == 1
        assert decisions[0].action == SyncAction.UPDATE
        assert decisions[0].fields['dna'] == 'g.101dup'
    
    def test_stale_duplicate_is_hidden(self):
        persisted = {
            (1001, 'g.100_101insA'): make_record(dna='g.100_101insA', id=1),
            (1001, 'g.101dup'): make_record(dna='g.101dup', id=2),
        }
        corrected = {'NC_000001.10:g.100_101insA': 'NC_000001.10:g.101dup'}
        
        records, decisions = plan_renormalization(persisted, 'NC_000001.10', corrected.get, T2)
        
        assert list(records) == [(1001, 'g.101dup')]
        assert records[(1001, 'g.101dup')].id == 2
        assert [d.action for d in decisions] == [SyncAction.TOMBSTONE]
        assert decisions[0].fields['status'] == 'hidden'
    
    def test_freshly_reported_key_is_not_moved(self):
        persisted = {
            (1001, 'g.100_101insA'): make_record(dna='g.100_101insA', id=1),
            (1001, 'g.101dup'): make_record(dna='g.101dup', id=2),
        }
        corrected = {'NC_000001.10:g.100_101insA': 'NC_000001.10:g.101dup'}
        
        records, decisions = plan_renormalization(persisted, 'NC_000001.10', corrected.get, T2,
                                                  fresh_keys=[(1001, 'g.100_101insA')])
        
        assert records == persisted
        assert decisions == []
    
    def test_unknown_descriptions_are_left_alone(self):
        persisted = {(1001, 'g.100A>G'): make_record(id=1)}
        
        records, decisions = plan_renormalization(persisted, 'NC_000001.10', lambda key: None, T2)
        
        assert records == persisted
        assert decisions == []


class TestSynchronizer:
    """Test cases for whole-chromosome synchronization."""
    
    ACCOUNTS = {'amc': 1001, 'umcg': 1002}
    
    @pytest.fixture
    def store(self):
        store = SQLiteVariantStore()
        yield store
        store.close()
    
    @pytest.fixture
    def group(self):
        group = GroupedVariant('1', 'NC_000001.10', 'g.100A>G',
                               cdnas=['NM_000001.1:c.10A>G'], source_ids=['abc'],
                               resolved={'amc': 'LB', 'umcg': 'B'},
                               status=ConsensusStatus.CONSENSUS)
        return group
    
    def _fresh(self, group, accounts=None):
        transcripts = [TranscriptRecord('NM_000001.1', 'c.10A>G', 'r.(?)', 'p.(Lys4Glu)')]
        records = build_fresh_records(group, transcripts, accounts or self.ACCOUNTS)
        return {record.key: record for record in records}
    
    def test_build_fresh_records(self, group):
        fresh = self._fresh(group)
        
        assert sorted(fresh) == [(1001, 'g.100A>G'), (1002, 'g.100A>G')]
        record = fresh[(1002, 'g.100A>G')]
        assert record.classification == 'B'
        assert record.consensus == 'consensus'
        assert record.published_as == 'NM_000001.1:c.10A>G'
        assert record.audit['ids'] == ['abc']
    
    def test_second_identical_run_changes_nothing(self, store, group):
        Synchronizer(store, self.ACCOUNTS, 'hg19', T1).sync_chromosome('1', self._fresh(group))
        before = store.get(1001, 'g.100A>G')
        
        stats = Synchronizer(store, self.ACCOUNTS, 'hg19', T2).sync_chromosome('1', self._fresh(group))
        
        assert stats.to_dict() == {'created': 0, 'updated': 0, 'skipped': 2, 'tombstoned': 0, 'renormalized': 0}
        assert store.get(1001, 'g.100A>G') == before
    
    def test_missing_variant_is_tombstoned_once(self, store, group):
        Synchronizer(store, self.ACCOUNTS, 'hg19', T1).sync_chromosome('1', self._fresh(group))
        
        first = Synchronizer(store, self.ACCOUNTS, 'hg19', T2, delete_missing=True).sync_chromosome('1', {})
        second = Synchronizer(store, self.ACCOUNTS, 'hg19', '2024-10-01 10:00:00',
                              delete_missing=True).sync_chromosome('1', {})
        
        assert first.tombstoned == 2
        assert second.tombstoned == 0
        record = store.get(1001, 'g.100A>G')
        assert record.status == 'hidden'
        assert list(record.audit['updates']) == [T2]
    
    def test_other_accounts_are_untouched(self, store, group):
        store.create(make_record(account=2000))
        
        Synchronizer(store, self.ACCOUNTS, 'hg19', T1, delete_missing=True).sync_chromosome('1', {})
        
        assert store.get(2000, 'g.100A>G').status == 'public'
    
    def test_renormalized_record_is_moved(self, store, group):
        store.create(make_record(dna='g.100_101insA', type='ins', position_end=101))
        corrected = {'NC_000001.10:g.100_101insA': 'NC_000001.10:g.101dup'}
        synchronizer = Synchronizer(store, {'amc': 1001}, 'hg19', T2, corrected_for=corrected.get)
        
        stats = synchronizer.sync_chromosome('1', {})
        
        assert stats.renormalized == 1
        assert store.get(1001, 'g.100_101insA') is None
        assert store.get(1001, 'g.101dup').type == 'dup'
    
    def test_renormalization_keeps_freshly_reported_record(self, store, group):
        store.create(make_record(dna='g.100_101insA', type='ins', position_end=101))
        store.create(make_record(dna='g.101dup', type='dup', position_start=101, position_end=101))
        corrected = {'NC_000001.10:g.100_101insA': 'NC_000001.10:g.101dup'}
        fresh = make_record(dna='g.100_101insA', type='ins', position_end=101)
        synchronizer = Synchronizer(store, {'amc': 1001}, 'hg19', T2, corrected_for=corrected.get)
        
        stats = synchronizer.sync_chromosome('1', {fresh.key: fresh})
        
        assert stats.created == 0
        assert stats.renormalized == 0
        assert stats.tombstoned == 0
        assert store.get(1001, 'g.100_101insA').status == 'public'
        assert store.get(1001, 'g.101dup').status == 'public'
    
    def test_chromosome_order(self, store, group):
        store.create(make_record(dna='g.5A>G', chromosome='X'))
        synchronizer = Synchronizer(store, self.ACCOUNTS, 'hg19', T1)
        
        assert synchronizer.chromosomes(['10', '2']) == ['2', '10', 'X']
