"""Persisted variant store."""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .error_handler import SettingsError
from .models import PersistedRecord, TranscriptRecord

logger = logging.getLogger(__name__)

# Fields of a variant row that a sync may change.
UPDATABLE_FIELDS = (
    'dna', 'position_start', 'position_end', 'type', 'classification', 'consensus',
    'published_as', 'status', 'remarks', 'audit',
)


class VariantStore(ABC):
    """Stores one row per (account, genomic description) plus transcript child rows."""
    
    @abstractmethod
    def refseq_build(self) -> Optional[str]:
        """Genome build of the stored descriptions, None for a new store."""
    
    @abstractmethod
    def accounts(self) -> Set[int]:
        """Account ids that may own rows."""
    
    @abstractmethod
    def initialize(self, build: str, accounts: Mapping[str, int]) -> None:
        """Record the genome build and register accounts (name -> id)."""
    
    @abstractmethod
    def known_transcripts(self) -> Set[str]:
        """Versioned transcript accessions the store can hold mappings for."""
    
    @abstractmethod
    def records_for(self, accounts: Sequence[int], chromosome: str) -> Dict[Tuple[int, str], PersistedRecord]:
        """All rows of the given accounts on one chromosome, keyed by (account, dna)."""
    
    @abstractmethod
    def chromosomes_for(self, accounts: Sequence[int]) -> List[str]:
        """Chromosomes that hold rows of the given accounts."""
    
    @abstractmethod
    def create(self, record: PersistedRecord) -> int:
        """Insert a row and its transcript rows, returning the new id."""
    
    @abstractmethod
    def update(self, record_id: int, fields: Dict[str, Any]) -> None:
        """Change fields of an existing row."""
    
    @abstractmethod
    def save_transcript(self, record_id: int, transcript: TranscriptRecord) -> None:
        """Insert or replace one transcript row."""
    
    @abstractmethod
    def delete_transcript(self, record_id: int, accession: str) -> None:
        """Remove one transcript row."""
    
    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Apply every write in the block, or none of them."""


class SQLiteVariantStore(VariantStore):
    """Variant store in a SQLite database file."""
    
    def __init__(self, path: Union[str, Path] = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are opened explicitly.
        self.conn = sqlite3.connect(self.path, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._in_transaction = False
        self._create_tables()
    
    def _create_tables(self) -> None:
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS settings (
                name TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL DEFAULT ''
            );
            CREATE TABLE IF NOT EXISTS transcripts (
                accession TEXT PRIMARY KEY,
                gene TEXT NOT NULL DEFAULT ''
            );
            CREATE TABLE IF NOT EXISTS variants (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account INTEGER NOT NULL,
                chromosome TEXT NOT NULL,
                dna TEXT NOT NULL,
                position_start INTEGER NOT NULL,
                position_end INTEGER NOT NULL,
                type TEXT NOT NULL,
                classification TEXT NOT NULL,
                consensus TEXT NOT NULL,
                published_as TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'public',
                remarks TEXT NOT NULL DEFAULT '',
                audit TEXT NOT NULL DEFAULT '{}',
                UNIQUE (account, dna)
            );
            CREATE INDEX IF NOT EXISTS variants_chromosome ON variants (chromosome, account);
            CREATE TABLE IF NOT EXISTS variant_transcripts (
                variant_id INTEGER NOT NULL REFERENCES variants (id),
                accession TEXT NOT NULL,
                dna TEXT NOT NULL,
                rna TEXT NOT NULL,
                protein TEXT NOT NULL,
                PRIMARY KEY (variant_id, accession)
            );
        """)
    
    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._in_transaction:
            raise RuntimeError("Nested transactions are not supported.")
        self._in_transaction = True
        self.conn.execute("BEGIN")
        try:
            yield
        except Exception:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")
        finally:
            self._in_transaction = False
    
    def refseq_build(self) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM settings WHERE name = 'refseq_build'").fetchone()
        return row['value'] if row else None
    
    def accounts(self) -> Set[int]:
        return {row['id'] for row in self.conn.execute("SELECT id FROM accounts")}
    
    def initialize(self, build: str, accounts: Mapping[str, int]) -> None:
        """
        Record the genome build and register accounts.
        
        Raises:
            SettingsError: The store already holds data of another build
        """
        stored = self.refseq_build()
        if stored is not None and stored != build:
            raise SettingsError(
                f"Variant store holds {stored} variants; it cannot be used for {build} data.")
        with self.transaction():
            if stored is None:
                self.conn.execute("INSERT INTO settings (name, value) VALUES ('refseq_build', ?)", (build,))
                logger.info(f"Variant store initialized for {build}")
            for name, account in sorted(accounts.items()):
                self.conn.execute("INSERT OR IGNORE INTO accounts (id, name) VALUES (?, ?)", (account, name))
    
    def add_transcripts(self, accessions: Iterable[str], gene: str = "") -> int:
        return self.register_transcripts((accession, gene) for accession in accessions)
    
    def register_transcripts(self, transcripts: Iterable[Tuple[str, str]]) -> int:
        """Add (accession, gene) pairs; returns how many were new."""
        before = self.conn.total_changes
        self.conn.executemany(
            "INSERT OR IGNORE INTO transcripts (accession, gene) VALUES (?, ?)",
            list(transcripts)
        )
        return self.conn.total_changes - before
    
    def known_transcripts(self) -> Set[str]:
        return {row['accession'] for row in self.conn.execute("SELECT accession FROM transcripts")}
    
    def chromosomes_for(self, accounts: Sequence[int]) -> List[str]:
        if not accounts:
            return []
        placeholders = ', '.join('?' for _ in accounts)
        rows = self.conn.execute(
            f"SELECT DISTINCT chromosome FROM variants WHERE account IN ({placeholders})",
            list(accounts)
        )
        return sorted(row['chromosome'] for row in rows)
    
    def records_for(self, accounts: Sequence[int], chromosome: str) -> Dict[Tuple[int, str], PersistedRecord]:
        if not accounts:
            return {}
        placeholders = ', '.join('?' for _ in accounts)
        rows = self.conn.execute(
            f"SELECT * FROM variants WHERE chromosome = ? AND account IN ({placeholders}) ORDER BY id",
            [chromosome] + list(accounts)
        ).fetchall()
        
        records = {}
        for row in rows:
            record = self._row_to_record(row)
            records[record.key] = record
        if records:
            by_id = {record.id: record for record in records.values()}
            id_placeholders = ', '.join('?' for _ in by_id)
            for row in self.conn.execute(
                    f"SELECT * FROM variant_transcripts WHERE variant_id IN ({id_placeholders})",
                    list(by_id)):
                by_id[row['variant_id']].transcripts[row['accession']] = TranscriptRecord(
                    row['accession'], row['dna'], row['rna'], row['protein'])
        return records
    
    def get(self, account: int, dna: str) -> Optional[PersistedRecord]:
        """Fetch a single row with its transcripts."""
        row = self.conn.execute(
            "SELECT * FROM variants WHERE account = ? AND dna = ?", (account, dna)
        ).fetchone()
        if row is None:
            return None
        record = self._row_to_record(row)
        for transcript in self.conn.execute(
                "SELECT * FROM variant_transcripts WHERE variant_id = ?", (record.id,)):
            record.transcripts[transcript['accession']] = TranscriptRecord(
                transcript['accession'], transcript['dna'], transcript['rna'], transcript['protein'])
        return record
    
    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> PersistedRecord:
        audit = json.loads(row['audit'] or '{}')
        audit.setdefault('ids', [])
        audit.setdefault('updates', {})
        return PersistedRecord(
            account=row['account'],
            chromosome=row['chromosome'],
            dna=row['dna'],
            position_start=row['position_start'],
            position_end=row['position_end'],
            type=row['type'],
            classification=row['classification'],
            consensus=row['consensus'],
            published_as=row['published_as'],
            status=row['status'],
            remarks=row['remarks'],
            audit=audit,
            id=row['id'],
        )
    
    def create(self, record: PersistedRecord) -> int:
        cursor = self.conn.execute("""
            INSERT INTO variants
            (account, chromosome, dna, position_start, position_end, type, classification,
             consensus, published_as, status, remarks, audit)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.account, record.chromosome, record.dna, record.position_start,
            record.position_end, record.type, record.classification, record.consensus,
            record.published_as, record.status, record.remarks, json.dumps(record.audit)
        ))
        record.id = cursor.lastrowid
        for transcript in record.transcripts.values():
            self.save_transcript(record.id, transcript)
        return record.id
    
    def update(self, record_id: int, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        values = [json.dumps(value) if name == 'audit' else value for name, value in fields.items()]
        assignments = ', '.join(f"{name} = ?" for name in fields)
        self.conn.execute(f"UPDATE variants SET {assignments} WHERE id = ?", values + [record_id])
    
    def save_transcript(self, record_id: int, transcript: TranscriptRecord) -> None:
        self.conn.execute("""
            INSERT OR REPLACE INTO variant_transcripts (variant_id, accession, dna, rna, protein)
            VALUES (?, ?, ?, ?, ?)
        """, (record_id, transcript.accession, transcript.dna, transcript.rna, transcript.protein))
    
    def delete_transcript(self, record_id: int, accession: str) -> None:
        self.conn.execute(
            "DELETE FROM variant_transcripts WHERE variant_id = ? AND accession = ?",
            (record_id, accession)
        )
    
    def close(self) -> None:
        self.conn.close()
