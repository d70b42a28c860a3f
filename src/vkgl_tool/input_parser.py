"""Reading and writing of VKGL consensus data files.

A consensus file is tab separated with one header line. Next to the fixed
variant columns, every center contributes a classification column ``X`` and
a ``X_link`` column.
"""

import csv
import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .consensus import stable_variant_id
from .descriptor import descriptor_to_vcf, normalize_chromosome
from .error_handler import (
    FieldCountError, HeaderError, MalformedInputError, MissingHeaderError, VKGLError,
    EXIT_ERROR_INPUT_CANT_OPEN, EXIT_ERROR_INPUT_NOT_A_FILE
)
from .models import VariantRecord

logger = logging.getLogger(__name__)

MANDATORY_COLUMNS = ('id', 'chromosome', 'start', 'ref', 'alt', 'gene', 'transcript', 'c_dna', 'protein')
IGNORED_COLUMNS = ('stop', 'consensus_classification', 'matches', 'disease', 'comments', 'history')
CENTER_SUFFIX = '_link'
# Genomic description column of files that carry no VCF fields.
GENOMIC_COLUMN = 'gdna_normalized'

_TRANSCRIPT_ACCESSION = re.compile(r'^[NX][MR]_[0-9]+\.[0-9]+$')


class InputFileError(VKGLError):
    """The input file does not exist or cannot be opened."""
    
    exit_code = EXIT_ERROR_INPUT_CANT_OPEN


@dataclass
class ConsensusFile:
    """Parsed contents of a consensus data file."""
    path: Path
    headers: List[str]
    centers: List[str]
    records: List[VariantRecord] = field(default_factory=list)


def _clean(value: str) -> str:
    return value.strip().strip('"').strip()


def parse_header(line: str, allow_genomic: bool = False) -> Tuple[List[str], List[str]]:
    """
    Split and check a header line.
    
    Args:
        line: The header line
        allow_genomic: Accept the genomic description column
    
    Returns:
        The lowercased headers and the center names, in header order
    
    Raises:
        HeaderError: A mandatory column is missing or a column is not recognized
    """
    headers = [_clean(header).lower() for header in line.rstrip('\r\n').split('\t')]
    missing = [column for column in MANDATORY_COLUMNS if column not in headers]
    if missing:
        raise HeaderError(
            f"File does not conform to format; missing column{'' if len(missing) == 1 else 's'}: "
            f"{', '.join(missing)}.")
    
    known = set(MANDATORY_COLUMNS) | set(IGNORED_COLUMNS)
    if allow_genomic:
        known.add(GENOMIC_COLUMN)
    remaining = sorted(set(headers) - known)
    centers = []
    for header in remaining:
        if header + CENTER_SUFFIX in remaining:
            centers.append(header)
        elif header.endswith(CENTER_SUFFIX) and header[:-len(CENTER_SUFFIX)] in centers:
            continue
        else:
            raise HeaderError(f"File header contains unrecognized column: {header}.")
    
    centers.sort(key=headers.index)
    return headers, centers


class ConsensusFileReader:
    """Reads consensus data files into VariantRecords."""
    
    # Common encodings to try
    ENCODINGS = ['utf-8', 'utf-8-sig', 'latin-1']
    
    def __init__(self, allow_genomic: bool = False):
        """
        Args:
            allow_genomic: Accept rows that only give a genomic description in
                the ``gdna_normalized`` column; their position is left at 0
        """
        self.allow_genomic = allow_genomic
    
    def read(self, file_path: Union[str, Path]) -> ConsensusFile:
        """
        Read a whole consensus file.
        
        Raises:
            InputFileError: If the file cannot be opened
            MalformedInputError: If the header or any line is malformed
        """
        path = Path(file_path)
        headers: List[str] = []
        centers: List[str] = []
        records = []
        for item in self.iter_file(path):
            if isinstance(item, tuple):
                headers, centers = item
            else:
                records.append(item)
        logger.info(f"Read {len(records)} variants for {len(centers)} centers from {path}")
        return ConsensusFile(path, headers, centers, records)
    
    def iter_file(self, path: Path) -> Iterator[Union[Tuple[List[str], List[str]], VariantRecord]]:
        """Yield the (headers, centers) tuple first, then one record per data line."""
        if not path.exists():
            raise InputFileError(f"Input file not found: {path}")
        if not path.is_file():
            error = InputFileError(f"Input is not a file: {path}")
            error.exit_code = EXIT_ERROR_INPUT_NOT_A_FILE
            raise error
        
        encoding = self._detect_encoding(path)
        try:
            with open(path, 'r', encoding=encoding, newline='') as f:
                headers: Optional[List[str]] = None
                centers: List[str] = []
                for line_number, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    if headers is None:
                        headers, centers = parse_header(line, self.allow_genomic)
                        yield headers, centers
                        continue
                    yield self.parse_line(line, line_number, headers, centers)
        except OSError as e:
            raise InputFileError(f"Can not open file {path}: {e}") from e
        
        if headers is None:
            raise MissingHeaderError("File does not conform to format; can not find headers.")
    
    @staticmethod
    def parse_line(line: str, line_number: int, headers: List[str], centers: List[str]) -> VariantRecord:
        values = [_clean(value) for value in line.rstrip('\r\n').split('\t')]
        if len(values) > len(headers):
            raise FieldCountError(
                f"Line {line_number} has {len(values)} fields, while the header has {len(headers)}.")
        values += [''] * (len(headers) - len(values))
        row = dict(zip(headers, values))
        genomic = row.get(GENOMIC_COLUMN, '')
        
        try:
            position = int(row['start']) if row['start'] or not genomic else 0
        except ValueError:
            raise MalformedInputError(f"Line {line_number}: position {row['start']!r} is not a number.")
        
        return VariantRecord(
            source_id=row['id'],
            chromosome=normalize_chromosome(row['chromosome']) if row['chromosome'] or not genomic else '',
            position=position,
            ref=row['ref'],
            alt=row['alt'],
            gene=row['gene'],
            transcript=row['transcript'],
            c_dna=row['c_dna'],
            protein=row['protein'],
            classifications={center: row[center] for center in centers if row[center]},
            links={center: row[center + CENTER_SUFFIX] for center in centers if row[center + CENTER_SUFFIX]},
            line=line_number,
            genomic=genomic,
        )
    
    def _detect_encoding(self, path: Path) -> str:
        """Detect file encoding."""
        with open(path, 'rb') as f:
            if f.read(3) == b'\xef\xbb\xbf':  # UTF-8 BOM
                return 'utf-8-sig'
        
        for encoding in self.ENCODINGS:
            try:
                with open(path, 'r', encoding=encoding) as f:
                    f.read()
                return encoding
            except UnicodeError:
                continue
        return 'utf-8'


class ConsensusFileWriter:
    """Merges records of several files into one consensus data file."""
    
    def __init__(self):
        self.centers: List[str] = []
        self._rows: Dict[Tuple[str, ...], List[Dict[str, str]]] = {}
        self._proteins: Dict[Tuple[str, ...], List[str]] = {}
        self.duplicate_count = 0
        self.conflict_count = 0
    
    def add_records(self, records: Iterable[VariantRecord]) -> None:
        for record in records:
            if record.genomic and not record.position:
                self.add_genomic(record, record.genomic)
            else:
                self.add(record)
    
    def add_genomic(self, record: VariantRecord, descriptor: str) -> None:
        """Add a record known only by its genomic description; REF and ALT are padded with N."""
        try:
            vcf = descriptor_to_vcf(descriptor)
        except ValueError as e:
            raise MalformedInputError(f"Line {record.line}: could not generate VCF fields: {e}") from e
        record = replace(record, position=vcf['pos'], ref=vcf['ref'], alt=vcf['alt'])
        if vcf['chr']:
            record.chromosome = vcf['chr']
        self.add(record)
    
    def add(self, record: VariantRecord) -> None:
        """
        Add one record.
        
        A center reporting the same variant twice with the same classification
        is merged; with a different classification a second line is written,
        so the conflict stays visible downstream.
        """
        key = (record.chromosome, str(record.position), record.ref, record.alt,
               record.gene, record.transcript, record.c_dna)
        rows = self._rows.setdefault(key, [])
        proteins = self._proteins.setdefault(key, [])
        if record.protein and record.protein not in proteins:
            proteins.append(record.protein)
        
        for center, classification in record.classifications.items():
            if center not in self.centers:
                self.centers.append(center)
            link = record.links.get(center, '')
            for row in rows:
                if center not in row:
                    row[center] = classification
                    row[center + CENTER_SUFFIX] = link
                    break
                if row[center] == classification:
                    self.duplicate_count += 1
                    logger.debug(f"Center {center} has two entries for variant {'|'.join(key)}")
                    break
            else:
                if rows:
                    self.conflict_count += 1
                    logger.warning(f"Internal conflict in center {center} for variant {'|'.join(key)}")
                rows.append({center: classification, center + CENTER_SUFFIX: link})
    
    def write(self, path: Union[str, Path]) -> int:
        """Write the merged rows; returns the number of data lines."""
        path = Path(path)
        columns = list(MANDATORY_COLUMNS)
        for center in self.centers:
            columns += [center, center + CENTER_SUFFIX]
        
        lines = 0
        with open(path, 'w', encoding='utf-8', newline='') as f:
            writer = csv.writer(f, delimiter='\t', lineterminator='\r\n', quoting=csv.QUOTE_NONE,
                                escapechar='\\')
            writer.writerow(columns)
            for key, rows in self._rows.items():
                chromosome, position, ref, alt, gene, transcript, c_dna = key
                variant_id = stable_variant_id(chromosome, int(position), ref, alt, gene)
                protein = ', '.join(self._proteins[key])
                for row in rows:
                    line = [variant_id, chromosome, position, ref, alt, gene, transcript, c_dna, protein]
                    for center in self.centers:
                        line += [row.get(center, ''), row.get(center + CENTER_SUFFIX, '')]
                    writer.writerow(line)
                    lines += 1
        logger.info(f"Wrote {lines} lines for {len(self.centers)} centers to {path}")
        return lines


def read_transcript_file(file_path: Union[str, Path]) -> List[Tuple[str, str]]:
    """
    Read a list of transcripts the variant store can hold mappings for.
    
    One transcript per line: a versioned RefSeq accession, optionally followed
    by a tab and its gene symbol. Blank lines, ``#`` comments and a header line
    starting with ``accession`` or ``transcript`` are skipped.
    
    Returns:
        (accession, gene) pairs in file order
    
    Raises:
        InputFileError: If the file cannot be opened
        MalformedInputError: If a line holds no valid accession
    """
    path = Path(file_path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            lines = f.read().splitlines()
    except OSError as e:
        raise InputFileError(f"Can not open file {path}: {e}") from e
    
    transcripts = []
    for line_number, line in enumerate(lines, start=1):
        if not line.strip() or line.startswith('#'):
            continue
        fields = [_clean(value) for value in line.split('\t')]
        if line_number == 1 and fields[0].lower() in ('accession', 'transcript'):
            continue
        if not _TRANSCRIPT_ACCESSION.match(fields[0]):
            raise MalformedInputError(f"Line {line_number}: {fields[0]!r} is not a versioned transcript accession.")
        transcripts.append((fields[0], fields[1] if len(fields) > 1 else ''))
    logger.info(f"Read {len(transcripts)} transcripts from {path}")
    return transcripts
