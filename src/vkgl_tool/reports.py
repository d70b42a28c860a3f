"""Tab-separated run reports for the curators."""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd

from .error_handler import ErrorContext, ErrorType
from .models import ConsensusStatus, GroupedVariant

logger = logging.getLogger(__name__)

ERROR_COLUMNS = ['chromosome', 'position', 'ref', 'alt', 'variant', 'corrected', 'code', 'message']
CONFLICT_COLUMNS = ['chromosome', 'variant', 'center', 'classifications', 'ids']

# Warnings that cost the run a variant.
LOST_VARIANT_TYPES = (ErrorType.ORACLE_REJECTED, ErrorType.ORACLE_UNAVAILABLE)


def _chromosome_rank(chromosome: str) -> int:
    order = {'X': 23, 'Y': 24, 'M': 25}
    return int(chromosome) if str(chromosome).isdigit() else order.get(str(chromosome), 99)


def errors_frame(history: Iterable[ErrorContext]) -> pd.DataFrame:
    """Lost variants, sorted by chromosome and position."""
    rows = []
    for context in history:
        if context.error_type not in LOST_VARIANT_TYPES:
            continue
        row = {column: context.details.get(column, '') for column in ERROR_COLUMNS}
        row['variant'] = row['variant'] or context.variant or ''
        row['message'] = row['message'] or context.message
        rows.append(row)
    
    frame = pd.DataFrame(rows, columns=ERROR_COLUMNS)
    if frame.empty:
        return frame
    frame['_rank'] = frame['chromosome'].map(_chromosome_rank)
    frame['_position'] = pd.to_numeric(frame['position'], errors='coerce')
    frame = frame.sort_values(['_rank', '_position'], kind='mergesort')
    return frame.drop(columns=['_rank', '_position']).reset_index(drop=True)


def error_code_summary(errors: pd.DataFrame) -> pd.Series:
    """Number of lost variants per error code, least frequent first."""
    if errors.empty:
        return pd.Series(dtype='int64', name='count')
    codes = errors['code'].astype(str).str.split(',').explode().str.strip()
    codes = codes[codes != '']
    return codes.value_counts(ascending=True).rename('count')


def internal_conflicts_frame(groups: Iterable[GroupedVariant]) -> pd.DataFrame:
    rows = []
    for group in groups:
        for center, values in sorted(group.conflicts.items()):
            rows.append({
                'chromosome': group.chromosome,
                'variant': group.key,
                'center': center,
                'classifications': ', '.join(values),
                'ids': ';'.join(group.source_ids),
            })
    return pd.DataFrame(rows, columns=CONFLICT_COLUMNS)


def opposites_frame(groups: Iterable[GroupedVariant], centers: Sequence[str]) -> pd.DataFrame:
    """Variants classified benign by one center and pathogenic by another."""
    columns = ['chromosome', 'variant', 'gene', 'published_as'] + list(centers)
    rows = []
    for group in groups:
        if group.status != ConsensusStatus.OPPOSITE:
            continue
        row = {
            'chromosome': group.chromosome,
            'variant': group.key,
            'gene': ';'.join(group.genes),
            'published_as': group.published_as,
        }
        for center in centers:
            row[center] = group.resolved.get(center, '')
        rows.append(row)
    return pd.DataFrame(rows, columns=columns)


class RunReporter:
    """Writes the report files of one run, named after the run date."""
    
    def __init__(self, report_dir: Union[str, Path], run_date: str):
        self.report_dir = Path(report_dir)
        self.run_date = run_date
    
    def path_for(self, name: str) -> Path:
        return self.report_dir / f"vkgl_{name}_{self.run_date}.tsv"
    
    def _write(self, name: str, frame: pd.DataFrame) -> Path:
        self.report_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(name)
        frame.to_csv(path, sep='\t', index=False)
        logger.info(f"Created {path.name} ({len(frame)} lines).")
        return path
    
    def write_all(self,
                  groups: List[GroupedVariant],
                  history: Iterable[ErrorContext],
                  centers: Optional[Sequence[str]] = None) -> Dict[str, Path]:
        """Write the internal conflict, error and opposite reports."""
        if centers is None:
            centers = sorted({center for group in groups for center in group.resolved})
        
        errors = errors_frame(history)
        summary = error_code_summary(errors)
        if not summary.empty:
            logger.info("Summary of errors:\n" + summary.to_string())
        
        return {
            'internal_conflicts': self._write('internal_conflicts', internal_conflicts_frame(groups)),
            'errors': self._write('errors', errors),
            'error_summary': self._write('error_summary', summary.rename_axis('code').reset_index()),
            'opposites': self._write('opposites', opposites_frame(groups, centers)),
        }
