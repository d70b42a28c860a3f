"""Error taxonomy, exit codes and warning accounting for a pipeline run."""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# Exit codes, kept in the 64-113 range reserved for user-defined codes.
EXIT_OK = 0
EXIT_WARNINGS_OCCURRED = 64
EXIT_ERROR_ARGS_INSUFFICIENT = 65
EXIT_ERROR_ARGS_NOT_UNDERSTOOD = 66
EXIT_ERROR_INPUT_NOT_A_FILE = 67
EXIT_ERROR_INPUT_UNREADABLE = 68
EXIT_ERROR_INPUT_CANT_OPEN = 69
EXIT_ERROR_HEADER_FIELDS_NOT_FOUND = 70
EXIT_ERROR_HEADER_FIELDS_INCORRECT = 71
EXIT_ERROR_SETTINGS_CANT_CREATE = 72
EXIT_ERROR_SETTINGS_UNREADABLE = 73
EXIT_ERROR_SETTINGS_CANT_UPDATE = 74
EXIT_ERROR_SETTINGS_INCORRECT = 75
EXIT_ERROR_CONNECTION_PROBLEM = 76
EXIT_ERROR_CACHE_CANT_CREATE = 77
EXIT_ERROR_CACHE_UNREADABLE = 78
EXIT_ERROR_CACHE_CANT_UPDATE = 79
EXIT_ERROR_DATA_FIELD_COUNT_INCORRECT = 80
EXIT_ERROR_DATA_CONTENT_ERROR = 81


class VKGLError(Exception):
    """Base class for all errors raised by the tool."""
    
    exit_code = EXIT_ERROR_DATA_CONTENT_ERROR


class MalformedInputError(VKGLError):
    """Input that cannot be interpreted; aborts the whole run."""


class HeaderError(MalformedInputError):
    """The input file header is missing or contains unknown columns."""
    
    exit_code = EXIT_ERROR_HEADER_FIELDS_INCORRECT


class MissingHeaderError(HeaderError):
    """The input file has no header line at all."""
    
    exit_code = EXIT_ERROR_HEADER_FIELDS_NOT_FOUND


class FieldCountError(MalformedInputError):
    """A data line has more fields than the header."""
    
    exit_code = EXIT_ERROR_DATA_FIELD_COUNT_INCORRECT


class UnknownChromosomeError(MalformedInputError):
    """Chromosome (or genome build) has no reference sequence."""


class DescriptorParseError(MalformedInputError):
    """A variant description could not be parsed."""


class ClassificationError(MalformedInputError):
    """A laboratory classification could not be recognized."""


class EquivalentAlleleError(VKGLError):
    """REF and ALT describe the same sequence; there is no variant."""


class SettingsError(VKGLError):
    """Settings are missing, unreadable or inconsistent."""
    
    exit_code = EXIT_ERROR_SETTINGS_INCORRECT


class CacheFileError(VKGLError):
    """A cache file cannot be read or appended to."""
    
    exit_code = EXIT_ERROR_CACHE_UNREADABLE


class OracleError(VKGLError):
    """A normalization service rejected the variant with an error code."""
    
    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
    
    def to_cache_payload(self) -> Dict[str, str]:
        return {self.code: self.message}


class OracleUnavailableError(VKGLError):
    """A normalization service could not be reached or answered garbage."""
    
    exit_code = EXIT_ERROR_CONNECTION_PROBLEM


class ErrorType(Enum):
    """Warning categories that do not abort a run."""
    ORACLE_REJECTED = "oracle_rejected"
    ORACLE_UNAVAILABLE = "oracle_unavailable"
    UNMAPPED = "unmapped"
    INTERNAL_CONFLICT = "internal_conflict"
    ORACLE_DISAGREEMENT = "oracle_disagreement"
    NO_VARIANT = "no_variant"
    MALFORMED_CACHE_LINE = "malformed_cache_line"
    UNRESOLVED_CLASSIFICATION = "unresolved_classification"


@dataclass
class ErrorContext:
    """One warning as reported during a run."""
    error_type: ErrorType
    message: str
    timestamp: float
    progress: Optional[float] = None
    variant: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    
    def format(self) -> str:
        prefix = f"[{self.progress:5.1f}%] " if self.progress is not None else ""
        text = f"{prefix}Warning: {self.message}"
        if self.variant:
            text += f" ({self.variant})"
        return text


class RunErrorHandler:
    """Counts and logs the warnings of one run.
    
    Warnings never abort the run, but a non-zero count makes the run exit with
    EXIT_WARNINGS_OCCURRED. The history is kept for the run reports.
    """
    
    def __init__(self, log: Optional[logging.Logger] = None):
        self.logger = log or logger
        self.history: List[ErrorContext] = []
        self.progress: Optional[float] = None
    
    def set_progress(self, done: int, total: int) -> None:
        """Remember the completion percentage used to prefix warnings."""
        self.progress = (done * 100.0 / total) if total else 100.0
    
    def warn(self,
             error_type: ErrorType,
             message: str,
             variant: Optional[str] = None,
             **details) -> ErrorContext:
        context = ErrorContext(
            error_type=error_type,
            message=message,
            timestamp=time.time(),
            progress=self.progress,
            variant=variant,
            details=details
        )
        self.history.append(context)
        self.logger.warning(context.format())
        return context
    
    @property
    def warning_count(self) -> int:
        return len(self.history)
    
    def by_type(self, error_type: ErrorType) -> List[ErrorContext]:
        return [context for context in self.history if context.error_type == error_type]
    
    def get_error_summary(self) -> Dict[str, Any]:
        """Get counts per warning type."""
        by_type: Dict[str, int] = {}
        for context in self.history:
            by_type[context.error_type.value] = by_type.get(context.error_type.value, 0) + 1
        return {
            'total_warnings': len(self.history),
            'by_type': by_type,
        }
    
    def exit_code(self) -> int:
        return EXIT_WARNINGS_OCCURRED if self.history else EXIT_OK
