"""Configuration management for the VKGL consensus tool."""

import json
import os
from dataclasses import dataclass, asdict, field
from datetime import date
from pathlib import Path
from typing import Dict, Optional

from .error_handler import SettingsError

SUPPORTED_BUILDS = ('hg19', 'hg38')


@dataclass
class CacheConfig:
    """Locations of the two append-only oracle caches."""
    nc_cache: str = "NC_cache.txt"
    mapping_cache: str = "mapping_cache.txt"


@dataclass
class OracleConfig:
    """Normalization service settings."""
    mutalyzer_url: str = "https://mutalyzer.nl/"
    variant_validator_url: str = "https://rest.variantvalidator.org/"
    retry_attempts: int = 3
    timeout_seconds: int = 60
    rate_limit_per_second: float = 2.0


@dataclass
class StoreConfig:
    """Variant store settings."""
    path: str = "vkgl.sqlite"
    refseq_build: str = "hg19"
    delete_missing: bool = False
    reference_fasta: Optional[str] = None


@dataclass
class OutputConfig:
    """Reporting settings."""
    report_dir: str = "."
    progress_interval_seconds: float = 5.0
    log_dir: Optional[str] = ".vkgl_logs"


@dataclass
class Config:
    """Main configuration container."""
    cache: CacheConfig
    oracle: OracleConfig
    store: StoreConfig
    output: OutputConfig
    centers: Dict[str, int] = field(default_factory=dict)
    
    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            cache=CacheConfig(),
            oracle=OracleConfig(),
            store=StoreConfig(),
            output=OutputConfig()
        )
    
    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON settings file."""
        path = Path(path)
        if not path.exists():
            return cls.default()
        
        try:
            with open(path, 'r') as f:
                data = json.load(f)
            return cls(
                cache=CacheConfig(**data.get('cache', {})),
                oracle=OracleConfig(**data.get('oracle', {})),
                store=StoreConfig(**data.get('store', {})),
                output=OutputConfig(**data.get('output', {})),
                centers={str(k).lower(): int(v) for k, v in data.get('centers', {}).items()}
            )
        except (OSError, ValueError, TypeError) as e:
            raise SettingsError(f"Unreadable settings file {path}: {e}") from e
    
    def to_file(self, path: Path) -> None:
        """Save configuration to a JSON settings file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        
        data = {
            'cache': asdict(self.cache),
            'oracle': asdict(self.oracle),
            'store': asdict(self.store),
            'output': asdict(self.output),
            'centers': dict(sorted(self.centers.items())),
        }
        
        with open(path, 'w') as f:
            json.dump(data, f, indent=2)
    
    def merge_env_vars(self) -> None:
        """Merge environment variables into configuration."""
        if os.getenv('VKGL_REFSEQ_BUILD'):
            self.store.refseq_build = os.getenv('VKGL_REFSEQ_BUILD').lower()
        if os.getenv('VKGL_STORE_PATH'):
            self.store.path = os.getenv('VKGL_STORE_PATH')
        if os.getenv('VKGL_NC_CACHE'):
            self.cache.nc_cache = os.getenv('VKGL_NC_CACHE')
        if os.getenv('VKGL_MAPPING_CACHE'):
            self.cache.mapping_cache = os.getenv('VKGL_MAPPING_CACHE')
        if os.getenv('MUTALYZER_URL'):
            self.oracle.mutalyzer_url = os.getenv('MUTALYZER_URL')
        if os.getenv('VARIANT_VALIDATOR_URL'):
            self.oracle.variant_validator_url = os.getenv('VARIANT_VALIDATOR_URL')
    
    def merge_cli_args(self, **kwargs) -> None:
        """Merge CLI arguments into configuration; None means not given."""
        if kwargs.get('refseq_build'):
            self.store.refseq_build = kwargs['refseq_build'].lower()
        if kwargs.get('store_path'):
            self.store.path = kwargs['store_path']
        if kwargs.get('delete_missing') is not None:
            self.store.delete_missing = kwargs['delete_missing']
        if kwargs.get('reference_fasta'):
            self.store.reference_fasta = kwargs['reference_fasta']
        if kwargs.get('report_dir'):
            self.output.report_dir = kwargs['report_dir']
    
    def validate(self) -> None:
        """Raise SettingsError when the settings cannot be used for a run."""
        if self.store.refseq_build not in SUPPORTED_BUILDS:
            raise SettingsError(
                f"Unsupported genome build {self.store.refseq_build!r}; "
                f"use one of {', '.join(SUPPORTED_BUILDS)}."
            )
        seen: Dict[int, str] = {}
        for center, account in self.centers.items():
            if account <= 0:
                raise SettingsError(f"Center {center} has no store account configured.")
            if account in seen:
                raise SettingsError(
                    f"Centers {seen[account]} and {center} share store account {account}."
                )
            seen[account] = center
    
    def account_for(self, center: str) -> int:
        try:
            return self.centers[center]
        except KeyError:
            raise SettingsError(f"No store account configured for center {center}.") from None


def get_default_config_path() -> Path:
    """Get the settings file path, the first existing one wins."""
    locations = [
        Path('settings.json'),
        Path.home() / '.config' / 'vkgl' / 'settings.json',
    ]
    for path in locations:
        if path.exists():
            return path
    return locations[0]


def create_example_config(path: Optional[Path] = None) -> Path:
    """Create an example settings file."""
    if path is None:
        path = Path('settings.example.json')
    
    config = Config.default()
    config.centers = {
        'amc': 1001,
        'erasmus': 1002,
        'lumc': 1003,
        'nki': 1004,
        'radboud_mumc': 1005,
        'umcg': 1006,
        'umcu': 1007,
        'vumc': 1008,
    }
    config.to_file(path)
    return path


def get_run_date(today: Optional[date] = None) -> str:
    """Label of the quarterly run (January, April, July or October) for a date."""
    today = today or date.today()
    month = ((today.month - 1) // 3) * 3 + 1
    return f"{today.year}-{month:02d}"
