"""HTTP clients for the external variant normalization services.

Two services are used:

* Mutalyzer, whose ``runMutalyzerLight`` call normalizes a genomic
  description and predicts it on every transcript in the region, and whose
  ``numberConversion`` call converts a genomic description to (unnormalized)
  coordinates on all known transcript versions.
* VariantValidator, used only to cross-check the Mutalyzer results in the
  cache.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import OracleConfig
from .error_handler import OracleError, OracleUnavailableError
from .logging_config import LogTimer
from .rate_limiter import RateLimitConfig, TokenBucket

logger = logging.getLogger(__name__)

# NC_000001.10(DBT_v001):c.1A>G or NC_000001.10(DBT_i001):p.(Met1?)
_PREDICTION_PATTERN = re.compile(
    r'^[^(]+\((?P<gene>[^)]+)_(?P<kind>[vi])(?P<number>[0-9]+)\):(?P<description>[cnp]\..+)$'
)

# Validator messages translated to the error codes of the primary service.
_VALIDATOR_ERROR_CODES = (
    ('does not agree with reference sequence', 'EREF'),
    ('out of range', 'ERANGE'),
    ('outside the boundaries', 'ERANGE'),
    ('syntax', 'ESYNTAX'),
)


def is_noncoding_accession(accession: str) -> bool:
    """NR_ and XR_ transcripts have no protein product."""
    return accession[1:3] == 'R_'


@dataclass
class PrimaryResult:
    """Normalization result of the primary service."""
    corrected: str
    mappings: Dict[str, Dict[str, str]] = field(default_factory=dict)


@dataclass
class ValidatorResult:
    """Cross-check result of the validator service."""
    corrected: Optional[str]
    mappings: Dict[str, Dict[str, str]] = field(default_factory=dict)
    warnings: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)


class OracleClient:
    """Shared session, retry and rate limiting setup for one service."""
    
    name = "oracle"
    
    def __init__(self, base_url: str, config: Optional[OracleConfig] = None):
        self.config = config or OracleConfig()
        self.base_url = base_url.rstrip('/') + '/'
        
        # Setup session with retry logic
        self.session = requests.Session()
        retry_strategy = Retry(
            total=self.config.retry_attempts,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        
        self.rate_limiter = TokenBucket(RateLimitConfig(self.config.rate_limit_per_second))
        self.call_count = 0
    
    def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        """GET a JSON document, raising OracleUnavailableError on any failure."""
        self.rate_limiter.acquire()
        self.call_count += 1
        url = self.base_url + path
        try:
            with LogTimer(f"{self.name} {path.split('?')[0]}", logger):
                response = self.session.get(url, params=params, timeout=self.config.timeout_seconds)
                response.raise_for_status()
                return response.json()
        except requests.RequestException as e:
            raise OracleUnavailableError(f"{self.name} request failed: {e}") from e
        except ValueError as e:
            raise OracleUnavailableError(f"{self.name} returned an unreadable response: {e}") from e
    
    def close(self) -> None:
        self.session.close()


class MutalyzerClient(OracleClient):
    """Primary and secondary normalization service."""
    
    name = "Mutalyzer"
    
    def __init__(self, config: Optional[OracleConfig] = None):
        config = config or OracleConfig()
        super().__init__(config.mutalyzer_url, config)
    
    def run_mutalyzer_light(self, descriptor: str) -> PrimaryResult:
        """Normalize a fully qualified genomic description.
        
        Args:
            descriptor: Description like ``NC_000001.10:g.100387136_100387137insA``
        
        Returns:
            The corrected description and the transcript predictions
        
        Raises:
            OracleError: The service rejected the variant
            OracleUnavailableError: The service could not be used
        """
        data = self._get_json('json/runMutalyzerLight', {'variant': descriptor})
        if not isinstance(data, dict):
            raise OracleUnavailableError(f"Unexpected runMutalyzerLight response for {descriptor}.")
        
        if data.get('errors'):
            for message in data.get('messages') or []:
                code = message.get('errorcode', '')
                if code.startswith('E'):
                    raise OracleError(code, message.get('message', ''))
            raise OracleUnavailableError(f"runMutalyzerLight failed for {descriptor} without an error code.")
        
        corrected = data.get('genomicDescription')
        if not corrected:
            raise OracleUnavailableError(f"runMutalyzerLight returned no description for {descriptor}.")
        
        return PrimaryResult(corrected=corrected, mappings=self._parse_predictions(data))
    
    @staticmethod
    def _parse_predictions(data: Dict[str, Any]) -> Dict[str, Dict[str, str]]:
        """Join transcript (vNNN) and protein (iNNN) predictions through the legend."""
        legend = {}
        for entry in data.get('legend') or []:
            if entry.get('name') and entry.get('id'):
                legend[entry['name']] = entry['id']
        
        mappings: Dict[str, Dict[str, str]] = {}
        for description in data.get('transcriptDescriptions') or []:
            match = _PREDICTION_PATTERN.match(description)
            if not match or match.group('kind') != 'v':
                continue
            accession = legend.get(f"{match.group('gene')}_v{match.group('number')}")
            if accession and accession not in mappings:
                mappings[accession] = {'c': match.group('description')}
        
        for description in data.get('proteinDescriptions') or []:
            match = _PREDICTION_PATTERN.match(description)
            if not match or match.group('kind') != 'i':
                continue
            # Isoform iNNN is the product of transcript vNNN.
            accession = legend.get(f"{match.group('gene')}_v{match.group('number')}")
            if accession in mappings and not is_noncoding_accession(accession):
                mappings[accession]['p'] = match.group('description')
        
        return mappings
    
    def number_conversion(self, build: str, descriptor: str) -> List[str]:
        """Convert a genomic description to ``accession:c.`` strings on all transcript versions."""
        data = self._get_json('json/numberConversion', {'build': build, 'variant': descriptor})
        if isinstance(data, dict) and 'faultcode' in data:
            raise OracleUnavailableError(
                f"numberConversion failed for {descriptor}: {data.get('faultstring', data['faultcode'])}")
        if not isinstance(data, list):
            raise OracleUnavailableError(f"Unexpected numberConversion response for {descriptor}.")
        return [str(item) for item in data]


class VariantValidatorClient(OracleClient):
    """Independent validator, used to verify cached normalizations."""
    
    name = "VariantValidator"
    
    def __init__(self, config: Optional[OracleConfig] = None):
        config = config or OracleConfig()
        super().__init__(config.variant_validator_url, config)
    
    def verify_genomic(self, build: str, descriptor: str) -> ValidatorResult:
        """Validate a genomic description and collect its transcript predictions."""
        path = (f"VariantValidator/variantvalidator/{quote(build)}/"
                f"{quote(descriptor, safe='')}/all")
        data = self._get_json(path, {'content-type': 'application/json'})
        if not isinstance(data, dict):
            raise OracleUnavailableError(f"Unexpected VariantValidator response for {descriptor}.")
        return self._parse_validation(build, data)
    
    @staticmethod
    def _parse_validation(build: str, data: Dict[str, Any]) -> ValidatorResult:
        result = ValidatorResult(corrected=None)
        
        for key, entry in data.items():
            if key in ('flag', 'metadata') or not isinstance(entry, dict):
                continue
            
            for message in entry.get('validation_warnings') or []:
                if data.get('flag') == 'warning':
                    code = 'EVV'
                    for text, known_code in _VALIDATOR_ERROR_CODES:
                        if text in message:
                            code = known_code
                            break
                    result.errors.setdefault(code, message)
                elif 'automapped' not in message.lower() and 'corrected' not in message.lower():
                    result.warnings.setdefault(f"W{len(result.warnings) + 1}", message)
            
            loci = (entry.get('primary_assembly_loci') or {}).get(build.lower()) or {}
            if loci.get('hgvs_genomic_description') and result.corrected is None:
                result.corrected = loci['hgvs_genomic_description']
            
            transcript_variant = entry.get('hgvs_transcript_variant') or ''
            if ':' not in transcript_variant:
                continue
            accession, dna = transcript_variant.split(':', 1)
            mapping = {'c': dna}
            protein = (entry.get('hgvs_predicted_protein_consequence') or {}).get('tlr') or ''
            if ':' in protein and not is_noncoding_accession(accession):
                mapping['p'] = protein.split(':', 1)[1]
            result.mappings[accession] = mapping
        
        return result
