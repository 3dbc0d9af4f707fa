"""Production/test environment detection.

Decides which deployment of the exchange an account targets. Signals, in
priority order:

1. explicit ``environment`` on the credentials      -> high confidence
2. API key matching a known test-key pattern        -> medium confidence
3. account label containing a test-like word        -> low confidence
4. nothing                                          -> production, high confidence

The fallback is production on purpose: an ambiguous account is treated as the
one with real money at stake, so test accounts have to be marked as such.
"""
import re
from enum import Enum
from typing import Iterable, NamedTuple, Pattern, Sequence

from .credentials import Credentials, Environment
from .logging_setup import logger


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Detection(NamedTuple):
    environment: Environment
    confidence: Confidence
    reason: str

    @property
    def is_test(self) -> bool:
        return self.environment is Environment.TEST


DEFAULT_TEST_KEY_PATTERNS = (
    r"^test[-_]",
    r"^testnet",
    r"[-_]testnet$",
    r"^tn[-_]",
)

DEFAULT_TEST_LABEL_WORDS = ("testnet", "test", "sandbox", "demo", "paper")


class EnvironmentDetector:
    def __init__(
        self,
        test_key_patterns: Sequence[str] = DEFAULT_TEST_KEY_PATTERNS,
        test_label_words: Iterable[str] = DEFAULT_TEST_LABEL_WORDS,
    ):
        self._key_patterns: Sequence[Pattern[str]] = [re.compile(p, re.IGNORECASE) for p in test_key_patterns]
        words = sorted({w.lower() for w in test_label_words}, key=len, reverse=True)
        self._label_re = re.compile(r"(?<![a-z])(" + "|".join(map(re.escape, words)) + r")(?![a-z])", re.IGNORECASE) if words else None

    def detect(self, credentials: Credentials) -> Detection:
        if credentials.environment is not None:
            return Detection(credentials.environment, Confidence.HIGH, "explicit environment flag")

        for pattern in self._key_patterns:
            if pattern.search(credentials.api_key):
                return Detection(Environment.TEST, Confidence.MEDIUM, f"api key matches test pattern '{pattern.pattern}'")

        if credentials.label and self._label_re is not None:
            match = self._label_re.search(credentials.label)
            if match:
                return Detection(Environment.TEST, Confidence.LOW, f"account label mentions '{match.group(1).lower()}'")

        return Detection(Environment.PRODUCTION, Confidence.HIGH, "no test signal; defaulting to production")


def base_url_for(environment: Environment, endpoints) -> str:
    """Base URL for ``environment``; ``endpoints`` carries ``production_url`` and ``test_url``."""
    if environment is Environment.TEST:
        return endpoints.test_url.rstrip("/")
    return endpoints.production_url.rstrip("/")


def resolve_base_url(credentials: Credentials, endpoints, detector: EnvironmentDetector = None) -> tuple:
    """Detect the environment for ``credentials`` and return ``(detection, base_url)``."""
    detection = (detector or EnvironmentDetector()).detect(credentials)
    base_url = base_url_for(detection.environment, endpoints)
    logger.info(
        f"Environment resolved | key={credentials.key_prefix} environment={detection.environment.value} "
        f"confidence={detection.confidence.value} reason={detection.reason} base_url={base_url}"
    )
    return detection, base_url
