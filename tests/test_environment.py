import pytest

from lnm_gateway.config import ExchangeConfig
from lnm_gateway.credentials import Credentials, Environment
from lnm_gateway.environment import Confidence, EnvironmentDetector, base_url_for, resolve_base_url


def creds(key="live-key-0001", **kwargs):
    return Credentials(api_key=key, api_secret="s", passphrase="p", **kwargs)


def test_explicit_flag_wins_with_high_confidence():
    detection = EnvironmentDetector().detect(creds(isTestnet=True))
    assert detection.environment is Environment.TEST
    assert detection.confidence is Confidence.HIGH


def test_explicit_production_overrides_test_looking_key():
    detection = EnvironmentDetector().detect(creds("test-abc123", environment="production"))
    assert detection.environment is Environment.PRODUCTION
    assert detection.confidence is Confidence.HIGH


@pytest.mark.parametrize("key", ["test-abc123", "TEST_abc", "testnet9f00", "abc-testnet", "tn_123"])
def test_test_key_pattern_gives_medium_confidence(key):
    detection = EnvironmentDetector().detect(creds(key))
    assert detection.environment is Environment.TEST
    assert detection.confidence is Confidence.MEDIUM


@pytest.mark.parametrize("label", ["Testnet bot", "paper account", "my-sandbox", "Demo"])
def test_label_gives_low_confidence(label):
    detection = EnvironmentDetector().detect(creds(label=label))
    assert detection.environment is Environment.TEST
    assert detection.confidence is Confidence.LOW


@pytest.mark.parametrize("label", ["latest strategy", "contest entry", "main"])
def test_label_words_match_whole_words_only(label):
    detection = EnvironmentDetector().detect(creds(label=label))
    assert detection.environment is Environment.PRODUCTION


def test_default_is_production_with_high_confidence():
    """An account with no signals is treated as production."""
    detection = EnvironmentDetector().detect(creds("a1b2c3d4"))
    assert detection.environment is Environment.PRODUCTION
    assert detection.confidence is Confidence.HIGH
    assert not detection.is_test


def test_custom_patterns():
    detector = EnvironmentDetector(test_key_patterns=[r"^sim-"], test_label_words=[])
    assert detector.detect(creds("sim-001")).environment is Environment.TEST
    assert detector.detect(creds("test-001")).environment is Environment.PRODUCTION
    assert detector.detect(creds(label="test")).environment is Environment.PRODUCTION


def test_base_url_for_environment():
    exchange = ExchangeConfig(test_url="https://testnet.example/")
    assert base_url_for(Environment.PRODUCTION, exchange) == "https://api.lnmarkets.com"
    assert base_url_for(Environment.TEST, exchange) == "https://testnet.example"


def test_resolve_base_url():
    detection, url = resolve_base_url(creds("test-abc"), ExchangeConfig())
    assert detection.is_test
    assert url == "https://api.testnet4.lnmarkets.com"
