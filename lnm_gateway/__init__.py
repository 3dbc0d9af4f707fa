"""
LN Markets Exchange Gateway.

A resilient async client for the LN Markets futures REST API (v2) featuring:
- HMAC-SHA256 request signing (base64, LNM-ACCESS-* headers)
- Per-endpoint-group circuit breakers with single-trial half-open probing
- Retry with bounded, jittered exponential backoff
- Outbound rate gate (one request start per second per client)
- Per-resource TTL caching with account-partitioned private entries
- Production/test environment detection
- Third-party fallback (Binance, CoinGecko, Kraken) for public market data
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    client: ExchangeClient, the single entry point
    signing: Request signing
    circuit_breaker: Circuit breaker state machine
    retry: Retry policy and executor
    rate_gate: Minimum spacing between requests
    cache: TTL cache with single-flight compute
    environment: Production/test detection
    fallback: Third-party market data providers
    credentials: Credential model and loader
    config: Configuration loading

Example:
    >>> from lnm_gateway.client import ExchangeClient
    >>> from lnm_gateway.credentials import load_credentials
    >>>
    >>> async def main():
    ...     async with ExchangeClient(load_credentials()) as client:
    ...         result = await client.get_positions("running")
    ...         print(result.to_dict())
"""

__version__ = "0.1.0"
__all__ = [
    "client",
    "signing",
    "circuit_breaker",
    "retry",
    "rate_gate",
    "cache",
    "environment",
    "fallback",
    "transport",
    "models",
    "errors",
    "credentials",
    "config",
    "logging_setup",
]
