"""Dashboard demo of the exchange gateway.

Shows:
1. Loading configuration and credentials
2. Environment detection
3. Concurrent market + account calls sharing one client
4. Cache hits on repeated calls
5. Fallback market data when the exchange is unreachable
6. Component stats (breakers, rate gate, cache)

Runs with public data only when no credentials are configured.
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path so we can import the gateway package
sys.path.insert(0, str(Path(__file__).parent.parent))

from lnm_gateway.client import ExchangeClient
from lnm_gateway.config import GatewayConfig
from lnm_gateway.credentials import load_credentials
from lnm_gateway.logging_setup import configure_from, logger


def print_result(label, result):
    if result.success:
        logger.info(f"{label} | source={result.source} data={result.to_dict()['data']}")
    else:
        logger.warning(f"{label} | failed kind={result.error_kind.value} message={result.error}")


async def refresh(client, with_account):
    calls = [client.get_ticker(), client.get_market_snapshot(), client.get_next_funding()]
    labels = ["Ticker", "Snapshot", "Funding"]
    if with_account:
        calls += [client.get_balance(), client.get_positions("running")]
        labels += ["Balance", "Positions"]
    results = await asyncio.gather(*calls)
    for label, result in zip(labels, results):
        print_result(label, result)


async def main(iterations: int, interval: float):
    """Run the dashboard demo."""
    config_file = Path(__file__).parent.parent / "config.example.yaml"
    if config_file.exists():
        config = GatewayConfig.from_yaml(str(config_file))
        logger.info(f"Loaded config from {config_file}")
    else:
        config = GatewayConfig()
        logger.info("Using default configuration")
    configure_from(config.logging)
    logger.info("=== Exchange Gateway Demo ===")

    try:
        creds = load_credentials()
        logger.info(f"Credentials loaded | key={creds.key_prefix}")
    except ValueError as e:
        logger.warning(f"No credentials ({e.__class__.__name__}); showing public data only")
        creds = None

    async with ExchangeClient(creds, config) as client:
        logger.info(
            f"Environment | {client.detection.environment.value} "
            f"({client.detection.confidence.value}: {client.detection.reason})"
        )
        for i in range(iterations):
            logger.info(f"--- refresh {i + 1}/{iterations} ---")
            await refresh(client, with_account=creds is not None)
            if i + 1 < iterations:
                await asyncio.sleep(interval)

        status = await client.get_system_status()
        print_result("Status", status)
        stats = client.stats()
        logger.info(f"Cache | hits={stats['cache']['hits']} misses={stats['cache']['misses']}")
        for name, snap in stats["breakers"].items():
            logger.info(f"Breaker | name={name} state={snap['state']} failures={snap['failure_count']}")

    logger.info("=== Demo Complete ===")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Exchange gateway dashboard demo")
    parser.add_argument("--iterations", type=int, default=3)
    parser.add_argument("--interval", type=float, default=5.0)
    args = parser.parse_args()
    asyncio.run(main(args.iterations, args.interval))
