#!/usr/bin/env python
"""Gateway diagnostics CLI: environment detection, request signing, live status.

Usage:
    python scripts/diagnose.py detect --key test-abc123 --label "paper account"
    python scripts/diagnose.py sign GET /futures --param type=running --timestamp 1700000000000
    python scripts/diagnose.py status --config config.example.yaml

`sign` and `status` read credentials from LNM_API_KEY / LNM_API_SECRET /
LNM_API_PASSPHRASE or ~/.lnmarkets_config.json.
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from lnm_gateway.client import ExchangeClient
from lnm_gateway.config import GatewayConfig
from lnm_gateway.credentials import Credentials, load_credentials
from lnm_gateway.environment import EnvironmentDetector
from lnm_gateway.logging_setup import setup_logging
from lnm_gateway.signing import HEADER_KEY, HEADER_PASSPHRASE, RequestSigner


def parse_params(pairs):
    """Parse repeated key=value arguments into a dict."""
    params = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"Expected key=value, got '{pair}'")
        key, value = pair.split("=", 1)
        params[key] = value
    return params


def cmd_detect(args):
    creds = Credentials(
        api_key=args.key,
        api_secret="unused",
        passphrase="unused",
        environment=args.environment,
        label=args.label,
    )
    detection = EnvironmentDetector().detect(creds)
    print(f"Key:         {creds.key_prefix}")
    print(f"Environment: {detection.environment.value}")
    print(f"Confidence:  {detection.confidence.value}")
    print(f"Reason:      {detection.reason}")


def cmd_sign(args, config):
    creds = load_credentials(args.credentials)
    kwargs = {"now_ms": lambda: args.timestamp} if args.timestamp else {}
    signer = RequestSigner(
        path_prefix=config.exchange.path_prefix,
        sign_with_prefix=config.exchange.sign_with_prefix,
        **kwargs,
    )
    params = parse_params(args.param)
    body = json.loads(args.body) if args.body else None
    signed = signer.sign(creds, args.method, args.path, query_params=params, body=body)

    print(f"Signed path: {signed.path}")
    print(f"Query:       {signed.query or '(none)'}")
    print(f"Body:        {signed.body or '(none)'}")
    print(f"Message:     {signed.timestamp}{signed.method}{signed.path}{signed.query or signed.body}")
    print(f"Signature:   {signed.signature}")
    print("Headers:")
    for name, value in signed.headers.items():
        if name in (HEADER_KEY, HEADER_PASSPHRASE):
            value = f"{value[:6]}..."
        print(f"  {name}: {value}")


async def cmd_status(args, config):
    creds = None if args.public else load_credentials(args.credentials)
    async with ExchangeClient(creds, config) as client:
        result = await client.get_system_status()
        status = result.data
        print(f"\n=== Exchange status ({status.environment}) ===")
        print(f"Base URL:   {status.base_url}")
        print(f"Reachable:  {'yes' if status.exchange_reachable else 'no'}")
        if status.latency_ms is not None:
            print(f"Latency:    {status.latency_ms:.0f} ms")
        if status.error_kind is not None:
            print(f"Error:      {status.error_kind.value}")
        print("\nCircuit breakers:")
        for name, snap in status.breakers.items():
            print(f"  {name:<8} {snap['state']:<10} failures={snap['failure_count']}/{snap['failure_threshold']}")

        if creds is not None:
            balance = await client.get_balance()
            if balance.success:
                print(f"\nBalance:    {balance.data.balance} sats")
            else:
                print(f"\nBalance:    unavailable ({balance.error_kind.value})")


def main():
    parser = argparse.ArgumentParser(description="Exchange gateway diagnostics")
    parser.add_argument("--config", help="Path to gateway YAML config")
    parser.add_argument("--credentials", help="Path to credentials JSON file")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")

    sub = parser.add_subparsers(dest="cmd")

    detect = sub.add_parser("detect")
    detect.add_argument("--key", required=True)
    detect.add_argument("--label")
    detect.add_argument("--environment", choices=["production", "test"])

    sign = sub.add_parser("sign")
    sign.add_argument("method", type=str.upper)
    sign.add_argument("path")
    sign.add_argument("--param", action="append", help="Query parameter key=value (repeatable)")
    sign.add_argument("--body", help="JSON body for POST/PUT")
    sign.add_argument("--timestamp", type=int, help="Fixed timestamp in ms")

    status = sub.add_parser("status")
    status.add_argument("--public", action="store_true", help="Skip credentials; probe public endpoints only")

    args = parser.parse_args()

    setup_logging(log_file=None, level="DEBUG" if args.verbose else "WARNING")
    config = GatewayConfig.from_yaml(args.config) if args.config else GatewayConfig()

    try:
        if args.cmd == "detect":
            cmd_detect(args)
        elif args.cmd == "sign":
            cmd_sign(args, config)
        elif args.cmd == "status":
            asyncio.run(cmd_status(args, config))
        else:
            parser.print_help()
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
