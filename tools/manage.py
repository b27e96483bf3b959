#!/usr/bin/env python3
"""
SentinelChain Management CLI

Commands for operating the alert ledger:
- generate-key: Generate an Ed25519 keypair for commit signing
- init-ledger: Create the PostgreSQL ledger tables
- verify: Check a payload or digest against the ledger record
- verify-receipt: Check a commit receipt signature
- replay: Rebuild the severity table from ledger history and print it
- health-check: Check ledger connectivity and configuration
- serve-ingest: Run the ingestion service
- serve-indexer: Run the indexer service

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage generate-key
    python -m tools.manage verify 1700000000.1234 --payload-file alert.log
    python -m tools.manage replay --json
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_UNAVAILABLE = 2


def _ledger_client(sign_commits: bool = False):
    from sentinelchain.core import SigningService
    from sentinelchain.ledger import LedgerConfig, create_ledger_client
    from sentinelchain.observability import is_production

    signing = SigningService.from_env(production=is_production()) if sign_commits else None
    return create_ledger_client(LedgerConfig.from_env(), signing=signing)


def cmd_generate_key(args):
    """Generate an Ed25519 keypair."""
    from sentinelchain.core import Signer, SIGNING_KEY_ENV

    private_key, public_key = Signer.generate_keypair()

    print("[OK] Keypair generated")
    print(f"\n  Public key (share with verifiers):")
    print(f"  {public_key}")
    print(f"\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  Set this environment variable on the ingestion service:")
    print(f"  {SIGNING_KEY_ENV}={private_key}")
    return EXIT_OK


def cmd_init_ledger(args):
    """Create ledger tables in PostgreSQL."""
    from sentinelchain.ledger import LedgerConfig, LedgerDriver, LedgerUnavailable

    config = LedgerConfig.from_env()
    if config.driver != LedgerDriver.POSTGRES:
        print("Error: init-ledger needs LEDGER_URL (or DATABASE_URL) pointing at PostgreSQL")
        return EXIT_FAILED

    from sentinelchain.ledger.postgres import PostgresLedgerClient

    print(f"Connecting to {config.redacted_url()}...")
    try:
        client = PostgresLedgerClient.connect(config)
    except LedgerUnavailable as e:
        print(f"[FAIL] {e}")
        return EXIT_UNAVAILABLE

    print(f"[OK] Ledger tables ready (head block {client.get_head_block()})")
    client.close()
    return EXIT_OK


def _read_payload(args):
    if args.payload is not None:
        return args.payload
    if args.payload_file is not None:
        # Exact bytes matter: no newline translation
        with open(args.payload_file, "r", encoding="utf-8", newline="") as f:
            return f.read()
    return None


def cmd_verify(args):
    """Verify a payload or digest against the ledger."""
    from sentinelchain.ledger import LedgerUnavailable
    from sentinelchain.services import Verifier, VerificationStatus

    try:
        client = _ledger_client()
    except LedgerUnavailable as e:
        print(f"[FAIL] Ledger unavailable: {e}")
        return EXIT_UNAVAILABLE

    try:
        outcome = Verifier(client).verify(args.log_id, payload=_read_payload(args), digest=args.digest)
    except ValueError as e:
        print(f"Error: {e}")
        return EXIT_FAILED
    finally:
        client.close()

    if args.json:
        print(json.dumps(outcome.to_dict(), indent=2))
    elif outcome.verified:
        print(f"[OK] {args.log_id}: fingerprint matches the ledger record")
    elif outcome.status == VerificationStatus.NOT_FOUND:
        print(f"[FAIL] {args.log_id}: no ledger record")
    elif outcome.status == VerificationStatus.MISMATCH:
        print(f"[FAIL] {args.log_id}: fingerprint does NOT match the ledger record")
    else:
        print(f"[FAIL] Ledger unavailable: {outcome.error}")

    if outcome.status == VerificationStatus.UNAVAILABLE:
        return EXIT_UNAVAILABLE
    return EXIT_OK if outcome.verified else EXIT_FAILED


def cmd_verify_receipt(args):
    """Check that a commit receipt was signed by the given key."""
    from sentinelchain.core import Signer

    if Signer.verify(args.tx_hash, args.signature, args.public_key):
        print("[OK] Signature valid")
        return EXIT_OK
    print("[FAIL] Signature INVALID")
    return EXIT_FAILED


def cmd_replay(args):
    """Replay ledger history into a fresh indexer and print the counts."""
    from sentinelchain.config import IndexerConfig
    from sentinelchain.ledger import LedgerUnavailable
    from sentinelchain.services import BootstrapError, Indexer

    try:
        client = _ledger_client()
    except LedgerUnavailable as e:
        print(f"[FAIL] Ledger unavailable: {e}")
        return EXIT_UNAVAILABLE

    indexer = Indexer(client, IndexerConfig.from_env())
    try:
        indexer.bootstrap()
    except BootstrapError as e:
        print(f"[FAIL] Replay failed: {e}")
        return EXIT_UNAVAILABLE
    finally:
        indexer.stop()
        client.close()

    table = indexer.severity_table()
    if args.json:
        print(json.dumps(table, indent=2))
        return EXIT_OK

    status = indexer.status()
    print(f"Replayed {status['folded']} events ({status['discarded']} duplicates discarded)")
    for row in table:
        print(f"  {row['level']:<10}{row['count']}")
    return EXIT_OK


def cmd_health_check(args):
    """Run ledger connectivity and configuration checks."""
    import os

    from sentinelchain.core import SIGNING_KEY_ENV
    from sentinelchain.ledger import LedgerConfig, LedgerUnavailable

    config = LedgerConfig.from_env()

    print("=== SentinelChain Health Check ===\n")

    print("Ledger:")
    print(f"  Driver: {config.driver.value}")
    if config.url:
        print(f"  URL: {config.redacted_url()}")
    print(f"  Program: {config.program}")
    try:
        client = _ledger_client()
        print(f"  Status: [OK] Connected (head block {client.get_head_block()})")
        client.close()
    except LedgerUnavailable as e:
        print(f"  Status: [FAIL] {e}")
        return EXIT_UNAVAILABLE

    print("\nEnvironment:")
    if os.environ.get(SIGNING_KEY_ENV):
        print("  Signing key: [OK] Set")
    else:
        print("  Signing key: [WARN] Using ephemeral (development)")

    print("\n=== Health Check Complete ===")
    return EXIT_OK


def cmd_serve_ingest(args):
    """Run the ingestion service under uvicorn."""
    import uvicorn

    from sentinelchain.config import ServiceConfig

    config = ServiceConfig.from_env()
    uvicorn.run(
        "sentinelchain.main:create_ingest_app",
        factory=True,
        host=args.host or config.host,
        port=args.port or config.ingest_port,
    )
    return EXIT_OK


def cmd_serve_indexer(args):
    """Run the indexer service under uvicorn."""
    import uvicorn

    from sentinelchain.config import ServiceConfig

    config = ServiceConfig.from_env()
    uvicorn.run(
        "sentinelchain.main:create_indexer_app",
        factory=True,
        host=args.host or config.host,
        port=args.port or config.indexer_port,
    )
    return EXIT_OK


def build_parser():
    parser = argparse.ArgumentParser(
        description="SentinelChain Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("generate-key", help="Generate an Ed25519 signing keypair")
    subparsers.add_parser("init-ledger", help="Create PostgreSQL ledger tables")

    # verify
    p_verify = subparsers.add_parser("verify", help="Verify a payload or digest against the ledger")
    p_verify.add_argument("log_id", help="Alert logId")
    source = p_verify.add_mutually_exclusive_group(required=True)
    source.add_argument("--payload", help="Raw log text")
    source.add_argument("--payload-file", help="File holding the raw log text")
    source.add_argument("--digest", help="0x-prefixed SHA-256 digest")
    p_verify.add_argument("--json", action="store_true", help="Print the outcome as JSON")

    # verify-receipt
    p_receipt = subparsers.add_parser("verify-receipt", help="Verify a commit receipt signature")
    p_receipt.add_argument("tx_hash", help="Transaction hash from the receipt")
    p_receipt.add_argument("--signature", required=True, help="Base64 signature from the receipt")
    p_receipt.add_argument("--public-key", required=True, help="Base64 signer public key")

    # replay
    p_replay = subparsers.add_parser("replay", help="Rebuild severity counts from ledger history")
    p_replay.add_argument("--json", action="store_true", help="Print the severity table as JSON")

    subparsers.add_parser("health-check", help="Check ledger connectivity and configuration")

    for name, help_text in (
        ("serve-ingest", "Run the ingestion service"),
        ("serve-indexer", "Run the indexer service"),
    ):
        p_serve = subparsers.add_parser(name, help=help_text)
        p_serve.add_argument("--host", help="Bind address (default SENTINELCHAIN_HOST or 0.0.0.0)")
        p_serve.add_argument("--port", type=int, help="Port (default from environment)")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_FAILED

    commands = {
        "generate-key": cmd_generate_key,
        "init-ledger": cmd_init_ledger,
        "verify": cmd_verify,
        "verify-receipt": cmd_verify_receipt,
        "replay": cmd_replay,
        "health-check": cmd_health_check,
        "serve-ingest": cmd_serve_ingest,
        "serve-indexer": cmd_serve_indexer,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
