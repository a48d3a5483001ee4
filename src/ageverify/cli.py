import argparse
import asyncio
import json
import random
import sys
from typing import List, Optional

import httpx
import structlog

from .challenges import ChallengeQueue
from .config import (
    LOG_LEVEL,
    RETRY_STATE_PATH,
    RPC_TIMEOUT,
    RPC_URLS,
    STRUCTURED_LOGGING,
)
from .exceptions import AgeVerifyError
from .ledger import JsonRpcLedger
from .record_codec import decode_verification_record, derive_user_code, derive_verification_address
from .retry_policy import JsonFileRetryStore, RetryPolicy
from .rpc_manager import RpcManager, endpoints_from_urls
from .utils import configure_logging, now_ms

# Initialize structured logger
logger = structlog.get_logger(__name__)


class AgeVerifyCLI:
    """Operator command-line interface for the age attestation core."""

    def __init__(self) -> None:
        self.parser = self._create_argument_parser()

    def _create_argument_parser(self) -> argparse.ArgumentParser:
        """Creates the argument parser for the CLI."""
        parser = argparse.ArgumentParser(
            prog="ageverify",
            description="AgeVerify - on-chain age attestation tools",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--log-level",
            default=LOG_LEVEL,
            help=f"Logging level. Default: {LOG_LEVEL}.",
        )

        subparsers = parser.add_subparsers(dest="command", required=True)
        self._add_challenges_command(subparsers)
        self._add_record_command(subparsers)
        self._add_user_code_command(subparsers)
        self._add_endpoints_command(subparsers)
        self._add_retry_state_command(subparsers)

        return parser

    def _add_challenges_command(self, subparsers) -> None:
        challenges_parser = subparsers.add_parser(
            "challenges", help="Print a randomized liveness challenge sequence."
        )
        challenges_parser.add_argument(
            "--count", type=int, default=5, help="Sequence length. Default: 5."
        )
        challenges_parser.add_argument(
            "--seed", type=int, default=None, help="Seed for a reproducible sequence."
        )

    def _add_record_command(self, subparsers) -> None:
        record_parser = subparsers.add_parser(
            "record", help="Fetch and decode a wallet's on-chain verification record."
        )
        record_parser.add_argument("wallet", help="Wallet address (base58).")
        record_parser.add_argument(
            "--rpc-url",
            action="append",
            dest="rpc_urls",
            help="RPC endpoint; may be repeated. Defaults to AGEVERIFY_RPC_URLS.",
        )

    def _add_user_code_command(self, subparsers) -> None:
        user_code_parser = subparsers.add_parser(
            "user-code", help="Derive a wallet's record address and fallback user code."
        )
        user_code_parser.add_argument("wallet", help="Wallet address (base58).")

    def _add_endpoints_command(self, subparsers) -> None:
        endpoints_parser = subparsers.add_parser(
            "endpoints", help="Probe every configured RPC endpoint once."
        )
        endpoints_parser.add_argument(
            "--rpc-url",
            action="append",
            dest="rpc_urls",
            help="RPC endpoint; may be repeated. Defaults to AGEVERIFY_RPC_URLS.",
        )

    def _add_retry_state_command(self, subparsers) -> None:
        retry_parser = subparsers.add_parser(
            "retry-state", help="Show or reset a wallet's local retry counters."
        )
        retry_parser.add_argument("wallet", help="Wallet address (base58).")
        retry_parser.add_argument(
            "--reset", action="store_true", help="Clear the counters and any cooldown."
        )
        retry_parser.add_argument(
            "--path",
            default=str(RETRY_STATE_PATH),
            help=f"Retry state file. Default: {RETRY_STATE_PATH}.",
        )

    # -------------------------------------------------------------------------

    def _execute_challenges_command(self, args: argparse.Namespace) -> int:
        rng = random.Random(args.seed) if args.seed is not None else random.Random()
        queue = ChallengeQueue.generate(args.count, rng)
        for i, challenge in enumerate(queue, start=1):
            print(f"{i}. {challenge.kind.value:<11} {challenge.kind.instruction}")
        return 0

    def _execute_user_code_command(self, args: argparse.Namespace) -> int:
        address, bump = derive_verification_address(args.wallet)
        print(f"Record address: {address}")
        print(f"Bump:           {bump}")
        print(f"User code:      {derive_user_code(address)}")
        return 0

    async def _fetch_record(self, wallet: str, urls: List[str]) -> int:
        manager = RpcManager(endpoints_from_urls(urls))
        async with JsonRpcLedger(manager, timeout=RPC_TIMEOUT) as ledger:
            address, _ = derive_verification_address(wallet)
            data = await ledger.get_account_data(address)

        if not data:
            print(f"No verification record at {address}")
            return 1

        record = decode_verification_record(data)
        now = now_ms() // 1000
        summary = {
            "address": str(address),
            "over18": record.over18,
            "user_code": record.user_code,
            "facehash": record.facehash_hex,
            "verified_at": record.verified_at,
            "expires_at": record.expires_at,
            "valid": record.is_valid_at(now),
            "bump": record.bump,
        }
        print(json.dumps(summary, indent=2))
        return 0

    async def _probe_endpoints(self, urls: List[str]) -> int:
        async with RpcManager(endpoints_from_urls(urls)) as manager:
            health = await manager.check_all_health()

        print("\n" + "=" * 80)
        print("RPC ENDPOINT HEALTH")
        print("=" * 80)
        for endpoint in manager.endpoints:
            status = health[endpoint.url]
            state = "healthy" if status.healthy else f"UNHEALTHY ({status.error})"
            print(
                f"{endpoint.url}\n  tags={','.join(endpoint.tags or ('*',))} weight={endpoint.weight} "
                f"latency={status.latency_ms:.0f}ms {state}"
            )
        print("=" * 80)
        return 0 if any(h.healthy for h in health.values()) else 1

    def _execute_retry_state_command(self, args: argparse.Namespace) -> int:
        policy = RetryPolicy(JsonFileRetryStore(args.path))
        if args.reset:
            policy.reset(args.wallet)
            print(f"Retry state cleared for {args.wallet}")
            return 0

        state = policy.load(args.wallet)
        remaining_ms = max(0, state.cooldown_until - now_ms())
        print(json.dumps({**state.to_dict(), "cooldown_remaining_ms": remaining_ms}, indent=2))
        return 0

    def run_from_args(self, args_list: Optional[List[str]] = None) -> int:
        """Run the CLI with provided arguments."""
        try:
            args = self.parser.parse_args(args_list)
            configure_logging(args.log_level, STRUCTURED_LOGGING)

            if args.command == "challenges":
                return self._execute_challenges_command(args)
            if args.command == "user-code":
                return self._execute_user_code_command(args)
            if args.command == "record":
                return asyncio.run(self._fetch_record(args.wallet, args.rpc_urls or RPC_URLS))
            if args.command == "endpoints":
                return asyncio.run(self._probe_endpoints(args.rpc_urls or RPC_URLS))
            if args.command == "retry-state":
                return self._execute_retry_state_command(args)

            self.parser.print_help()
            return 1
        except (AgeVerifyError, ValueError) as e:
            logger.error("Command failed", error=str(e))
            print(f"\n[ERROR] {e}", file=sys.stderr)
            return 1
        except httpx.HTTPError as e:
            logger.error("Network error", error=str(e))
            print(f"\n[ERROR] Network error: {e}", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            print("\nOperation cancelled by user.", file=sys.stderr)
            return 130


def main() -> int:
    """Main entry point for the CLI."""
    cli = AgeVerifyCLI()
    return cli.run_from_args()


if __name__ == "__main__":
    sys.exit(main())
