#!/usr/bin/env python3
"""Command entry point of the tornado client.

Keeps the local event cache of one pool instance in shape: synchronize it,
check its Merkle root against the contract, or reset and rebuild it. Also
pays deposit invoices and sweeps the caches of a list of instances.
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


logger = logging.getLogger(__name__)

from tornado_client.client import TornadoClient, update_all_caches
from tornado_client.config import ClientConfig
from tornado_client.errors import TornadoClientError
from tornado_client.models import EventKind
from tornado_client.notes import parse_invoice


async def run_command(client: TornadoClient, args: argparse.Namespace) -> int:
    match args.command:
        case "sync":
            kinds = list(EventKind) if args.kind == "all" else [EventKind(args.kind)]
            for kind in kinds:
                head = await client.synchronize(kind, local_only=args.local_only)
                logger.info(f"{kind.value} cache synchronized through block {head}")
            return 0
        case "check-cache":
            return 0 if await client.check_cache_validity() else 2
        case "reset-cache":
            if await client.repair_cache():
                logger.info("Deposit cache rebuilt, root is valid")
            else:
                logger.info("Deposit cache is valid, nothing to repair")
            return 0
        case "deposit-invoice":
            result = await client.deposit_invoice(parse_invoice(args.invoice))
            logger.info(f"Deposit of {result.commitment} mined in block {result.block_number}")
            return 0
        case "update-all":
            config = client.config
            results = await update_all_caches(
                TornadoClient(config.for_instance(instance)) for instance in config.instances
            )
            return 0 if all(results.values()) else 2
    raise ValueError(f"Unknown command: {args.command}")


async def main() -> None:
    """Main entry point of the tornado client.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Tornado client - event cache maintenance and deposits",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RPC_URL            - RPC endpoint of the chain
  NET_ID             - Chain id (default: 1)
  INSTANCE_ADDRESS   - Pool instance contract for CURRENCY and AMOUNT
  PROXY_ADDRESS      - Proxy contract deposits and withdrawals are sent to
  CURRENCY, AMOUNT   - Pool instance (default: eth 0.1)
  TOKEN_ADDRESS      - ERC20 contract of a token pool instance
  INSTANCES          - Instances swept by update-all, as
                       currency:amount:address[:deployed_block[:decimals[:token]]],...
  PRIVATE_KEY        - Account paying deposit invoices
  SUBGRAPH_URL       - Indexed query service (optional)
  PRIVATE_RPC        - Never query the subgraph (default: false)
  CACHE_DIR          - Event cache directory (default: cache)
  LOG_LEVEL          - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Synchronize the event cache")
    sync_parser.add_argument(
        "--kind",
        default="all",
        choices=["deposit", "withdrawal", "all"],
        help="Event kind to synchronize (default: all)"
    )
    sync_parser.add_argument(
        "--local-only",
        action="store_true",
        default=False,
        help="Scan the chain directly, never query the subgraph"
    )
    subparsers.add_parser("check-cache", help="Check the deposit cache root against the contract")
    subparsers.add_parser("reset-cache", help="Reset and rebuild the deposit cache if its root is invalid")
    invoice_parser = subparsers.add_parser("deposit-invoice", help="Pay a deposit invoice from PRIVATE_KEY")
    invoice_parser.add_argument("invoice", help="tornadoInvoice-<currency>-<amount>-<netId>-0x<commitment>")
    subparsers.add_parser(
        "update-all",
        help="Synchronize, check and repair the caches of every instance in INSTANCES"
    )

    args: argparse.Namespace = parser.parse_args()
    setup_logging(args.log_level)

    try:
        config: ClientConfig = ClientConfig.from_env()
        config.log_config()
        client = TornadoClient(config)
        exit_code = await run_command(client, args)

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - RPC_URL: RPC endpoint of the chain")
        logger.error("  - INSTANCE_ADDRESS: Pool instance contract")
        logger.error("  - PROXY_ADDRESS: Proxy contract")
        sys.exit(1)

    except TornadoClientError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    load_dotenv()
    asyncio.run(main())
