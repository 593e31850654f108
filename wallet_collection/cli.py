"""
Admin command line for wallet collection.

    wallet-collection check
    wallet-collection address USER_ID
    wallet-collection balance USER_ID
    wallet-collection verify TX_HASH
    wallet-collection sweep USER_ID... [--native | --both] [--delay S]
                            [--users-file FILE] [--history-db PATH]
    wallet-collection withdraw ADDRESS AMOUNT [--fee FEE]

Results are printed as JSON on stdout; logs go to stderr. Exit codes: 0 ok,
1 runtime fault, 2 configuration or usage error.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

from loguru import logger

from .collection_history import CollectionHistoryDB
from .config import load_settings
from .exceptions import CollectionError, ConfigurationError
from .fund_mover import Asset
from .service import CollectionService
from .units import format_amount, from_base_units

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Route loguru output to stderr (and optionally a rotating file)"""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, level="DEBUG", rotation="10 MB", retention=5)


def _print_json(data: Any):
    print(json.dumps(data, indent=2, default=str))


def read_users_file(path: str) -> List[str]:
    """One user id per line; blank lines and # comments are ignored"""
    user_ids = []
    for line in Path(path).read_text(encoding='utf-8').splitlines():
        line = line.split('#', 1)[0].strip()
        if line:
            user_ids.append(line)
    return user_ids


async def _check(service: CollectionService, args: argparse.Namespace) -> int:
    data = await service.check_connectivity()
    _print_json(data)
    return 0 if data['matches_expected'] else 1


async def _address(service: CollectionService, args: argparse.Namespace) -> int:
    _print_json({'user_id': args.user_id, 'address': service.deriver.address_for(args.user_id)})
    return 0


async def _balance(service: CollectionService, args: argparse.Namespace) -> int:
    settings = service.settings
    address = service.deriver.address_for(args.user_id)
    token_raw = await service.reader.get_token_balance(address)
    native_raw = await service.reader.get_native_balance(address)
    _print_json({
        'user_id': args.user_id,
        'address': address,
        'token_balance': format_amount(from_base_units(token_raw, settings.token_decimals)),
        'native_balance': format_amount(from_base_units(native_raw, settings.native_decimals)),
    })
    return 0


async def _verify(service: CollectionService, args: argparse.Namespace) -> int:
    try:
        verified = await service.verifier.verify(args.tx_hash)
    except CollectionError as e:
        _print_json({'verified': False, 'error': e.to_dict()})
        return 1
    data = verified.to_dict()
    data['verified'] = True
    _print_json(data)
    return 0


async def _sweep(service: CollectionService, args: argparse.Namespace) -> int:
    user_ids = list(args.user_ids)
    if args.users_file:
        user_ids.extend(read_users_file(args.users_file))
    if not user_ids:
        logger.error("No user ids given")
        return 2

    if args.both:
        assets = (Asset.TOKEN, Asset.NATIVE)
    elif args.native:
        assets = (Asset.NATIVE,)
    else:
        assets = (Asset.TOKEN,)

    summary = await service.orchestrator.sweep_many(user_ids, delay_seconds=args.delay, assets=assets)

    if args.history_db:
        history = CollectionHistoryDB(args.history_db)
        try:
            history.record_summary(summary)
        finally:
            history.close()

    _print_json(summary.to_dict())
    return 1 if summary.faults else 0


async def _withdraw(service: CollectionService, args: argparse.Namespace) -> int:
    try:
        result = await service.orchestrator.process_withdrawal(args.to_address, args.amount, args.fee)
    except ValueError as e:
        logger.error(f"✗ {e}")
        return 2
    _print_json(result.to_dict())
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="wallet-collection",
        description="Custodial wallet collection and deposit verification"
    )
    parser.add_argument("--config", default=None, help="YAML config file (default: collection_config.yaml)")
    parser.add_argument("--log-level", default="INFO", help="Log level for stderr output")
    parser.add_argument("--log-file", default=None, help="Also write DEBUG logs to this file")
    subparsers = parser.add_subparsers(dest="command")

    check = subparsers.add_parser("check", help="Check RPC connectivity and operational wallet balance")
    check.set_defaults(func=_check)

    address = subparsers.add_parser("address", help="Show the custodial address of a user")
    address.add_argument("user_id")
    address.set_defaults(func=_address)

    balance = subparsers.add_parser("balance", help="Show token and native balance of a user's wallet")
    balance.add_argument("user_id")
    balance.set_defaults(func=_balance)

    verify = subparsers.add_parser("verify", help="Verify a deposit transaction")
    verify.add_argument("tx_hash")
    verify.set_defaults(func=_verify)

    sweep = subparsers.add_parser("sweep", help="Sweep custodial wallets into the collection wallet")
    sweep.add_argument("user_ids", nargs="*", help="User ids to sweep")
    asset_group = sweep.add_mutually_exclusive_group()
    asset_group.add_argument("--native", action="store_true", help="Sweep native currency instead of the token")
    asset_group.add_argument("--both", action="store_true", help="Sweep the token, then native currency")
    sweep.add_argument("--delay", type=float, default=None, help="Seconds between wallets")
    sweep.add_argument("--users-file", default=None, help="File with one user id per line")
    sweep.add_argument("--history-db", default=None, help="Record results in this SQLite database")
    sweep.set_defaults(func=_sweep)

    withdraw = subparsers.add_parser("withdraw", help="Pay a withdrawal from the operational wallet")
    withdraw.add_argument("to_address")
    withdraw.add_argument("amount", help="Total debited from the user, fee included")
    withdraw.add_argument("--fee", default="0", help="Fee sent to the admin fee wallet")
    withdraw.set_defaults(func=_withdraw)

    return parser


async def _run(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    async with CollectionService.from_settings(settings) as service:
        return await args.func(service, args)


def main(argv: Any = None) -> int:
    """Program entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    configure_logging(args.log_level, args.log_file)

    try:
        return asyncio.run(_run(args))
    except ConfigurationError as e:
        logger.error(f"✗ {e.kind}: {e}")
        _print_json({'error': e.to_dict()})
        return 2
    except CollectionError as e:
        logger.error(f"✗ {e.kind}: {e}")
        _print_json({'error': e.to_dict()})
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
