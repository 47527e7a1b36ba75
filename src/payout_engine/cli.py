"""Payout admin command line interface.

Provides operational tools for:
- Settlement previews
- Manual payout release
- Payout holds
- Currency rate updates and listing

Usage:
    python -m payout_engine.cli preview --settlement-id X
    python -m payout_engine.cli release --settlement-id X
    python -m payout_engine.cli hold --settlement-id X --reason "Dispute open"
    python -m payout_engine.cli hold --settlement-id X --release
    python -m payout_engine.cli set-rate --to JMD --rate 156.25
    python -m payout_engine.cli rates

Releases go through the processor named by TRANSFER_PROVIDER and are
refused (exit code 4) when none is configured.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Coroutine
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payout_engine.calculators import WorkerNotFoundError
from payout_engine.calculators.currency import is_supported_currency
from payout_engine.config import PayoutFlags, Settings
from payout_engine.database import get_engine, make_session_factory
from payout_engine.providers import (
    TransferProvider,
    TransferProviderNotConfiguredError,
    build_transfer_provider,
)
from payout_engine.services import (
    SettlementGate,
    SettlementNotFoundError,
    SqlCurrencyRateStore,
)


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


def parse_rate(s: str) -> Decimal:
    """Parse a positive decimal exchange rate."""
    try:
        rate = Decimal(s)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"Invalid rate: {s}") from e
    if rate <= 0:
        raise argparse.ArgumentTypeError(f"Rate must be positive: {s}")
    return rate


def _jsonable(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class PayoutCli:
    """Payout admin command line interface."""

    def __init__(self, provider: TransferProvider | None = None) -> None:
        self.parser = self._build_parser()
        self.provider = provider

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m payout_engine.cli",
            description="Chef payout operational tools",
        )
        parser.add_argument(
            "--database-url",
            type=str,
            help="Database URL (default: $DATABASE_URL)",
        )
        parser.add_argument(
            "--verbose",
            action="store_true",
            help="Log at DEBUG level",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # preview command
        preview = subparsers.add_parser(
            "preview",
            help="Show what a settlement would pay now",
        )
        preview.add_argument(
            "--settlement-id",
            type=parse_uuid,
            required=True,
            help="Settlement ID",
        )

        # release command
        release = subparsers.add_parser(
            "release",
            help="Evaluate a settlement and release its payout",
        )
        release.add_argument(
            "--settlement-id",
            type=parse_uuid,
            required=True,
            help="Settlement ID",
        )
        release.add_argument(
            "--triggered-by",
            type=str,
            default="admin",
            help="Actor recorded on emitted events (default: admin)",
        )

        # hold command
        hold = subparsers.add_parser(
            "hold",
            help="Set or release a manual payout hold",
        )
        hold.add_argument(
            "--settlement-id",
            type=parse_uuid,
            required=True,
            help="Settlement ID",
        )
        hold.add_argument(
            "--reason",
            type=str,
            help="Free-text hold reason shown to administrators",
        )
        hold.add_argument(
            "--release",
            action="store_true",
            help="Release the hold instead of setting it",
        )

        # set-rate command
        set_rate = subparsers.add_parser(
            "set-rate",
            help="Store the latest exchange rate for a currency pair",
        )
        set_rate.add_argument(
            "--from",
            dest="from_code",
            type=str,
            help="Source currency (default: base currency)",
        )
        set_rate.add_argument(
            "--to",
            dest="to_code",
            type=str,
            required=True,
            help="Target currency",
        )
        set_rate.add_argument(
            "--rate",
            type=parse_rate,
            required=True,
            help="Units of target currency per unit of source currency",
        )

        # rates command
        rates = subparsers.add_parser(
            "rates",
            help="List the latest stored rates from a currency",
        )
        rates.add_argument(
            "--from",
            dest="from_code",
            type=str,
            help="Source currency (default: base currency)",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        logging.basicConfig(
            level=logging.DEBUG if parsed.verbose else logging.WARNING,
            format="%(levelname)s %(name)s: %(message)s",
        )

        # Dispatch to command handler
        handlers: dict[
            str,
            Callable[[argparse.Namespace, async_sessionmaker[AsyncSession]], Coroutine[Any, Any, int]],
        ] = {
            "preview": self._cmd_preview,
            "release": self._cmd_release,
            "hold": self._cmd_hold,
            "set-rate": self._cmd_set_rate,
            "rates": self._cmd_rates,
        }

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        return asyncio.run(self._dispatch(handler, parsed))

    async def _dispatch(
        self,
        handler: Callable[
            [argparse.Namespace, async_sessionmaker[AsyncSession]], Coroutine[Any, Any, int]
        ],
        args: argparse.Namespace,
    ) -> int:
        engine: AsyncEngine = get_engine(args.database_url)
        try:
            return await handler(args, make_session_factory(engine))
        except (SettlementNotFoundError, WorkerNotFoundError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2
        except TransferProviderNotConfiguredError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 4
        finally:
            await engine.dispose()

    def _gate(self, factory: async_sessionmaker[AsyncSession]) -> SettlementGate:
        settings = Settings.from_env()
        return SettlementGate(
            factory,
            self.provider or build_transfer_provider(settings.transfer_provider),
            flags=PayoutFlags.from_env(),
            base_currency=settings.base_currency,
            transfer_timeout_seconds=settings.transfer_timeout_seconds,
        )

    async def _cmd_preview(
        self, args: argparse.Namespace, factory: async_sessionmaker[AsyncSession]
    ) -> int:
        """Print a settlement preview."""
        preview = await self._gate(factory).compute_preview(args.settlement_id)
        print(f"Settlement: {preview.settlement_id}")
        print(f"  Status:     {preview.status}")
        print(f"  Tier:       {preview.tier} (x{preview.multiplier})")
        print(f"  Base:       {preview.base_cents} cents")
        print(f"  Bonus:      {preview.bonus_cents} cents")
        for line in preview.bonus_breakdown:
            print(f"    - {line['badge']}: +{line['pct']}%")
        print(f"  Amount:     {preview.amount_cents} cents")
        print(f"  Display:    {preview.display_amount} ({preview.currency} @ {preview.fx_rate})")
        if preview.is_final:
            print("  [final: settlement is paid]")
        return 0

    async def _cmd_release(
        self, args: argparse.Namespace, factory: async_sessionmaker[AsyncSession]
    ) -> int:
        """Attempt release and print the outcome as JSON."""
        result = await self._gate(factory).attempt_release(
            args.settlement_id, triggered_by=args.triggered_by
        )
        print(
            json.dumps(
                _jsonable(
                    {
                        "settlement_id": result.settlement_id,
                        "status": result.status,
                        "blockers": result.blockers,
                        "transfer_id": result.transfer_id,
                        "created_transfer": result.created_transfer,
                    }
                ),
                indent=2,
            )
        )
        return 0 if result.status == "paid" else 3

    async def _cmd_hold(
        self, args: argparse.Namespace, factory: async_sessionmaker[AsyncSession]
    ) -> int:
        """Set or release a hold."""
        record = await self._gate(factory).set_hold(
            args.settlement_id, hold=not args.release, reason=args.reason
        )
        print(f"Settlement {record.settlement_id}: {record.payout_status}")
        if record.payout_hold_reason:
            print(f"  Reason: {record.payout_hold_reason}")
        return 0

    async def _cmd_set_rate(
        self, args: argparse.Namespace, factory: async_sessionmaker[AsyncSession]
    ) -> int:
        """Upsert a currency rate."""
        from_code = (args.from_code or Settings.from_env().base_currency).upper()
        to_code = args.to_code.upper()
        for code in (from_code, to_code):
            if not is_supported_currency(code):
                print(f"Unsupported currency: {code}", file=sys.stderr)
                return 1

        async with factory() as session:
            row = await SqlCurrencyRateStore(session).upsert_rate(from_code, to_code, args.rate)
            await session.commit()
            print(f"Rate {row.from_code}->{row.to_code} = {row.rate}")
        return 0

    async def _cmd_rates(
        self, args: argparse.Namespace, factory: async_sessionmaker[AsyncSession]
    ) -> int:
        """List the latest rate per target currency."""
        from_code = (args.from_code or Settings.from_env().base_currency).upper()
        async with factory() as session:
            rates = await SqlCurrencyRateStore(session).latest_rates_from(from_code)
        if not rates:
            print(f"No rates stored from {from_code}")
            return 0
        for to_code, rate in sorted(rates.items()):
            print(f"{from_code}->{to_code} = {rate}")
        return 0


def main() -> None:
    """CLI entry point."""
    sys.exit(PayoutCli().run())


if __name__ == "__main__":
    main()
