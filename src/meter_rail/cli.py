"""
Meter Rail CLI

Commands:
  serve     - Run the metering server
  quote     - Normalise a rate and price a duration
  convert   - Convert a fiat amount to a settlement unit
  simulate  - Run a simulated session with caps and settle it
"""

import argparse
import os
import sys

from .billing.calculator import (
    TimeUnit,
    cost_scaled,
    format_duration,
    max_duration_for_budget,
    normalize_rate,
    rate_per_hour,
    round_money,
    to_nanoseconds,
    unscale,
)
from .core.clock import ManualClock, NS_PER_MILLISECOND
from .core.errors import MeterRailError
from .log import configure_logging


def cmd_serve(args):
    """Run the metering server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Meter Rail on {host}:{port}")

    uvicorn.run(
        "meter_rail.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_quote(args):
    """Price a duration at a given service cost."""
    unit = TimeUnit.parse(args.unit)
    elapsed = to_nanoseconds(args.duration, args.duration_unit)
    rate_per_ns = normalize_rate(args.cost, unit)
    total = unscale(cost_scaled(elapsed, args.cost, unit))

    print("Rate Quote")
    print("=" * 40)
    print(f"Service cost: {args.cost} {args.currency}/{unit.value}")
    print(f"Per hour: {round_money(rate_per_hour(args.cost, unit), 6)} {args.currency}")
    print(f"Per nanosecond (x10^18): {rate_per_ns}")
    print(f"Duration: {format_duration(elapsed).formatted}")
    print(f"Cost: {round_money(total)} {args.currency} (exact {total.normalize()})")

    if args.budget is not None:
        covered = format_duration(max_duration_for_budget(args.budget, args.cost, unit))
        print(f"Budget {args.budget} {args.currency} buys approximately {covered.formatted} of service")


def cmd_convert(args):
    """Convert fiat to a settlement unit at the default snapshot."""
    from .rates.table import RateTable

    conversion = RateTable().conversion(args.amount, args.currency, args.unit)
    print(f"{args.amount} {conversion.fiat_currency} = {round_money(conversion.unit_amount, 8)} {conversion.unit_symbol}")
    print(f"  Unit price: {conversion.unit_price} (base currency)")
    print(f"  Exchange rate: {conversion.exchange_rate}")


def cmd_simulate(args):
    """Meter a session on a simulated clock, then settle what it cost."""
    from .engine.engine import MeteringEngine

    clock = ManualClock()
    engine = MeteringEngine(clock=clock, auto_stop=not args.no_auto_stop, unit_symbol=args.settlement_unit)

    payer = args.payer
    if args.lifetime_spend:
        engine.ledger.add_spend(payer, args.lifetime_spend, reference="simulation-seed")
    if args.universal_cap is not None:
        engine.set_universal_cap(payer, args.universal_cap)

    session = engine.start_session(
        args.rate,
        args.currency,
        rate_unit=args.unit,
        payer_id=payer,
        session_cap=args.session_cap,
    )
    print(f"Session {session.session_id} started at {args.rate} {args.currency}/{TimeUnit.parse(args.unit).value}")

    tick_ns = args.tick_ms * NS_PER_MILLISECOND
    end_ns = int(args.seconds * 1000) * NS_PER_MILLISECOND
    last_reported = -1
    while clock.now_ns() < end_ns:
        clock.advance(ns=tick_ns)
        result = engine.tick(session.session_id)
        seconds = result.breakdown.duration.total_seconds
        if seconds != last_reported:
            last_reported = seconds
            print(
                f"  {result.breakdown.duration.clock}  "
                f"{round_money(result.breakdown.total_cost, 4)} {args.currency}  "
                f"[{result.evaluation.status.value}]"
            )
        if result.stopped:
            print(f"Stopped: {result.evaluation.message}")
            break

    final = engine.stop_session(session.session_id)
    print("Final Billing")
    print("=" * 40)
    print(f"Duration: {final.duration.formatted}")
    print(f"Total: {round_money(final.total_cost)} {final.currency}")

    record = engine.settlements.initiate(
        session.session_id,
        args.pay if args.pay is not None else final.total_cost,
        destination=payer,
    )
    print(f"Settlement {record.settlement_id}: charged {round_money(record.charged_amount)} {record.currency}"
          f" = {round_money(record.unit_amount, 8)} {record.unit_symbol}")
    if record.clamped:
        print(f"  Warning: {record.warning}")

    status = engine.payer_status(payer)
    print(f"Lifetime spend: {status['lifetime_spend']} (cap: {status['universal_cap'] or 'none'})")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Meter Rail - Nanosecond Metering and Settlement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "WARNING"))
    parser.add_argument("--log-json", action="store_true")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # quote
    quote_parser = subparsers.add_parser("quote", help="Price a duration")
    quote_parser.add_argument("cost", help="Service cost per time unit")
    quote_parser.add_argument("--unit", default="hour", help="minute, hour or day")
    quote_parser.add_argument("--duration", type=int, default=1, help="Duration value")
    quote_parser.add_argument("--duration-unit", default="h", help="ns, us, ms, s, m, h or d")
    quote_parser.add_argument("--currency", default="USD")
    quote_parser.add_argument("--budget", help="Show how long this budget lasts")

    # convert
    convert_parser = subparsers.add_parser("convert", help="Convert fiat to a settlement unit")
    convert_parser.add_argument("amount", help="Fiat amount")
    convert_parser.add_argument("--currency", default="USD")
    convert_parser.add_argument("--unit", default="ETH")

    # simulate
    simulate_parser = subparsers.add_parser("simulate", help="Run a simulated session")
    simulate_parser.add_argument("--rate", default="3600", help="Cost per time unit")
    simulate_parser.add_argument("--unit", default="hour")
    simulate_parser.add_argument("--currency", default="USD")
    simulate_parser.add_argument("--seconds", type=float, default=5.0, help="Simulated run length")
    simulate_parser.add_argument("--tick-ms", type=int, default=100)
    simulate_parser.add_argument("--payer", default="simulated-payer")
    simulate_parser.add_argument("--session-cap")
    simulate_parser.add_argument("--universal-cap")
    simulate_parser.add_argument("--lifetime-spend", help="Prior lifetime spend to seed")
    simulate_parser.add_argument("--pay", help="Amount to settle (defaults to the final cost)")
    simulate_parser.add_argument("--settlement-unit", default="ETH")
    simulate_parser.add_argument("--no-auto-stop", action="store_true")

    args = parser.parse_args(argv)
    configure_logging(args.log_level, json_output=args.log_json)

    commands = {
        "serve": cmd_serve,
        "quote": cmd_quote,
        "convert": cmd_convert,
        "simulate": cmd_simulate,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return

    try:
        command(args)
    except MeterRailError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
