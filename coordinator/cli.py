"""
Flight Orchestrator - Coordinator CLI

Usage:
    # Run one flight to completion (demo timing) and print its transitions
    python -m coordinator.cli flight --number DEMO100 --date 2026-01-27 \\
        --origin ORD --destination DFW --gate B12 --delay 45

    # Run a journey described in a JSON or YAML file
    python -m coordinator.cli journey --file journey.yaml

    # Show the durable history of an instance
    python -m coordinator.cli history flight-DEMO100-2026-01-27

    # Resume every running instance in the durable log and wait for them
    python -m coordinator.cli recover

    # Show durable log statistics
    python -m coordinator.cli stats

journey.yaml:
    journey_id: J-001
    legs:
      - {flight_number: AA100, flight_date: 2026-01-27, origin: ORD, destination: DFW, aircraft: N123AA}
      - {flight_number: AA200, flight_date: 2026-01-27, origin: DFW, destination: LAX}
"""

import argparse
import json
import sys
import time
from pathlib import Path

import yaml

from coordinator.config import OrchestratorConfig
from coordinator.runtime import Coordinator
from engine.errors import OrchestratorError
from engine.logging import configure_logging


def _print_transitions(coord: Coordinator, flight_number: str, flight_date: str):
    rows = coord.transitions(flight_number, flight_date)
    print(f"\n  {flight_number} {flight_date} ({len(rows)} transitions)", file=sys.stderr)
    print(f"  {'─' * 66}", file=sys.stderr)
    for t in rows:
        print(f"  {t['timestamp']}  {str(t['from_phase']):10s} → {t['to_phase']:10s} "
              f"gate={t['gate'] or '-':5s} delay={t['delay_minutes']}", file=sys.stderr)


def cmd_flight(args, coord: Coordinator):
    """Run one flight through the orchestrator."""
    flight = {
        "flight_number": args.number,
        "flight_date": args.date,
        "origin": args.origin,
        "destination": args.destination,
        "gate": args.gate,
        "aircraft": args.aircraft,
        "demo_mode": not args.realtime,
    }
    start = time.time()
    instance_id = coord.start_flight(flight)
    print(f"\n{'═' * 70}", file=sys.stderr)
    print(f"  FLIGHT: {instance_id}", file=sys.stderr)
    print(f"{'═' * 70}", file=sys.stderr, flush=True)

    if args.delay:
        coord.announce_delay(instance_id, args.delay)
    if args.new_gate:
        coord.change_gate(instance_id, args.new_gate)
    if args.cancel:
        coord.cancel_flight(instance_id, args.cancel)

    result = coord.wait(instance_id, timeout=args.timeout)
    _print_transitions(coord, args.number, args.date)
    print(f"\n  final phase: {result['phase']}  ({time.time() - start:.1f}s)", file=sys.stderr)
    print(json.dumps(result, indent=2))


def cmd_journey(args, coord: Coordinator):
    """Run a multi-leg journey from a file."""
    path = Path(args.file)
    if not path.exists():
        print(f"Error: journey file not found: {args.file}", file=sys.stderr)
        sys.exit(1)
    with open(path) as f:
        spec = json.load(f) if path.suffix == ".json" else yaml.safe_load(f)

    legs = spec.get("legs") or spec.get("flights") or []
    if not args.realtime:
        legs = [{**leg, "demo_mode": True} for leg in legs]
    instance_id = coord.start_journey(str(spec.get("journey_id", "")), legs)
    print(f"\n{'═' * 70}", file=sys.stderr)
    print(f"  JOURNEY: {instance_id} ({len(legs)} legs)", file=sys.stderr)
    print(f"{'═' * 70}", file=sys.stderr, flush=True)

    if args.cancel:
        coord.cancel_journey(instance_id, args.cancel)

    result = coord.wait(instance_id, timeout=args.timeout)
    for leg in result:
        _print_transitions(coord, leg["flight_number"], leg["flight_date"])
    print(json.dumps(result, indent=2))


def cmd_history(args, coord: Coordinator):
    """Show the durable history of an instance."""
    entries = coord.history(args.instance_id)
    print(f"\nHistory of {args.instance_id} ({len(entries)} events)")
    print(f"{'─' * 70}")
    for e in entries:
        ts = time.strftime("%H:%M:%S", time.localtime(e["recorded_at"]))
        print(f"  [{ts}] {e['seq']:4d} {e['event_type']:20s}")
        if args.verbose:
            for k, v in e["payload"].items():
                print(f"           {k}: {str(v)[:60]}")


def cmd_recover(args, coord: Coordinator):
    """Resume running instances and wait for them to finish."""
    recovered = coord.recover() or [
        i.instance_id for i in coord.runtime.instances() if not i.completed]
    if not recovered:
        print("No running instances.")
        return
    for instance_id in recovered:
        print(f"  resuming {instance_id}", file=sys.stderr, flush=True)
    for instance_id in recovered:
        result = coord.wait(instance_id, timeout=args.timeout)
        print(f"  {instance_id}: done")
        if args.verbose:
            print(json.dumps(result, indent=2))


def cmd_stats(args, coord: Coordinator):
    """Show durable log statistics."""
    print(json.dumps(coord.stats(), indent=2))


def main():
    parser = argparse.ArgumentParser(
        description="Flight Orchestrator - Coordinator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default="config/orchestrator.yaml",
                        help="Base config YAML (default: config/orchestrator.yaml)")
    parser.add_argument("--env", default="", help="Config overlay profile (overrides FO_ENV)")
    parser.add_argument("--db", default=None, help="Durable log path (overrides runtime.db_path)")

    subs = parser.add_subparsers(dest="command", help="Command")

    flight_p = subs.add_parser("flight", help="Run one flight")
    flight_p.add_argument("--number", "-n", required=True)
    flight_p.add_argument("--date", "-d", required=True)
    flight_p.add_argument("--origin", "-o", required=True)
    flight_p.add_argument("--destination", "-t", required=True)
    flight_p.add_argument("--gate", "-g", default=None)
    flight_p.add_argument("--aircraft", "-a", default=None)
    flight_p.add_argument("--delay", type=int, default=0, help="Announce a delay (minutes)")
    flight_p.add_argument("--new-gate", default="", help="Send a gate change")
    flight_p.add_argument("--cancel", default="", help="Cancel with this reason")
    flight_p.add_argument("--realtime", action="store_true", help="Use realtime phase durations")
    flight_p.add_argument("--timeout", type=float, default=None)

    journey_p = subs.add_parser("journey", help="Run a multi-leg journey")
    journey_p.add_argument("--file", "-f", required=True)
    journey_p.add_argument("--cancel", default="", help="Cancel the journey with this reason")
    journey_p.add_argument("--realtime", action="store_true")
    journey_p.add_argument("--timeout", type=float, default=None)

    history_p = subs.add_parser("history", help="Show durable history")
    history_p.add_argument("instance_id")
    history_p.add_argument("--verbose", "-v", action="store_true")

    recover_p = subs.add_parser("recover", help="Resume running instances")
    recover_p.add_argument("--timeout", type=float, default=None)
    recover_p.add_argument("--verbose", "-v", action="store_true")

    subs.add_parser("stats", help="Show statistics")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = OrchestratorConfig.load(base_path=args.config, env=args.env)
    if args.db is not None:
        config.runtime.db_path = args.db
    configure_logging(level=config.log_level)

    coord = Coordinator(config=config, verbose=True, recover=False)
    commands = {
        "flight": cmd_flight,
        "journey": cmd_journey,
        "history": cmd_history,
        "recover": cmd_recover,
        "stats": cmd_stats,
    }
    try:
        commands[args.command](args, coord)
    except OrchestratorError as e:
        print(f"\n  ✗ FAILED: {type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        coord.shutdown()


if __name__ == "__main__":
    main()
