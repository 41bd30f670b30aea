#!/usr/bin/env python3
"""
walletwars/cli.py - Command line interface for the WalletWars coordinator

Usage:
    walletwars serve [--port 8000] [--db walletwars.db]
    walletwars deploy [--dry-run]
    walletwars tick
    walletwars status [<tournament_id>]
    walletwars circuits --server http://localhost:8000 [--reset NAME]
    walletwars check-config
"""

import argparse
import asyncio
import json
import logging
import sys
import urllib.error
import urllib.request
from pathlib import Path

logger = logging.getLogger(__name__)


def _load(args):
    from walletwars.config import load_config

    config = load_config(Path(args.config) if args.config else None)
    if args.db:
        config.db_path = args.db
    return config


def _build(config):
    """Wire up store, safety, escrow, controller and trigger for a one-shot command."""
    from arena.db import ArenaDB
    from walletwars.deployment import DeploymentTrigger
    from walletwars.escrow import create_escrow_client
    from walletwars.lifecycle import LifecycleController
    from walletwars.safety import SafetyRegistry

    db = ArenaDB(config.db_path)
    safety = SafetyRegistry.from_config(config.safety)
    escrow = create_escrow_client(config, safety)
    controller = LifecycleController(db, escrow, safety, schedule=config.schedule)
    trigger = DeploymentTrigger(controller, db, safety, config.schedule, config.variants)
    return db, controller, trigger


def cmd_serve(args):
    """Start the coordinator HTTP service with the periodic trigger."""
    try:
        import uvicorn
    except ImportError:
        logger.error("serve requires uvicorn: pip install walletwars")
        return 1

    from arena.server import app

    # Lifespan reads these
    app.state.db_path = args.db
    app.state.config_path = args.config
    app.state.run_trigger = not args.no_trigger
    logger.info(f"Starting WalletWars coordinator on port {args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")
    return 0


def cmd_deploy(args):
    """Create missing tournaments inside the lookahead window."""
    from walletwars.errors import WalletWarsError

    config = _load(args)
    db, _, trigger = _build(config)

    if args.dry_run:
        print("\nUpcoming deployment slots\n")
        for slot in trigger.upcoming_deployment_dates():
            print(f"  {slot:%a %Y-%m-%d %H:%M} UTC")
        print()
        db.close()
        return 0

    try:
        report = asyncio.run(trigger.deploy_upcoming())
    except WalletWarsError as e:
        logger.error(f"Deployment failed: {e}")
        return 1
    finally:
        db.close()

    for tid in report.created:
        print(f"  created  {tid}")
    for tid in report.failed:
        print(f"  FAILED   {tid}")
    print(f"\n{len(report.created)} created, {len(report.skipped)} skipped, {len(report.failed)} failed")
    return 1 if report.failed else 0


def cmd_tick(args):
    """Run one deployment + transition pass and exit."""
    from walletwars.errors import WalletWarsError

    config = _load(args)
    db, _, trigger = _build(config)
    try:
        report = asyncio.run(trigger.tick())
    except WalletWarsError as e:
        logger.error(f"Tick failed: {e}")
        return 1
    finally:
        db.close()

    for r in report.transitions:
        marker = "->" if r.applied else "  "
        to_status = r.to_status.value if r.to_status else "?"
        print(f"  {r.tournament_id:<45} {r.from_status.value:>13} {marker} {to_status:<13} {r.detail}")
    for tid, summary in report.settlements.items():
        print(f"  {tid:<45} settlements: {summary.sent} sent, {summary.failed} failed, {summary.pending} pending")
    print(f"\n{len(report.deployment.created)} deployed, {len(report.transitions)} due")
    return 0


def cmd_status(args):
    """Show tournaments, or one tournament's lifecycle status."""
    from walletwars.errors import NotFound
    from walletwars.models import TournamentInstance

    config = _load(args)
    db, controller, _ = _build(config)
    try:
        if args.tournament_id:
            try:
                status = asyncio.run(controller.lifecycle_status(args.tournament_id))
            except NotFound as e:
                logger.error(str(e))
                return 1
            print(json.dumps(status, indent=2))
            return 0

        rows = db.list_tournaments(status=args.status)
    finally:
        db.close()

    print(f"\n{'ID':<45} {'Status':<14} {'Players':>8} {'Pool':>10}  Start (UTC)")
    print("-" * 100)
    for row in rows:
        t = TournamentInstance.from_row(row)
        players = f"{t.participant_count}/{t.max_participants}"
        print(f"{t.id:<45} {t.status.value:<14} {players:>8} {t.total_prize_pool:>10}  {t.start_time:%Y-%m-%d %H:%M}")
    print()
    return 0


def cmd_circuits(args):
    """Show (or reset) circuit breakers of a running coordinator."""
    server = args.server.rstrip("/")
    if args.reset:
        req = urllib.request.Request(f"{server}/admin/circuits/{args.reset}/reset", method="POST")
    else:
        req = urllib.request.Request(f"{server}/admin/circuits")

    try:
        with urllib.request.urlopen(req) as resp:
            data = json.loads(resp.read())
    except urllib.error.HTTPError as e:
        logger.error(f"Server returned {e.code}: {e.read().decode(errors='replace')}")
        return 1
    except urllib.error.URLError as e:
        logger.error(f"Could not reach {server}: {e.reason}")
        return 1

    circuits = [data] if isinstance(data, dict) else data
    print(f"\n{'Circuit':<15} {'State':<10} {'Failures':>9} {'Retry in':>9}")
    print("-" * 46)
    for c in circuits:
        threshold = f"{c['failures']}/{c['failure_threshold']}"
        print(f"{c['name']:<15} {c['state']:<10} {threshold:>9} {c['time_until_retry']:>8.0f}s")
    print()
    return 0


def cmd_check_config(args):
    """Validate the config file and print any problems."""
    from walletwars.config import CONFIG_PATH, validate_config

    config = _load(args)
    issues = validate_config(config)
    print(f"Config: {args.config or CONFIG_PATH}")
    if not issues:
        print("OK")
        return 0
    for issue in issues:
        print(f"  - {issue}")
    return 1


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    parser = argparse.ArgumentParser(
        prog="walletwars",
        description="Tournament lifecycle and escrow settlement coordinator",
    )
    parser.add_argument("--config", default=None, help="Config file (default: ~/.walletwars/config.toml)")
    parser.add_argument("--db", default=None, help="SQLite database path (overrides config)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the coordinator HTTP service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    serve_parser.add_argument("--port", "-p", type=int, default=8000, help="Server port (default: 8000)")
    serve_parser.add_argument("--no-trigger", action="store_true", help="Don't run the periodic deployment trigger")
    serve_parser.set_defaults(func=cmd_serve)

    # deploy command
    deploy_parser = subparsers.add_parser("deploy", help="Create upcoming tournaments now")
    deploy_parser.add_argument("--dry-run", action="store_true", help="Only list upcoming deployment slots")
    deploy_parser.set_defaults(func=cmd_deploy)

    # tick command
    tick_parser = subparsers.add_parser("tick", help="Run one deployment + transition pass")
    tick_parser.set_defaults(func=cmd_tick)

    # status command
    status_parser = subparsers.add_parser("status", help="Show tournaments")
    status_parser.add_argument("tournament_id", nargs="?", help="Show one tournament in detail")
    status_parser.add_argument("--status", default=None, help="Filter by status")
    status_parser.set_defaults(func=cmd_status)

    # circuits command
    circuits_parser = subparsers.add_parser("circuits", help="Show circuit breakers of a running server")
    circuits_parser.add_argument("--server", default="http://localhost:8000", help="Coordinator URL")
    circuits_parser.add_argument("--reset", metavar="NAME", default=None, help="Force a breaker closed")
    circuits_parser.set_defaults(func=cmd_circuits)

    # check-config command
    check_parser = subparsers.add_parser("check-config", help="Validate the config file")
    check_parser.set_defaults(func=cmd_check_config)

    args = parser.parse_args()
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
