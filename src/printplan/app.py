from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import datetime
from pathlib import Path

from printplan.data.db import Db
from printplan.data.repository import Repository
from printplan.data.workbook import WorkbookError, load_workbook
from printplan.logging_conf import configure_logging
from printplan.planner.api import PlanRunResult
from printplan.planner.orchestrator import PlanningOrchestrator
from printplan.planner.persist import list_run_results
from printplan.planner.preload import STRATEGY_DEMAND, STRATEGY_TIME, allocation_summary
from printplan.settings import Settings, default_db_path, default_store_path
from printplan.sync.local_cache import LocalPlanCache
from printplan.sync.plan_version import PlanVersionService
from printplan.sync.sqlite_store import SqlitePlanStore

logger = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="3D printer production planner")
    parser.add_argument("--db", type=Path, default=default_db_path(), help="Local database")
    parser.add_argument("--store", type=Path, default=default_store_path(), help="Canonical plan store database")
    parser.add_argument("--workspace", type=str, default="default")
    parser.add_argument("--log-level", type=str, default="INFO")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file")

    sub = parser.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan", help="Plan from a workbook")
    plan.add_argument("workbook", type=Path)
    plan.add_argument("--now", type=datetime.fromisoformat, default=None, help="Planning start (ISO datetime)")
    plan.add_argument("--strategy", choices=[STRATEGY_DEMAND, STRATEGY_TIME], default=STRATEGY_DEMAND)
    plan.add_argument("--reason", type=str, default="manual_replan")
    plan.add_argument("--force", action="store_true", help="Recompute tonight's plate allocation")
    plan.add_argument("--publish", action="store_true", help="Publish the plan to the store")

    sub.add_parser("sync", help="Pull the active plan from the store if it changed")

    history = sub.add_parser("history", help="Show recent planner runs")
    history.add_argument("--limit", type=int, default=10)
    return parser


def _print_run(run: PlanRunResult) -> None:
    print("Deadline allocations:")
    for a in run.phase_a.allocations:
        print(
            f"  {a.project_name:<24} {a.risk_level:<10} printers={a.min_printers_needed:<3} "
            f"margin={a.margin_hours:7.1f}h daily={a.daily_target_units}"
        )
    print(f"  total printers needed: {run.phase_a.total_printers_needed}")

    print(f"Cycles kept: {len(run.phase_b.cycles)}  night cycles skipped: {len(run.phase_b.skipped_nights)}")
    for skip in run.phase_b.skipped_nights:
        print(f"  - {skip.printer_name}: {skip.cycle_id} ({skip.reason})")

    summary = allocation_summary(run.preload)
    print(
        f"Tonight's preload: {summary.total_allocated}/{summary.global_inventory} plates "
        f"({summary.utilization_percent}%), demand {summary.total_demand}"
    )
    for p in run.preload.printers:
        print(f"  {p.printer_name:<16} load {p.allocated_plates} plate(s), deferred {p.deferred_cycles}")
    if summary.constraint_message:
        print(f"  {summary.constraint_message}")

    for w in run.warnings:
        print(f"WARNING: {w}")


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    db = Db(settings.db_path)
    db.ensure_schema()
    repo = Repository(db)

    if args.command == "history":
        for entry in list_run_results(db, limit=args.limit):
            status = "ok" if entry["success"] else "failed"
            print(
                f"{entry['run_timestamp']}  {entry['reason']:<16} {status:<6} "
                f"cycles={entry['cycles_planned']} skipped={entry['night_cycles_skipped']}"
            )
        return 0

    service = PlanVersionService(
        SqlitePlanStore(settings.store_path),
        LocalPlanCache(db, settings.workspace_id),
        settings.workspace_id,
    )

    if args.command == "sync":
        update = await service.check_for_plan_update()
        if update.error:
            print(f"Sync failed: {update.error}")
            return 1
        if update.updated:
            print(f"Loaded plan {update.version} ({update.cycles_loaded} cycles)")
        else:
            print(f"Plan is current ({update.version or 'no plan published'})")
        return 0

    try:
        data = load_workbook(args.workbook)
    except WorkbookError as exc:
        logger.error("Workbook rejected: %s", exc)
        print(f"Workbook error: {exc}")
        return 2

    if data.settings is not None:
        logger.info("Applying factory settings from %s", args.workbook)
        repo.save_factory_settings(data.settings)

    orchestrator = PlanningOrchestrator(repo, version_service=service)
    result = await orchestrator.run_plan(
        data,
        now=args.now,
        reason=args.reason,
        strategy=args.strategy,
        force=args.force,
        publish=args.publish,
    )
    if result["status"] != "success":
        print(result["message"])
        return 1

    _print_run(result["run"])
    published = result.get("publish")
    if published is not None:
        if published["success"]:
            print(f"Published plan {published['plan_version']} ({published['cycles_created']} cycles)")
        else:
            print(f"Plan not published: {published['error']}")
            return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    settings = Settings(
        db_path=args.db,
        store_path=args.store,
        workspace_id=args.workspace,
        log_level=args.log_level,
        log_file=args.log_file,
    )
    configure_logging(settings.log_level, log_file=settings.log_file)
    return asyncio.run(_run(args, settings))
