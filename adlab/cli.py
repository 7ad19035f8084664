"""
ADLAB EXPERIMENT ENGINE
Multi-variant ad experiments on the Meta ads platform

Command line entry point wiring:
- Experiment builder (campaign -> ad set -> one ad per creative variant)
- Experiment lifecycle (activate, pause, archive, declare winner, delete)
- Analytics sync (single experiment, one owner, full sweep, background schedule)
- KPI / trend reports over the local metrics store
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, List, Optional, Sequence

import jsonschema
from dotenv import load_dotenv

from .analytics.sync import AnalyticsSync, SyncConfig
from .analytics.trends import daily_series, kpi_report, staleness, variant_leaderboard
from .config import DEFAULT_SCHEMA_PATH, DEFAULT_SETTINGS_PATH, Settings, load_settings
from .infrastructure.creative_storage import AssetSigner, create_asset_signer
from .infrastructure.error_handling import AdlabError, BuildFailure, ValidationError
from .infrastructure.scheduler import BackgroundScheduler
from .infrastructure.storage import Store
from .integrations.meta_client import MetaClientFactory
from .integrations.slack import notify
from .models import BuildRequest, BuildResult, Creative, Experiment, ExperimentStatus, Owner
from .stages.builder import BuilderConfig, ExperimentBuilder
from .stages.cleanup import Cleanup
from .stages.lifecycle import ExperimentLifecycle
from .utils import Timekit, TZConfig, iso_no_micro

logger = logging.getLogger(__name__)

NOISY_LOGGERS = ("urllib3", "facebook_business", "httpx", "httpcore", "supabase", "hpack")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@dataclass
class App:
    settings: Settings
    store: Store
    timekit: Timekit
    lifecycle: ExperimentLifecycle
    builder: ExperimentBuilder
    sync: AnalyticsSync
    cleanup: Cleanup
    client_factory: MetaClientFactory


def build_app(settings: Settings, signer: Optional[AssetSigner] = None, store: Optional[Store] = None) -> App:
    store = store or Store(settings.sqlite_path)
    timekit = Timekit(TZConfig(settings.timezone))
    factory = MetaClientFactory(settings.meta)
    lifecycle = ExperimentLifecycle(store, factory, timekit)
    builder = ExperimentBuilder(
        store,
        store,
        signer or create_asset_signer(settings),
        factory,
        BuilderConfig.from_settings(settings),
    )
    sync = AnalyticsSync(store, factory, lifecycle, timekit, SyncConfig.from_settings(settings))
    return App(
        settings=settings,
        store=store,
        timekit=timekit,
        lifecycle=lifecycle,
        builder=builder,
        sync=sync,
        cleanup=Cleanup(store, factory),
        client_factory=factory,
    )


# -------------------------
# Output helpers
# -------------------------
def _emit(obj: Any) -> None:
    print(json.dumps(obj, indent=2, default=str, ensure_ascii=False))


def _experiment_view(exp: Experiment, timekit: Timekit) -> Dict[str, Any]:
    age = staleness(exp.last_synced_at, timekit.now_utc())
    return {
        "id": exp.id,
        "owner_id": exp.owner_id,
        "name": exp.name,
        "status": exp.status.value,
        "objective": exp.objective,
        "daily_budget": exp.daily_budget,
        "budget_total": exp.budget_total,
        "duration_days": exp.duration_days,
        "variants": list(exp.variant_creative_ids),
        "campaign_id": exp.external_campaign_id,
        "adset_id": exp.external_adset_id,
        "winner_creative_id": exp.winner_creative_id,
        "start_date": exp.start_date,
        "end_date": exp.end_date,
        "last_synced_at": iso_no_micro(exp.last_synced_at),
        "stale_minutes": None if age is None else int(age.total_seconds() // 60),
    }


def _build_view(result: BuildResult, timekit: Timekit) -> Dict[str, Any]:
    return {
        "status": result.status,
        "reused": result.reused,
        "experiment": _experiment_view(result.experiment, timekit),
        "succeeded": [asdict(o) for o in result.succeeded],
        "failed": [asdict(o) for o in result.failed],
        "daily_budget": None if result.budget is None else result.budget.daily,
        "warnings": result.warnings,
    }


def _split_ids(raw: str) -> List[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


# -------------------------
# Commands
# -------------------------
def cmd_connect(app: App, args: argparse.Namespace) -> int:
    owner = Owner(
        owner_id=args.owner,
        access_token=args.token,
        ad_account_id=args.account,
        page_id=args.page,
        token_valid=True,
    )
    if not app.client_factory(owner).can_access_account():
        raise ValidationError(f"ad account {args.account} is not accessible with this token")
    app.store.upsert_owner(owner)
    app.store.log(entity_type="owner", entity_id=args.owner, action="CONNECT")
    _emit({"owner_id": args.owner, "connected": True})
    return 0


def cmd_add_creative(app: App, args: argparse.Namespace) -> int:
    asset_ref = args.asset or ""
    if args.upload:
        upload = getattr(app.builder.signer, "upload_creative", None)
        if upload is None:
            raise AdlabError("--upload needs assets.backend=supabase")
        asset_ref = upload(args.id, args.upload)
    app.store.upsert_creative(Creative(
        creative_id=args.id,
        owner_id=args.owner,
        headline=args.headline or "",
        body=args.body or "",
        cta=args.cta or "",
        asset_ref=asset_ref,
        link_url=args.link,
    ))
    _emit({"creative_id": args.id, "asset_ref": asset_ref})
    return 0


def cmd_create(app: App, args: argparse.Namespace) -> int:
    audience = json.loads(args.audience) if args.audience else None
    req = BuildRequest(
        owner_id=args.owner,
        name=args.name,
        creative_ids=tuple(_split_ids(args.creatives)),
        budget_total=args.budget,
        duration_days=args.days,
        objective=args.objective,
        audience=audience,
        request_key=args.request_key,
    )
    try:
        result = app.builder.build(req)
    except BuildFailure as e:
        if e.orphaned_campaign_id:
            notify(f"🧹 Campaign {e.orphaned_campaign_id} orphaned by failed build; queued for cleanup", severity="warn", topic="alerts")
        raise
    _emit(_build_view(result, app.timekit))
    return 0 if result.status != "degraded" else 3


def cmd_retry_variants(app: App, args: argparse.Namespace) -> int:
    result = app.builder.retry_failed_variants(args.experiment)
    _emit(_build_view(result, app.timekit))
    return 0


def cmd_sync(app: App, args: argparse.Namespace) -> int:
    if args.owner:
        _emit(app.sync.sync_owner(args.owner).as_dict())
        return 0
    if not args.experiment:
        raise AdlabError("sync needs an experiment id or --owner")
    outcome = app.sync.sync_experiment(args.experiment)
    _emit(asdict(outcome))
    return 0


def cmd_sweep(app: App, args: argparse.Namespace) -> int:
    report = app.sync.sweep()
    _emit(report.as_dict())
    return 0 if not report.failed else 4


def cmd_schedule(app: App, args: argparse.Namespace) -> int:
    interval = args.interval or app.settings.sync.interval_minutes
    scheduler = BackgroundScheduler(app.sync, interval_minutes=interval, cleanup=app.cleanup)
    stop = threading.Event()

    def _handle(signum, _frame):
        logger.info("Signal %s received; stopping scheduler", signum)
        stop.set()
        scheduler.cancel()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)
    if args.run_now:
        scheduler.run_once()
    if stop.is_set():
        return 0
    scheduler.start()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        scheduler.stop()
    return 0


def cmd_status(app: App, args: argparse.Namespace) -> int:
    exp = app.lifecycle.set_remote_status(args.experiment, args.status)
    _emit(_experiment_view(exp, app.timekit))
    return 0


def cmd_declare_winner(app: App, args: argparse.Namespace) -> int:
    exp = app.lifecycle.declare_winner(args.experiment, args.creative)
    _emit(_experiment_view(exp, app.timekit))
    return 0


def cmd_delete(app: App, args: argparse.Namespace) -> int:
    _emit({"experiment_id": args.experiment, "deleted": app.lifecycle.delete(args.experiment)})
    return 0


def cmd_kpis(app: App, args: argparse.Namespace) -> int:
    exp = app.store.get_experiment(args.experiment)
    if exp is None:
        raise AdlabError(f"experiment {args.experiment} not found")
    start, end = app.timekit.last_n_days_account(args.days)
    records = app.store.list_daily(exp.id)
    out: Dict[str, Any] = {
        "experiment": _experiment_view(exp, app.timekit),
        "window": {"start": start, "end": end},
        "kpis": {
            name: {
                "current": k.current,
                "previous": k.previous,
                "change_pct": round(k.trend.change_pct, 2),
                "trend": k.trend.direction,
            }
            for name, k in kpi_report(records, start, end, exp.external_campaign_id).items()
        },
    }
    if args.variants:
        ads = {v.external_ad_id: v.creative_id for v in app.store.list_variants(exp.id) if v.external_ad_id}
        out["variants"] = variant_leaderboard(records, ads, start, end)
    if args.series and exp.external_campaign_id:
        out["series"] = daily_series(records, exp.external_campaign_id)
    _emit(out)
    return 0


def cmd_cleanup(app: App, args: argparse.Namespace) -> int:
    _emit(asdict(app.cleanup.run()))
    return 0


def cmd_list(app: App, args: argparse.Namespace) -> int:
    statuses = [ExperimentStatus.parse(s) for s in _split_ids(args.status)] if args.status else None
    exps = app.store.list_experiments(owner_id=args.owner, statuses=statuses)
    _emit([_experiment_view(e, app.timekit) for e in exps])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="adlab", description="Multi-variant ad experiments on Meta")
    parser.add_argument("--settings", default=DEFAULT_SETTINGS_PATH)
    parser.add_argument("--schema", default=DEFAULT_SCHEMA_PATH)
    parser.add_argument("--dry-run", action="store_true", help="never call the ads platform")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("connect", help="store an owner's ads credentials")
    p.add_argument("--owner", required=True)
    p.add_argument("--token", required=True)
    p.add_argument("--account", required=True, help="ad account id (123 or act_123)")
    p.add_argument("--page", required=True)
    p.set_defaults(func=cmd_connect)

    p = sub.add_parser("add-creative", help="register a creative for an owner")
    p.add_argument("--owner", required=True)
    p.add_argument("--id", required=True)
    p.add_argument("--headline")
    p.add_argument("--body")
    p.add_argument("--cta")
    p.add_argument("--asset", help="asset reference (storage path or absolute URL)")
    p.add_argument("--upload", help="local image file to upload to creative storage")
    p.add_argument("--link")
    p.set_defaults(func=cmd_add_creative)

    p = sub.add_parser("create", help="build an experiment from creative ids")
    p.add_argument("--owner", required=True)
    p.add_argument("--name", required=True)
    p.add_argument("--creatives", required=True, help="comma separated creative ids")
    p.add_argument("--budget", type=float, required=True, help="total budget in account currency")
    p.add_argument("--days", type=int, required=True)
    p.add_argument("--objective")
    p.add_argument("--audience", help="targeting spec as JSON")
    p.add_argument("--request-key", dest="request_key")
    p.set_defaults(func=cmd_create)

    p = sub.add_parser("retry-variants", help="re-attempt variants that have no ad yet")
    p.add_argument("experiment")
    p.set_defaults(func=cmd_retry_variants)

    p = sub.add_parser("sync", help="sync one experiment, or every experiment of an owner")
    p.add_argument("experiment", nargs="?")
    p.add_argument("--owner")
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser("sweep", help="run one analytics sweep")
    p.set_defaults(func=cmd_sweep)

    p = sub.add_parser("schedule", help="run periodic sweeps until interrupted")
    p.add_argument("--interval", type=int, default=None, help="minutes between sweeps")
    p.add_argument("--run-now", action="store_true")
    p.set_defaults(func=cmd_schedule)

    p = sub.add_parser("status", help="set ACTIVE / PAUSED / ARCHIVED (mirrored remotely)")
    p.add_argument("experiment")
    p.add_argument("status", choices=["ACTIVE", "PAUSED", "ARCHIVED", "active", "paused", "archived"])
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("declare-winner", help="complete an experiment with a winning creative")
    p.add_argument("experiment")
    p.add_argument("creative")
    p.set_defaults(func=cmd_declare_winner)

    p = sub.add_parser("delete", help="pause (best effort) and delete an experiment")
    p.add_argument("experiment")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("kpis", help="KPIs for the last N days against the previous N")
    p.add_argument("experiment")
    p.add_argument("--days", type=int, default=7)
    p.add_argument("--variants", action="store_true", help="include the per-variant leaderboard")
    p.add_argument("--series", action="store_true", help="include the daily series")
    p.set_defaults(func=cmd_kpis)

    p = sub.add_parser("cleanup", help="retry deletion of orphaned remote objects")
    p.set_defaults(func=cmd_cleanup)

    p = sub.add_parser("list", help="list experiments")
    p.add_argument("--owner")
    p.add_argument("--status", help="comma separated statuses")
    p.set_defaults(func=cmd_list)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    load_dotenv()

    try:
        settings = load_settings(args.settings, args.schema)
    except (ValueError, jsonschema.ValidationError) as e:
        print(f"Fatal configuration error: {e}", file=sys.stderr)
        return 2
    if args.dry_run:
        settings = replace(settings, meta=replace(settings.meta, dry_run=True))

    app = build_app(settings)
    try:
        return args.func(app, args)
    except (AdlabError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        app.store.close()


if __name__ == "__main__":
    sys.exit(main())
