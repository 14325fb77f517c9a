from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = REPO_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from pnl_statements.config.paths import data_dir, default_db_path, ensure_data_dirs
from pnl_statements.config.settings import StoreBackend, get_settings


def _cmd_init_db(_: argparse.Namespace) -> int:
    from pnl_statements.db.migrate import migrate

    migrate()
    print("Initialized database schema.")
    return 0


def _cmd_paths(_: argparse.Namespace) -> int:
    ensure_data_dirs()
    settings = get_settings()
    print(f"DATA_DIR={data_dir()}")
    print(f"DB_PATH={default_db_path()}")
    print(f"DATABASE_URL={settings.database_url}")
    print(f"STORE_BACKEND={settings.store_backend.value}")
    return 0


def _cmd_ingest(args: argparse.Namespace) -> int:
    from pnl_statements.db.store import build_store
    from pnl_statements.services.batch import Scenario, load_payload, process_batch
    from pnl_statements.services.orchestrator import IngestionPipeline

    settings = get_settings()
    pipeline = IngestionPipeline(build_store(settings), settings)
    scenarios = [
        Scenario(scenario_id=Path(path).stem, payload=load_payload(path), title=str(path))
        for path in args.files
    ]
    result = process_batch(pipeline, scenarios, reset_first=args.reset_first)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        columns = ["scenario_id", "report_state", "validation_status", "overall_status", "error"]
        print(result.results[columns].to_string(index=False))
    return 1 if result.tally("overall_status")["ERROR"] else 0


def _cmd_reset(_: argparse.Namespace) -> int:
    from pnl_statements.db.store import build_store
    from pnl_statements.services.queries import OpsQueries

    settings = get_settings()
    if settings.store_backend == StoreBackend.MEMORY:
        print("Nothing to reset: the memory backend keeps no state between runs.")
        print("Set PNL_STORE_BACKEND=sql to reset the configured database.")
        return 0
    OpsQueries(build_store(settings), settings).reset_all()
    print("Cleared clients, report versions, tax reports and audit trail.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="P&L statements developer CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sp_init_db = subparsers.add_parser("init-db", help="Create/update local database schema")
    sp_init_db.set_defaults(func=_cmd_init_db)

    sp_paths = subparsers.add_parser("paths", help="Print configured project paths")
    sp_paths.set_defaults(func=_cmd_paths)

    sp_ingest = subparsers.add_parser("ingest", help="Process JSON statement files in order")
    sp_ingest.add_argument("files", nargs="+", help="Statement JSON files.")
    sp_ingest.add_argument(
        "--reset-first",
        action="store_true",
        help="Clear all state before processing.",
    )
    sp_ingest.add_argument("--json", action="store_true", help="Print the full batch summary as JSON.")
    sp_ingest.set_defaults(func=_cmd_ingest)

    sp_reset = subparsers.add_parser("reset", help="Clear all stored state (sql backend)")
    sp_reset.set_defaults(func=_cmd_reset)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
