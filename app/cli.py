import argparse
import json
import logging
import sys

from app import jobs
from app.config import get_settings
from app.models.integration import EntityKind
from app.schemas.integration import SeedCounts


def _print(result) -> None:
    if isinstance(result, list):
        print(json.dumps([r.model_dump(mode="json") for r in result], indent=2))
    else:
        print(json.dumps(result.model_dump(mode="json"), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m app.cli", description="PMS sync engine jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Pull changed entities for one configuration (or --all)")
    sync.add_argument("config_id", type=int, nargs="?")
    sync.add_argument("--all", action="store_true", help="Every active configuration")
    sync.add_argument("--kind", action="append", choices=[k.value for k in EntityKind], dest="kinds")

    reference = sub.add_parser("reference-sync", help="Pull providers, operatories and appointment types")
    reference.add_argument("config_id", type=int)

    health = sub.add_parser("health", help="Probe one configuration (or --all)")
    health.add_argument("config_id", type=int, nargs="?")
    health.add_argument("--all", action="store_true", help="Every active configuration")

    seed = sub.add_parser("seed", help="Create demo appointments, payments and adjustments in the PMS")
    seed.add_argument("config_id", type=int)
    seed.add_argument("--appointments", type=int, default=20)
    seed.add_argument("--payments", type=int, default=10)
    seed.add_argument("--adjustments", type=int, default=5)

    push = sub.add_parser("push", help="Push one internal record to the PMS")
    push.add_argument("config_id", type=int)
    push.add_argument("kind", choices=[EntityKind.APPOINTMENTS.value, EntityKind.PAYMENTS.value, EntityKind.ADJUSTMENTS.value])
    push.add_argument("record_id", type=int)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command in ("sync", "health") and not args.all and args.config_id is None:
        print("ERROR: pass a config_id or --all.")
        return 2

    if args.command == "sync":
        if args.all:
            _print(jobs.run_incremental_sync_all())
        else:
            kinds = [EntityKind(k) for k in args.kinds] if args.kinds else None
            _print(jobs.run_incremental_sync(args.config_id, kinds=kinds))
    elif args.command == "reference-sync":
        _print(jobs.run_reference_sync(args.config_id))
    elif args.command == "health":
        _print(jobs.run_health_check_all() if args.all else jobs.run_health_check(args.config_id))
    elif args.command == "seed":
        counts = SeedCounts(appointments=args.appointments, payments=args.payments, adjustments=args.adjustments)
        _print(jobs.seed_external_data(args.config_id, counts))
    elif args.command == "push":
        _print(jobs.push_record(args.config_id, EntityKind(args.kind), args.record_id))
    return 0


if __name__ == "__main__":
    sys.exit(main())
