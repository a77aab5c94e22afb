from __future__ import annotations

import argparse
import json
import os
import sys
from collections.abc import Sequence
from dataclasses import asdict
from typing import Any

from masix.config.loader import ConfigLoader, ConfigValidationError
from masix.config.settings import get_settings

R = "\033[0m"
GRN = "\033[92m"
RED = "\033[91m"
DIM = "\033[2m"
BLD = "\033[1m"


def disable_color() -> None:
    global R, GRN, RED, DIM, BLD
    R = ""
    GRN = ""
    RED = ""
    DIM = ""
    BLD = ""


def ok(msg: str) -> None:
    print(f"{GRN}✓{R} {msg}")


def fail(msg: str) -> None:
    print(f"{RED}✗{R} {msg}", file=sys.stderr)


def _json_print(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=True, indent=2, default=str))


def _config_path(args: argparse.Namespace) -> str:
    return getattr(args, "config", None) or get_settings().config_path


def cmd_check_config(args: argparse.Namespace) -> int:
    path = _config_path(args)
    try:
        config = ConfigLoader(path).load_and_validate()
    except ConfigValidationError as exc:
        fail(str(exc))
        return 1

    accounts = config.telegram_accounts()
    if getattr(args, "json", False):
        _json_print(
            {
                "config": path,
                "providers": [p.name for p in config.providers.providers],
                "default_provider": config.providers.default_provider,
                "profiles": [p.name for p in config.bots.profiles],
                "telegram_accounts": [a.account_tag for a in accounts],
            }
        )
        return 0

    ok(f"{path} is valid")
    print(f"{DIM}{'-' * 54}{R}")
    print(f"providers:  {', '.join(p.name for p in config.providers.providers) or '-'}")
    print(f"default:    {config.providers.default_provider or '-'}")
    print(f"profiles:   {', '.join(p.name for p in config.bots.profiles) or '-'}")
    for account in accounts:
        print(f"telegram:   {account.account_tag} -> {account.bot_profile or '(default chain)'} [{account.group_mode.value}]")
    for name, section in (("whatsapp", config.whatsapp), ("sms", config.sms)):
        if section is not None and section.enabled:
            print(f"{name}:{' ' * (11 - len(name))}enabled (read-only)")
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    from masix.persistence.migrations import run_migrations

    database_url = getattr(args, "database_url", None) or get_settings().database_url
    run_migrations(database_url)
    ok(f"database migrated ({database_url.split('://', 1)[0]})")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    if getattr(args, "config", None):
        os.environ["MASIX_CONFIG"] = args.config
        get_settings.cache_clear()
    uvicorn.run(
        "masix.main:app",
        host=args.host or settings.app_host,
        port=args.port or settings.app_port,
        log_config=None,
    )
    return 0


def cmd_cron_list(args: argparse.Namespace) -> int:
    from masix.persistence.store import Store

    store = Store.from_url(getattr(args, "database_url", None) or get_settings().database_url)
    jobs = store.list_cron_jobs(args.account_tag, include_disabled=args.all)
    if getattr(args, "json", False):
        _json_print([asdict(job) for job in jobs])
        return 0
    if not jobs:
        print(f"No reminders for account {args.account_tag}.")
        return 0
    print(f"{BLD}Reminders for {args.account_tag}{R}")
    print(f"{DIM}{'-' * 54}{R}")
    for job in jobs:
        state = "" if job.enabled else f" {RED}[disabled: {job.last_error or 'cancelled'}]{R}"
        when = job.next_run.isoformat() if job.next_run else "-"
        print(f"#{job.id:<5} {when}  {job.recipient}  {job.message}{state}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="masix", description="MasiX messaging runtime")
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI colors")
    parser.add_argument("--json", action="store_true", help="Emit JSON output")
    sub = parser.add_subparsers(dest="subcommand", required=True)

    p_check = sub.add_parser("check-config", help="Validate the runtime config file")
    p_check.add_argument("--config", help="Path of the YAML config (default: $MASIX_CONFIG)")
    p_check.set_defaults(func=cmd_check_config)

    p_migrate = sub.add_parser("migrate", help="Apply database migrations")
    p_migrate.add_argument("--database-url", help="Database URL (default: $DATABASE_URL)")
    p_migrate.set_defaults(func=cmd_migrate)

    p_serve = sub.add_parser("serve", help="Run the runtime and its HTTP surface")
    p_serve.add_argument("--config", help="Path of the YAML config (default: $MASIX_CONFIG)")
    p_serve.add_argument("--host")
    p_serve.add_argument("--port", type=int)
    p_serve.set_defaults(func=cmd_serve)

    p_cron = sub.add_parser("cron", help="Inspect reminders")
    cron_sub = p_cron.add_subparsers(dest="cron_command", required=True)
    p_cron_list = cron_sub.add_parser("list", help="List reminders of one account")
    p_cron_list.add_argument("--account-tag", required=True)
    p_cron_list.add_argument("--all", action="store_true", help="Include disabled reminders")
    p_cron_list.add_argument("--database-url", help="Database URL (default: $DATABASE_URL)")
    p_cron_list.set_defaults(func=cmd_cron_list)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.no_color or os.getenv("NO_COLOR") or not sys.stdout.isatty():
        disable_color()

    try:
        return int(args.func(args))
    except ConfigValidationError as exc:
        fail(str(exc))
        return 1
    except Exception as exc:
        fail(f"{args.subcommand} failed: {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
