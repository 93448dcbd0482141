"""CLI entry point for one-shot sync jobs."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from .content import ContentProvider
from .errors import GatewayError
from .registration import Anonymous, RegistrationMode, WithCode, WithCredentials
from .service import GatewayService
from .settings import DEFAULT_CONFIG_PATH

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG = """\
# SMS gateway sync configuration
# Created automatically on first run.

enabled: true
server_url: https://api.sms-gate.app/mobile/v1
device_name: smsgate-sync
# private_token: ""       # bearer for anonymous registration on a private server
# username: ""            # account login, needed for login-code
# password: ""

inbox:
  page_size: 100

backoff:
  min_delay: 10
  max_attempts: 3
"""


def _ensure_config(config_path: str) -> str:
    """Create a default config file if none exists."""
    path = Path(config_path).expanduser()
    if path.exists():
        return str(path)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_DEFAULT_CONFIG)
    logger.info("Created default config at %s", path)
    return str(path)


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(description="SMS Gateway Sync")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Config file path",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level",
    )

    sub = parser.add_subparsers(dest="command")

    # register
    register_p = sub.add_parser("register", help="Register this device")
    register_p.add_argument("--push-token", help="Push token to report")
    mode = register_p.add_mutually_exclusive_group()
    mode.add_argument("--code", help="One-time login code")
    mode.add_argument("--login", help="Account login (requires --password)")
    register_p.add_argument("--password", help="Account password")

    # change-password
    pw_p = sub.add_parser("change-password", help="Change the account password")
    pw_p.add_argument("--current", required=True, help="Current password")
    pw_p.add_argument("--new", required=True, help="New password")

    sub.add_parser("login-code", help="Request a one-time login code")
    sub.add_parser("public-ip", help="Show the device's public IP")
    sub.add_parser("settings", help="Show remote device settings")
    sub.add_parser("webhooks", help="Show configured webhooks")

    # sync-inbox
    sync_p = sub.add_parser("sync-inbox", help="Push the local inbox upstream")
    sync_p.add_argument(
        "--content-db",
        required=True,
        help="SQLite database with the sms/pdu/addr/part tables",
    )

    return parser


def _registration_mode(args: argparse.Namespace) -> RegistrationMode:
    if args.code:
        return WithCode(args.code)
    if args.login:
        if not args.password:
            raise SystemExit("--login requires --password")
        return WithCredentials(args.login, args.password)
    return Anonymous()


def _run(
    service: GatewayService,
    job: Callable[[GatewayService], Awaitable[Any]],
) -> Any:
    async def _main() -> Any:
        await service.start()
        try:
            return await job(service)
        finally:
            await service.stop()

    return asyncio.run(_main())


# ---- subcommand handlers ----


def _cmd_register(service: GatewayService, args: argparse.Namespace) -> None:
    mode = _registration_mode(args)
    info = _run(service, lambda s: s.ensure_registered(args.push_token, mode))
    if info is None:
        print("Gateway sync is disabled.")
        return
    print(f"Registered device {info.device_id} (login {info.login})")


def _cmd_change_password(service: GatewayService, args: argparse.Namespace) -> None:
    _run(service, lambda s: s.change_password(args.current, args.new))
    print("Password changed.")


def _cmd_login_code(service: GatewayService, args: argparse.Namespace) -> None:
    code = _run(service, lambda s: s.get_login_code())
    if code is None:
        print("Gateway sync is disabled.")
        return
    until = code.valid_until.isoformat() if code.valid_until else "unknown"
    print(f"{code.code}  valid until {until}")


def _cmd_public_ip(service: GatewayService, args: argparse.Namespace) -> None:
    print(_run(service, lambda s: s.get_public_ip()) or "unknown")


def _cmd_settings(service: GatewayService, args: argparse.Namespace) -> None:
    settings = _run(service, lambda s: s.fetch_settings())
    if settings is None:
        print("Device is not registered.", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(settings, indent=2))


def _cmd_webhooks(service: GatewayService, args: argparse.Namespace) -> None:
    hooks = _run(service, lambda s: s.fetch_webhooks())
    if not hooks:
        print("No webhooks configured.")
        return
    for hook in hooks:
        print(f"  {hook.id}  event={hook.event}  url={hook.url}")


def _cmd_sync_inbox(service: GatewayService, args: argparse.Namespace) -> None:
    reports = _run(service, lambda s: s.sync_inbox())
    for report in reports:
        print(
            f"  {report.inbox_class.value}"
            f"  pages={report.pages_read}"
            f"  pushed={report.items_pushed}"
            f"  duplicate_pages={report.duplicate_pages}"
            f"  skipped_pages={report.skipped_pages}"
        )


_COMMANDS = {
    "register": _cmd_register,
    "change-password": _cmd_change_password,
    "login-code": _cmd_login_code,
    "public-ip": _cmd_public_ip,
    "settings": _cmd_settings,
    "webhooks": _cmd_webhooks,
    "sync-inbox": _cmd_sync_inbox,
}


# ---- main ----


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    handler = _COMMANDS.get(args.command or "")
    if handler is None:
        parser.print_help()
        return

    config_path = _ensure_config(args.config)
    content = (
        ContentProvider.from_database(args.content_db)
        if args.command == "sync-inbox"
        else None
    )
    service = GatewayService(content=content, config_path=config_path)

    try:
        handler(service, args)
    except GatewayError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
