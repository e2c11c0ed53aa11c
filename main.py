"""
main.py
───────
CLI entry point for the Discord → Stoat structure transfer tool.

Flow: config.json (optional) → read the Discord server → build the default
plan → confirm → pick new / merge / replace → run the transfer → report.
Anything missing from config.json is prompted for.
"""

from __future__ import annotations
import getpass
import json
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass

from adapters.base import RetryPolicy
from adapters.permissions.stoat import describe
from adapters.stoat import STOAT_API, StoatGateway
from discord_reader import DiscordReader
from errors import ConfigError, MigratorError, TransferFailedError
from importer import build_default_mapping
from migrator import (
    Migrator,
    StepStatus,
    TransferContext,
    TransferMode,
    TransferOptions,
    TransferResult,
    TransferStep,
)

# ── ANSI ──────────────────────────────────────────────────────────────────────
BOLD = "\033[1m"
CYAN = "\033[96m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
RESET = "\033[0m"

RESULT_FILE = "transfer_result.json"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def banner():
    print(f"""
{BOLD}╔══════════════════════════════════════════════════╗
║   Discord → Stoat Structure Transfer  v1.0       ║
║   Roles · Channels · Permissions · Emoji         ║
╚══════════════════════════════════════════════════╝{RESET}

Copies your Discord server's structure to Stoat (stoat.chat).

{YELLOW}What is transferred:{RESET}
  ✔ Server name, icon & banner
  ✔ Roles (with colours and translated permissions)
  ✔ Categories and text / voice channels (with topics)
  ✔ Private and read-only channel permissions
  ✔ Custom emoji

{YELLOW}What is NOT transferred:{RESET}
  ✘ Message history  (Discord ToS + privacy)
  ✘ Members          (they re-join via invite)
  ✘ Bot integrations (must be set up manually)
""")


def prompt(label: str, secret: bool = False) -> str:
    while True:
        val = (
            getpass.getpass(f"  {label}: ") if secret else input(f"  {label}: ")
        ).strip()
        if val:
            return val
        print("  (required)")


def confirm(label: str) -> bool:
    return input(f"  {label} [y/N]: ").strip().lower() in ("y", "yes")


def load_config(path: str | None = None) -> dict:
    path = path or os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.json")
    if not os.path.exists(path):
        return {}
    try:
        with open(path) as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"could not read {path}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return config


@dataclass
class Settings:
    log_level: str = "WARNING"
    discord_token: str = ""
    guild_id: str = ""
    stoat_token: str = ""
    api_url: str = STOAT_API
    mode: TransferMode | None = None
    server_id: str | None = None
    call_delay: float = 0.5
    max_retries: int = 3


def _section(config: dict, key: str) -> dict:
    section = config.get(key) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{key}' must be an object")
    return section


def read_settings(config: dict) -> Settings:
    """Validate config.json contents.  Raises ConfigError."""
    discord_cfg = _section(config, "discord")
    stoat_cfg = _section(config, "stoat")
    transfer_cfg = _section(config, "transfer")

    log_level = str(config.get("log_level") or "WARNING").upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}")

    mode = None
    if stoat_cfg.get("mode"):
        try:
            mode = TransferMode(str(stoat_cfg["mode"]).lower())
        except ValueError:
            raise ConfigError("stoat.mode must be 'new', 'merge' or 'replace'") from None

    try:
        call_delay = float(transfer_cfg.get("call_delay", 0.5))
        max_retries = int(transfer_cfg.get("max_retries", 3))
    except (TypeError, ValueError):
        raise ConfigError("transfer.call_delay and transfer.max_retries must be numbers") from None
    if call_delay < 0 or max_retries < 0:
        raise ConfigError("transfer.call_delay and transfer.max_retries must not be negative")

    return Settings(
        log_level=log_level,
        discord_token=discord_cfg.get("token", ""),
        guild_id=str(discord_cfg.get("guild_id", "")),
        stoat_token=stoat_cfg.get("token", ""),
        api_url=stoat_cfg.get("api_url") or STOAT_API,
        mode=mode,
        server_id=stoat_cfg.get("server_id") or None,
        call_delay=call_delay,
        max_retries=max_retries,
    )


def pick_mode() -> TransferMode:
    print(f"\n{BOLD}Where should the structure go?{RESET}\n")
    print("  [1]  Create a new server")
    print("  [2]  Merge into an existing server")
    print("  [3]  Replace an existing server  (deletes its channels and roles first)")
    print()
    choices = {"1": TransferMode.NEW, "2": TransferMode.MERGE, "3": TransferMode.REPLACE}
    while True:
        choice = input("  Enter number: ").strip()
        if choice in choices:
            return choices[choice]
        print("  Please enter a valid number.")


def pick_server(servers: list[dict]) -> str:
    if not servers:
        return prompt("Stoat Server ID")
    print(f"\n{BOLD}Your Stoat servers:{RESET}\n")
    for i, server in enumerate(servers, 1):
        print(f"  [{i}]  {server['name']}  ({server['id']})")
    print()
    while True:
        choice = input("  Enter number: ").strip()
        if choice.isdigit() and 1 <= int(choice) <= len(servers):
            return servers[int(choice) - 1]["id"]
        print("  Please enter a valid number.")


def progress_printer():
    """on_progress callback printing one line per step start and finish."""
    shown: dict[str, StepStatus] = {}

    def report(step: TransferStep):
        if shown.get(step.id) is step.status:
            return
        shown[step.id] = step.status
        if step.status is StepStatus.RUNNING:
            print(f"\n{BOLD}▶ {step.label}{RESET}")
        elif step.status is StepStatus.DONE:
            print(f"  {GREEN}✔{RESET}  {step.detail}")
        elif step.status is StepStatus.ERROR:
            print(f"  {RED}✘{RESET}  {step.detail}")
        elif step.status is StepStatus.SKIPPED:
            print(f"  {YELLOW}—{RESET}  nothing to do")

    return report


def install_interrupt_handler(cancel: threading.Event):
    """First Ctrl+C requests cancellation, the second one quits."""

    def handler(signum, frame):
        if cancel.is_set():
            print("\n\n  Transfer aborted.")
            sys.exit(130)
        cancel.set()
        print(f"\n  {YELLOW}Stopping after the current call… (Ctrl+C again to quit){RESET}")

    return signal.signal(signal.SIGINT, handler)


def save_result(result: TransferResult, path: str = RESULT_FILE) -> str:
    with open(path, "w") as f:
        json.dump(result.to_dict(), f, indent=2)
    return path


def run():
    banner()

    settings = read_settings(load_config())
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # ── Discord credentials ───────────────────────────────────────────────
    if not settings.discord_token or not settings.guild_id:
        print(f"\n{BOLD}Discord source credentials:{RESET}")
        print("  Create a bot at https://discord.com/developers/applications")
        print("  Give it 'View Channels' permission and invite it to your server.\n")
    if not settings.discord_token:
        settings.discord_token = prompt("Discord Bot Token", secret=True)
    if not settings.guild_id:
        settings.guild_id = prompt("Discord Server (Guild) ID")

    print("\n📥  Reading Discord server …")
    snapshot = DiscordReader(settings.discord_token, settings.guild_id).read()
    print(f"  {GREEN}✔{RESET}  {snapshot.summary()}")

    mapping = build_default_mapping(snapshot)
    print(f"\n{BOLD}Transfer plan:{RESET} {mapping.summary()}")
    everyone = mapping.default_role
    if everyone is not None and everyone.permissions is not None:
        print(f"  Everyone can: {', '.join(describe(everyone.permissions)) or 'nothing'}")

    # ── Stoat credentials ─────────────────────────────────────────────────
    if not settings.stoat_token:
        print(f"\n{BOLD}Stoat credentials:{RESET}")
        print("  Use a bot token, or a session token from the web client.\n")
        settings.stoat_token = prompt("Stoat Token", secret=True)

    gateway = StoatGateway(
        api_url=settings.api_url, policy=RetryPolicy(max_retries=settings.max_retries)
    )
    gateway.call("check_connection", auth_token=settings.stoat_token)

    mode = settings.mode or pick_mode()
    server_id = settings.server_id
    if mode is not TransferMode.NEW and not server_id:
        servers = gateway.call("list_servers", auth_token=settings.stoat_token)
        server_id = pick_server(servers)
    options = TransferOptions(mode=mode, existing_server_id=server_id)

    if mode is TransferMode.REPLACE:
        print(f"\n  {RED}Replace mode deletes every channel and role in {server_id}.{RESET}")
    if not confirm("Start the transfer?"):
        print("\n  Nothing was changed.")
        return

    # ── Run transfer ──────────────────────────────────────────────────────
    context = TransferContext(auth_token=settings.stoat_token)
    previous = install_interrupt_handler(context.cancel)
    migrator = Migrator(gateway, call_delay=settings.call_delay, on_progress=progress_printer())
    try:
        result = migrator.run(mapping, options, context)
    except TransferFailedError as e:
        print(f"\n  {RED}✘  {e}{RESET}")
        result = e.result
    finally:
        signal.signal(signal.SIGINT, previous)

    if result is not None:
        result.print()
        print(f"  Result saved to {CYAN}{save_result(result)}{RESET}\n")


def main():
    try:
        run()
    except MigratorError as e:
        print(f"\n  ✘  {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n\n  Transfer cancelled.")
        sys.exit(0)


if __name__ == "__main__":
    main()
