"""
migrator.py
───────────
The transfer engine.

Takes a MappingConfig and any RemoteGateway implementation, then drives the
full transfer sequence in dependency order:
  0. Clear the existing server          (replace mode only, fatal)
  1. Create or reuse the server         (fatal)
  2. Branding: icon & banner
  3. Roles, then default role permissions
  4. Categories
  5. Channels (placed in their categories)
  6. Channel permissions (two passes)
  7. Emoji
  8. Custom categories, roles and channels

Every item is isolated: a failed call is recorded against its step and the
run moves on.  Only Clear and Server failures halt the run.  Runs are
sequential; cancellation is polled between steps and between items.
"""

from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from adapters.base import RemoteGateway
from adapters.permissions.stoat import (
    SEND_MESSAGE,
    VIEW_CHANNEL,
    PermissionPair,
    TriState,
    encode_override,
)
from errors import GatewayError, TransferFailedError
from models import ChannelPermissionOverride, MappingConfig

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "default"  # Stoat's sentinel for the implicit base role
DEFAULT_DESCRIPTION = "Migrated from Discord"

# ── ANSI colours ──────────────────────────────────────────────────────────────
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
CYAN = "\033[96m"
BOLD = "\033[1m"
DIM = "\033[2m"
RESET = "\033[0m"


def _ok(msg):
    print(f"  {GREEN}✔{RESET}  {msg}")


def _warn(msg):
    print(f"  {YELLOW}⚠{RESET}  {msg}")


def _fail(msg):
    print(f"  {RED}✘{RESET}  {msg}")


def _head(msg):
    print(f"\n{BOLD}{msg}{RESET}")


# ── Run state ─────────────────────────────────────────────────────────────────


class StepStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    SKIPPED = "skipped"


class TransferMode(Enum):
    NEW = "new"  # create a fresh server
    MERGE = "merge"  # build into an existing server
    REPLACE = "replace"  # clear an existing server first


@dataclass
class StepStats:
    success: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    @property
    def attempted(self) -> int:
        return self.success + self.failed

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass
class TransferStep:
    id: str
    label: str
    status: StepStatus = StepStatus.PENDING
    detail: str = ""


STEP_LABELS = [
    ("clear", "Clear existing server"),
    ("server", "Server"),
    ("branding", "Branding"),
    ("roles", "Roles"),
    ("categories", "Categories"),
    ("channels", "Channels"),
    ("permissions", "Permissions"),
    ("emojis", "Emojis"),
    ("custom", "Custom entities"),
]


@dataclass
class TransferOptions:
    mode: TransferMode = TransferMode.NEW
    existing_server_id: str | None = None

    def __post_init__(self):
        if self.mode is not TransferMode.NEW and not self.existing_server_id:
            raise ValueError(f"{self.mode.value} mode needs an existing server id")


@dataclass
class TransferContext:
    """Everything a run reads or writes besides the mapping itself."""

    auth_token: str
    role_map: dict[str, str] = field(default_factory=dict)
    channel_map: dict[str, str] = field(default_factory=dict)
    category_map: dict[str, str] = field(default_factory=dict)
    cancel: threading.Event = field(default_factory=threading.Event)
    server_id: str | None = None


@dataclass
class TransferResult:
    platform: str
    server_id: str | None = None
    steps: list[TransferStep] = field(default_factory=list)
    stats: dict[str, StepStats] = field(default_factory=dict)
    duration: float = 0.0
    role_map: dict[str, str] = field(default_factory=dict)
    channel_map: dict[str, str] = field(default_factory=dict)
    category_map: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    permission_map_version: int | None = None

    def step(self, step_id: str) -> TransferStep:
        return next(s for s in self.steps if s.id == step_id)

    @property
    def total_success(self) -> int:
        return sum(s.success for s in self.stats.values())

    @property
    def total_failed(self) -> int:
        return sum(s.failed for s in self.stats.values())

    def to_dict(self) -> dict:
        return {
            "platform": self.platform,
            "server_id": self.server_id,
            "cancelled": self.cancelled,
            "permission_map_version": self.permission_map_version,
            "duration": round(self.duration, 2),
            "steps": [
                {"id": s.id, "label": s.label, "status": s.status.value, "detail": s.detail}
                for s in self.steps
            ],
            "stats": {k: v.to_dict() for k, v in self.stats.items()},
            "role_map": dict(self.role_map),
            "channel_map": dict(self.channel_map),
            "category_map": dict(self.category_map),
        }

    def print(self):
        _head("═══════════════════ Transfer Report ═══════════════════")

        print(f"\n  Target platform : {BOLD}{self.platform}{RESET}")
        print(f"  Server ID       : {self.server_id or '—'}")
        print(f"  Duration        : {self.duration:.1f}s\n")

        for step in self.steps:
            stats = self.stats.get(step.id, StepStats())
            colour = {
                StepStatus.DONE: GREEN,
                StepStatus.ERROR: RED,
                StepStatus.SKIPPED: DIM,
            }.get(step.status, YELLOW)
            print(
                f"  {step.label:<18}"
                f"  {colour}{step.status.value:<8}{RESET}"
                f"  {GREEN}{stats.success} ok{RESET}"
                + (f"   {RED}{stats.failed} failed{RESET}" if stats.failed else "")
                + (f"   {DIM}{stats.skipped} skipped{RESET}" if stats.skipped else "")
            )
            for message in stats.errors:
                print(f"             {DIM}↳ {message}{RESET}")

        if self.cancelled:
            print(f"\n  {YELLOW}Transfer was cancelled; the server is only partly built.{RESET}")

        print(f"\n  {CYAN}Next steps:{RESET}")
        print("   1. Open Stoat and find your server")
        print("   2. Invite your community members manually")
        print("   3. Re-add any bots or integrations")
        print("   4. Review channel permissions, especially on private channels")
        print()


class _Cancelled(Exception):
    pass


def created_id(result: Any, nested: str | None = None) -> str | None:
    """Pull a new object's id out of a create_* response."""
    if not isinstance(result, dict):
        return None
    if nested and isinstance(result.get(nested), dict):
        inner = result[nested].get("_id") or result[nested].get("id")
        if inner:
            return inner
    return result.get("_id") or result.get("id")


def default_channel_permissions(
    is_private: bool, overrides: list[ChannelPermissionOverride]
) -> PermissionPair | None:
    """The base-role override a channel needs, if any.

    Private channels deny view and send outright.  Public channels where some
    role can see but not send are read-only: view allowed, send denied.
    """
    if is_private:
        return PermissionPair(allow=0, deny=VIEW_CHANNEL | SEND_MESSAGE)
    read_only = any(
        o.can_send is TriState.DENY and o.can_view is not TriState.DENY for o in overrides
    )
    if read_only:
        return PermissionPair(allow=VIEW_CHANNEL, deny=SEND_MESSAGE)
    return None


def needs_override_call(override: ChannelPermissionOverride, is_private: bool) -> bool:
    if override.is_inherit:
        return False
    # Already blocked by the default deny on private channels.
    if is_private and override.can_view is TriState.DENY:
        return False
    return True


# ── Migrator ──────────────────────────────────────────────────────────────────


class Migrator:
    def __init__(
        self,
        gateway: RemoteGateway,
        call_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        on_progress: Callable[[TransferStep], None] | None = None,
    ):
        self.gateway = gateway
        self.call_delay = call_delay
        self.sleep = sleep
        self.on_progress = on_progress

    def run(
        self,
        mapping: MappingConfig,
        options: TransferOptions,
        context: TransferContext,
    ) -> TransferResult:
        """Transfer ``mapping``.  Raises TransferFailedError on a fatal step."""
        step_ids = [
            (sid, label)
            for sid, label in STEP_LABELS
            if sid != "clear" or options.mode is TransferMode.REPLACE
        ]
        result = TransferResult(
            platform=self.gateway.platform_name,
            steps=[TransferStep(sid, label) for sid, label in step_ids],
            stats={sid: StepStats() for sid, _ in step_ids},
            role_map=context.role_map,
            channel_map=context.channel_map,
            category_map=context.category_map,
            permission_map_version=mapping.permission_map_version,
        )
        handlers = {
            "clear": self._clear,
            "server": self._server,
            "branding": self._branding,
            "roles": self._roles,
            "categories": self._categories,
            "channels": self._channels,
            "permissions": self._permissions,
            "emojis": self._emojis,
            "custom": self._custom,
        }

        logger.info("transfer to %s started (%s)", result.platform, options.mode.value)
        started = time.monotonic()
        try:
            for step in result.steps:
                if context.cancel.is_set():
                    result.cancelled = True
                    break
                stats = result.stats[step.id]
                self._update(step, StepStatus.RUNNING)
                try:
                    handlers[step.id](mapping, options, context, result, step, stats)
                except _Cancelled:
                    result.cancelled = True
                    self._finish(step, stats, detail="Cancelled")
                    break
        finally:
            result.server_id = context.server_id
            result.duration = time.monotonic() - started

        if result.cancelled:
            logger.warning("transfer cancelled after %.1fs", result.duration)
        else:
            logger.info(
                "transfer finished in %.1fs: %d ok, %d failed",
                result.duration,
                result.total_success,
                result.total_failed,
            )
        return result

    # ── plumbing ──────────────────────────────────────────────────────────

    def _update(self, step: TransferStep, status: StepStatus | None = None, detail: str | None = None):
        if status is not None:
            step.status = status
        if detail is not None:
            step.detail = detail
        if self.on_progress is not None:
            self.on_progress(step)

    def _finish(self, step: TransferStep, stats: StepStats, attempted: bool = False,
                any_failure_is_error: bool = False, detail: str | None = None):
        if not stats.attempted and not attempted:
            status = StepStatus.SKIPPED
        elif stats.failed and (not stats.success or any_failure_is_error):
            status = StepStatus.ERROR
        else:
            status = StepStatus.DONE
        if detail is None:
            detail = f"{stats.success} ok, {stats.failed} failed"
        self._update(step, status, detail)

    def _check_cancel(self, context: TransferContext):
        if context.cancel.is_set():
            raise _Cancelled()

    def _call(self, context: TransferContext, action: str, body: dict) -> Any:
        """One remote call followed by the inter-call delay."""
        try:
            return self.gateway.call(action, body, context.auth_token)
        finally:
            if self.call_delay > 0:
                self.sleep(self.call_delay)

    def _try(self, context: TransferContext, stats: StepStats, message: str,
             action: str, body: dict, count_success: bool = True) -> tuple[bool, Any]:
        """Isolated call: failures are recorded on ``stats`` and swallowed."""
        try:
            response = self._call(context, action, body)
        except GatewayError as e:
            logger.warning("%s: %s", message, e)
            stats.record_failure(f"{message}: {e}")
            return False, None
        if count_success:
            stats.success += 1
        return True, response

    # ── fatal steps ───────────────────────────────────────────────────────

    def _fatal(self, result: TransferResult, step: TransferStep, stats: StepStats, e: Exception):
        logger.error("%s step failed: %s", step.id, e)
        stats.record_failure(str(e))
        self._update(step, StepStatus.ERROR, str(e))
        raise TransferFailedError(step.id, str(e), result) from e

    def _clear(self, mapping, options, context, result, step, stats):
        self._update(step, detail="Deleting channels and roles…")
        try:
            summary = self._call(context, "clear_server", {"server_id": options.existing_server_id})
        except GatewayError as e:
            self._fatal(result, step, stats, e)
            return
        stats.success += 1
        summary = summary or {}
        self._update(
            step,
            StepStatus.DONE,
            f"Removed {summary.get('channels_deleted', 0)} channels, "
            f"{summary.get('roles_deleted', 0)} roles",
        )

    def _server(self, mapping, options, context, result, step, stats):
        if options.mode is not TransferMode.NEW:
            context.server_id = options.existing_server_id
            stats.skipped += 1
            self._update(step, StepStatus.DONE, f"Using existing server {context.server_id}")
            return

        self._update(step, detail=f"Creating '{mapping.server_name}'…")
        try:
            response = self._call(
                context,
                "create_server",
                {
                    "name": mapping.server_name,
                    "description": mapping.server_description or DEFAULT_DESCRIPTION,
                },
            )
        except GatewayError as e:
            self._fatal(result, step, stats, e)
            return
        server_id = created_id(response, "server")
        if not server_id:
            self._fatal(result, step, stats, GatewayError("create_server", None, "no server id returned"))
        context.server_id = server_id
        stats.success += 1
        self._update(step, StepStatus.DONE, f"Created server {server_id}")

    # ── branding ──────────────────────────────────────────────────────────

    def _branding(self, mapping, options, context, result, step, stats):
        assets = [
            ("icon", mapping.include_icon, mapping.custom_icon_url or mapping.icon_url, "set_server_icon", "icon_url"),
            ("banner", mapping.include_banner, mapping.custom_banner_url or mapping.banner_url, "set_server_banner", "banner_url"),
        ]
        for name, included, url, action, key in assets:
            if not included or not url:
                continue
            self._check_cancel(context)
            self._update(step, detail=f"Uploading {name}…")
            self._try(
                context, stats, f"Server {name}", action,
                {"server_id": context.server_id, key: url},
            )
        self._finish(step, stats)

    # ── roles ─────────────────────────────────────────────────────────────

    def _create_role(self, context, stats, key: str, name: str, rank: int,
                     colour: str | None, hoist: bool, permissions: dict) -> bool:
        ok, response = self._try(
            context, stats, f"Role '{name}'", "create_role",
            {"server_id": context.server_id, "name": name, "rank": rank},
        )
        if not ok:
            return False
        role_id = created_id(response)
        if not role_id:
            # Counted as created, but nothing later can reference it.
            stats.errors.append(f"Role '{name}': no role id returned")
            return True
        context.role_map[key] = role_id

        if colour or hoist:
            body = {"server_id": context.server_id, "role_id": role_id, "hoist": hoist}
            if colour:
                body["colour"] = colour
            self._try(context, stats, f"Role '{name}' colour", "edit_role", body, count_success=False)
        self._try(
            context, stats, f"Role '{name}' permissions", "set_role_permissions",
            {"server_id": context.server_id, "role_id": role_id, **permissions},
            count_success=False,
        )
        return True

    def _roles(self, mapping, options, context, result, step, stats):
        creatable = [r for r in mapping.roles if r.included and not r.is_default and not r.is_managed]
        stats.skipped = sum(1 for r in mapping.roles if not r.is_default) - len(creatable)

        for rank, role in enumerate(creatable):
            self._check_cancel(context)
            self._update(step, detail=f"Creating role {rank + 1} of {len(creatable)}…")
            if role.permissions is not None:
                permissions = {"allow": role.permissions.allow, "deny": role.permissions.deny}
            else:
                permissions = {"source_permissions": str(role.source_permissions)}
            self._create_role(
                context, stats, role.source_id, role.name, rank,
                role.colour_hex, role.hoist, permissions,
            )

        attempted = False
        default = mapping.default_role
        if default is not None and default.included and default.permissions is not None:
            self._check_cancel(context)
            self._update(step, detail="Setting default role permissions…")
            attempted = True
            self._try(
                context, stats, "Default role permissions", "set_default_permissions",
                {"server_id": context.server_id, "permissions": default.permissions.to_dict()},
                count_success=False,
            )
        self._finish(step, stats, attempted=attempted)

    # ── categories & channels ─────────────────────────────────────────────

    def _create_category(self, context, stats, key: str, name: str) -> None:
        ok, response = self._try(
            context, stats, f"Category '{name}'", "create_category",
            {"server_id": context.server_id, "name": name},
        )
        category_id = created_id(response) if ok else None
        if category_id:
            context.category_map[key] = category_id

    def _categories(self, mapping, options, context, result, step, stats):
        for cat in mapping.categories:
            if cat.is_synthetic:
                continue
            if not cat.included:
                stats.skipped += 1
                continue
            self._check_cancel(context)
            self._update(step, detail=f"Creating category '{cat.name}'…")
            self._create_category(context, stats, cat.source_id, cat.name)
        self._finish(step, stats)

    def _create_channel(self, context, stats, key: str, name: str, channel_type: str,
                        category_key: str | None, topic: str | None = None,
                        nsfw: bool = False) -> None:
        body = {
            "server_id": context.server_id,
            "name": name,
            "channel_type": channel_type,
            "nsfw": nsfw,
        }
        if topic:
            body["description"] = topic
        ok, response = self._try(context, stats, f"Channel #{name}", "create_channel", body)
        channel_id = created_id(response) if ok else None
        if not channel_id:
            return
        context.channel_map[key] = channel_id

        category_id = context.category_map.get(category_key) if category_key else None
        if category_id:
            try:
                self._call(
                    context,
                    "move_channel_to_category",
                    {"server_id": context.server_id, "category_id": category_id, "channel_id": channel_id},
                )
            except GatewayError as e:
                # Placement is cosmetic; the channel exists either way.
                logger.debug("could not move #%s into its category: %s", name, e)

    def _channels(self, mapping, options, context, result, step, stats):
        channels = [(cat, ch) for cat, ch in mapping.iter_channels() if ch.included]
        stats.skipped = sum(1 for _ in mapping.iter_channels()) - len(channels)
        for i, (cat, ch) in enumerate(channels):
            self._check_cancel(context)
            self._update(step, detail=f"Creating channel {i + 1} of {len(channels)}…")
            self._create_channel(
                context, stats, ch.source_id, ch.name, ch.kind.stoat_type,
                cat.source_id, ch.topic, ch.nsfw,
            )
        self._finish(step, stats)

    # ── permissions ───────────────────────────────────────────────────────

    def _apply_default(self, context, stats, channel_id: str, name: str,
                       is_private: bool, overrides: list[ChannelPermissionOverride]) -> None:
        pair = default_channel_permissions(is_private, overrides)
        if pair is None:
            return
        self._check_cancel(context)
        label = "Default deny" if is_private else "Default send-deny"
        self._try(
            context, stats, f"{label} on #{name}", "set_permissions",
            {"channel_id": channel_id, "role_id": DEFAULT_ROLE, "allow": pair.allow, "deny": pair.deny},
        )

    def _apply_overrides(self, context, stats, channel_id: str, name: str,
                         is_private: bool, overrides: list[ChannelPermissionOverride]) -> None:
        for override in overrides:
            if not needs_override_call(override, is_private):
                continue
            role_id = context.role_map.get(override.role_id)
            if role_id is None:
                continue  # the role was never created
            self._check_cancel(context)
            pair = encode_override(override.can_view, override.can_send)
            self._try(
                context, stats, f"Override for '{override.role_name}' on #{name}", "set_permissions",
                {"channel_id": channel_id, "role_id": role_id, "allow": pair.allow, "deny": pair.deny},
            )

    def _permissions(self, mapping, options, context, result, step, stats):
        channels = []
        for _, ch in mapping.iter_channels():
            if not ch.included:
                continue
            channel_id = context.channel_map.get(ch.source_id)
            if channel_id is None:
                stats.skipped += 1
                continue
            channels.append((channel_id, ch))

        self._update(step, detail="Setting default role overrides…")
        for channel_id, ch in channels:
            self._apply_default(context, stats, channel_id, ch.name, ch.is_private, ch.overrides)

        self._update(step, detail="Setting role overrides…")
        for channel_id, ch in channels:
            self._apply_overrides(context, stats, channel_id, ch.name, ch.is_private, ch.overrides)
        self._finish(step, stats)

    # ── emoji ─────────────────────────────────────────────────────────────

    def _emojis(self, mapping, options, context, result, step, stats):
        emojis = [e for e in mapping.emojis if e.included]
        stats.skipped = len(mapping.emojis) - len(emojis)
        for i, emoji in enumerate(emojis):
            self._check_cancel(context)
            self._update(step, detail=f"Uploading emoji {i + 1} of {len(emojis)}…")
            self._try(
                context, stats, f"Emoji :{emoji.name}:", "create_emoji",
                {"server_id": context.server_id, "name": emoji.name, "emoji_url": emoji.url},
            )
        self._finish(step, stats, any_failure_is_error=True)

    # ── custom entities ───────────────────────────────────────────────────

    def _custom(self, mapping, options, context, result, step, stats):
        for cat in mapping.custom_categories:
            self._check_cancel(context)
            self._update(step, detail=f"Creating category '{cat.name}'…")
            self._create_category(context, stats, cat.key, cat.name)

        base_rank = sum(1 for r in mapping.roles if r.included and not r.is_default and not r.is_managed)
        for i, role in enumerate(mapping.custom_roles):
            self._check_cancel(context)
            self._update(step, detail=f"Creating role '{role.name}'…")
            pair = role.permissions or PermissionPair()
            self._create_role(
                context, stats, role.key, role.name, base_rank + i,
                role.color, False, {"allow": pair.allow, "deny": pair.deny},
            )

        # Overrides for custom roles on scanned channels were skipped by the
        # permissions step, which runs before these roles exist.
        custom_keys = {role.key for role in mapping.custom_roles}
        for _, ch in mapping.iter_channels():
            channel_id = context.channel_map.get(ch.source_id)
            if not ch.included or channel_id is None:
                continue
            overrides = [o for o in ch.overrides if o.role_id in custom_keys]
            if overrides:
                self._update(step, detail=f"Setting custom role overrides on #{ch.name}…")
                self._apply_overrides(context, stats, channel_id, ch.name, ch.is_private, overrides)

        for ch in mapping.custom_channels:
            self._check_cancel(context)
            self._update(step, detail=f"Creating channel #{ch.name}…")
            self._create_channel(
                context, stats, ch.key, ch.name, ch.kind.stoat_type, ch.category_id,
            )
            channel_id = context.channel_map.get(ch.key)
            if channel_id is None:
                continue
            self._apply_default(context, stats, channel_id, ch.name, ch.is_private, ch.overrides)
            self._apply_overrides(context, stats, channel_id, ch.name, ch.is_private, ch.overrides)
        self._finish(step, stats)
