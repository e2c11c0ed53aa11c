"""
adapters/permissions/stoat.py
──────────────────────────────
Stoat permission bit constants and Discord → Stoat permission translation.

Stoat (Revolt-compatible) permissions are a 32-bit allow/deny pair.  Discord
permissions are a 64-bit bitfield with an ADMINISTRATOR override bit.  The
translation is lossy: Discord bits without a table entry are dropped.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum

from errors import PermissionParseError

# ── Stoat permission bits ─────────────────────────────────────────────────────
MANAGE_CHANNEL = 1 << 0
MANAGE_SERVER = 1 << 1
MANAGE_PERMISSIONS = 1 << 2
MANAGE_ROLE = 1 << 3
MANAGE_CUSTOMISATION = 1 << 4
KICK_MEMBERS = 1 << 6
BAN_MEMBERS = 1 << 7
TIMEOUT_MEMBERS = 1 << 8
ASSIGN_ROLES = 1 << 9
CHANGE_NICKNAME = 1 << 10
MANAGE_NICKNAMES = 1 << 11
CHANGE_AVATAR = 1 << 12
REMOVE_AVATARS = 1 << 13
VIEW_CHANNEL = 1 << 20
READ_MESSAGE_HISTORY = 1 << 21
SEND_MESSAGE = 1 << 22
MANAGE_MESSAGES = 1 << 23
MANAGE_WEBHOOKS = 1 << 24
INVITE_OTHERS = 1 << 25
SEND_EMBEDS = 1 << 26
UPLOAD_FILES = 1 << 27
MASQUERADE = 1 << 28
REACT = 1 << 29
CONNECT = 1 << 30
SPEAK = 1 << 31

STOAT_MASK = 0xFFFFFFFF

# ── Discord permission bits used outside the table ────────────────────────────
DISCORD_ADMINISTRATOR = 1 << 3
DISCORD_VIEW_CHANNEL = 1 << 10
DISCORD_SEND_MESSAGES = 1 << 11

# Discord permission bit → Stoat permission bit.  Bump the version whenever an
# entry changes.  Plans record it and saved transfer results report it.
PERMISSION_MAP_VERSION = 1

PERMISSION_MAP: tuple[tuple[int, int], ...] = (
    (1 << 0,  INVITE_OTHERS),           # CREATE_INSTANT_INVITE
    (1 << 1,  KICK_MEMBERS),            # KICK_MEMBERS
    (1 << 2,  BAN_MEMBERS),             # BAN_MEMBERS
    (1 << 4,  MANAGE_CHANNEL),          # MANAGE_CHANNELS
    (1 << 5,  MANAGE_SERVER),           # MANAGE_GUILD
    (1 << 6,  REACT),                   # ADD_REACTIONS
    (1 << 10, VIEW_CHANNEL),            # VIEW_CHANNEL
    (1 << 11, SEND_MESSAGE),            # SEND_MESSAGES
    (1 << 13, MANAGE_MESSAGES),         # MANAGE_MESSAGES
    (1 << 14, SEND_EMBEDS),             # EMBED_LINKS
    (1 << 15, UPLOAD_FILES),            # ATTACH_FILES
    (1 << 16, READ_MESSAGE_HISTORY),    # READ_MESSAGE_HISTORY
    (1 << 20, CONNECT),                 # CONNECT
    (1 << 21, SPEAK),                   # SPEAK
    (1 << 26, CHANGE_NICKNAME),         # CHANGE_NICKNAME
    (1 << 27, MANAGE_NICKNAMES),        # MANAGE_NICKNAMES
    (1 << 28, MANAGE_PERMISSIONS),      # MANAGE_ROLES
    (1 << 28, MANAGE_ROLE),             # MANAGE_ROLES
    (1 << 29, MANAGE_WEBHOOKS),         # MANAGE_WEBHOOKS
    (1 << 40, TIMEOUT_MEMBERS),         # MODERATE_MEMBERS
)


def known_bits(table: tuple[tuple[int, int], ...] = PERMISSION_MAP) -> int:
    """OR of every Stoat bit the table can produce."""
    mask = 0
    for _, stoat_bit in table:
        mask |= stoat_bit
    return mask & STOAT_MASK


ALL_KNOWN = known_bits()

# Labels shown when summarising a permission set, in display order.
PERMISSION_LABELS: tuple[tuple[int, str, str], ...] = (
    (VIEW_CHANNEL, "View Channel", "General"),
    (SEND_MESSAGE, "Send Message", "Text"),
    (READ_MESSAGE_HISTORY, "Read History", "Text"),
    (MANAGE_MESSAGES, "Manage Messages", "Text"),
    (REACT, "React", "Text"),
    (SEND_EMBEDS, "Send Embeds", "Text"),
    (UPLOAD_FILES, "Upload Files", "Text"),
    (INVITE_OTHERS, "Invite Others", "General"),
    (MANAGE_CHANNEL, "Manage Channel", "Admin"),
    (MANAGE_SERVER, "Manage Server", "Admin"),
    (MANAGE_PERMISSIONS, "Manage Permissions", "Admin"),
    (MANAGE_ROLE, "Manage Role", "Admin"),
    (KICK_MEMBERS, "Kick Members", "Moderation"),
    (BAN_MEMBERS, "Ban Members", "Moderation"),
    (TIMEOUT_MEMBERS, "Timeout Members", "Moderation"),
    (CHANGE_NICKNAME, "Change Nickname", "General"),
    (MANAGE_NICKNAMES, "Manage Nicknames", "Moderation"),
    (MANAGE_WEBHOOKS, "Manage Webhooks", "Admin"),
    (CONNECT, "Connect (Voice)", "Voice"),
    (SPEAK, "Speak (Voice)", "Voice"),
)


class TriState(Enum):
    """Per-role channel capability: explicitly allowed, denied, or inherited."""

    INHERIT = "inherit"
    ALLOW = "allow"
    DENY = "deny"

    def to_bool(self) -> bool | None:
        if self is TriState.INHERIT:
            return None
        return self is TriState.ALLOW


@dataclass(frozen=True)
class PermissionPair:
    """A Stoat allow/deny pair.  A bit set in both is left to the server."""

    allow: int = 0
    deny: int = 0

    def has(self, bit: int) -> bool:
        return bool(self.allow & bit)

    def toggle(self, bit: int) -> "PermissionPair":
        """Flip ``bit`` in the allow mask, leaving deny untouched."""
        return PermissionPair(allow=(self.allow ^ bit) & STOAT_MASK, deny=self.deny)

    def to_dict(self) -> dict:
        return {"allow": self.allow, "deny": self.deny}


DEFAULT_CHATTER = PermissionPair(
    allow=(
        VIEW_CHANNEL
        | SEND_MESSAGE
        | READ_MESSAGE_HISTORY
        | REACT
        | SEND_EMBEDS
        | UPLOAD_FILES
        | CHANGE_NICKNAME
        | CONNECT
        | SPEAK
    ),
    deny=0,
)


def parse_bitset(value: int | str | None) -> int:
    """Parse a Discord permission string (or int) into a non-negative int."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise PermissionParseError(f"not a permission bitset: {value!r}")
    if isinstance(value, int):
        bits = value
    else:
        try:
            bits = int(str(value).strip(), 10)
        except ValueError:
            raise PermissionParseError(f"not a permission bitset: {value!r}") from None
    if bits < 0:
        raise PermissionParseError(f"negative permission bitset: {value!r}")
    return bits


def _map_bits(discord_perms: int, table: tuple[tuple[int, int], ...]) -> int:
    stoat_perms = 0
    for discord_bit, stoat_bit in table:
        if discord_perms & discord_bit:
            stoat_perms |= stoat_bit
    return stoat_perms & STOAT_MASK


def translate_role_permissions(
    discord_perms: int,
    table: tuple[tuple[int, int], ...] = PERMISSION_MAP,
) -> PermissionPair:
    """Map a Discord role permission bitfield to a Stoat allow pair.

    ADMINISTRATOR grants every bit the table knows about rather than being
    decomposed.  Role-level grants never produce deny bits.
    """
    if discord_perms & DISCORD_ADMINISTRATOR:
        return PermissionPair(allow=known_bits(table), deny=0)
    return PermissionPair(allow=_map_bits(discord_perms, table), deny=0)


def translate_channel_overwrite(
    discord_allow: int,
    discord_deny: int,
    table: tuple[tuple[int, int], ...] = PERMISSION_MAP,
) -> PermissionPair:
    """Map a Discord channel overwrite (allow, deny) to a Stoat pair."""
    return PermissionPair(
        allow=_map_bits(discord_allow, table),
        deny=_map_bits(discord_deny, table),
    )


def cycle_tri_state(current: TriState) -> TriState:
    """Inherit → Allow → Deny → Inherit."""
    if current is TriState.INHERIT:
        return TriState.ALLOW
    if current is TriState.ALLOW:
        return TriState.DENY
    return TriState.INHERIT


def encode_override(can_view: TriState, can_send: TriState) -> PermissionPair:
    """Encode a (view, send) tri-state override as a channel permission pair.

    Denying view denies send as well.  Otherwise view and send are encoded
    independently and Inherit leaves the bit out of both masks.
    """
    if can_view is TriState.DENY:
        return PermissionPair(allow=0, deny=VIEW_CHANNEL | SEND_MESSAGE)

    allow = VIEW_CHANNEL if can_view is TriState.ALLOW else 0
    deny = 0
    if can_send is TriState.ALLOW:
        allow |= SEND_MESSAGE
    elif can_send is TriState.DENY:
        deny |= SEND_MESSAGE
    return PermissionPair(allow=allow, deny=deny)


def describe(pair: PermissionPair) -> list[str]:
    """Human-readable names of the allowed bits."""
    return [name for bit, name, _ in PERMISSION_LABELS if pair.has(bit)]
