"""
snapshot.py
───────────
The raw scan of a Discord server, exactly as the reader produces it.

This is the input contract of the importer: guild branding, categories with
their nested channels (each carrying its raw permission overwrites), roles
with raw permission bitfields, and emoji.  Nothing here is user-editable;
see models.py for the editable plan built from it.
"""

from __future__ import annotations
from dataclasses import dataclass, field

from adapters.permissions.stoat import parse_bitset
from errors import PermissionParseError, ScanError

DISCORD_CDN = "https://cdn.discordapp.com"

# Discord overwrite target types
OVERWRITE_ROLE = 0
OVERWRITE_MEMBER = 1


@dataclass
class RawOverwrite:
    id: str
    type: int  # 0 = role, 1 = member
    allow: int = 0
    deny: int = 0


@dataclass
class ScanChannel:
    id: str
    name: str
    type: int
    type_name: str  # "text", "voice", "announcement", "stage", "forum"
    position: int = 0
    topic: str | None = None
    nsfw: bool = False
    permission_overwrites: list[RawOverwrite] = field(default_factory=list)


@dataclass
class ScanCategory:
    id: str | None  # None = the synthetic "Uncategorized" bucket
    name: str
    position: int = 0
    channels: list[ScanChannel] = field(default_factory=list)


@dataclass
class ScanRole:
    id: str
    name: str
    color: int = 0
    position: int = 0
    permissions: int = 0
    managed: bool = False
    hoist: bool = False
    is_default: bool = False


@dataclass
class ScanEmoji:
    id: str
    name: str
    url: str
    animated: bool = False


@dataclass
class ScanGuild:
    id: str
    name: str
    icon: str | None = None  # CDN hash
    banner: str | None = None  # CDN hash
    member_count: int | None = None

    @property
    def icon_url(self) -> str | None:
        if not self.icon:
            return None
        return f"{DISCORD_CDN}/icons/{self.id}/{self.icon}.png?size=512"

    @property
    def banner_url(self) -> str | None:
        if not self.banner:
            return None
        return f"{DISCORD_CDN}/banners/{self.id}/{self.banner}.png?size=1024"


@dataclass
class ScanSnapshot:
    guild: ScanGuild
    categories: list[ScanCategory] = field(default_factory=list)
    roles: list[ScanRole] = field(default_factory=list)
    emojis: list[ScanEmoji] = field(default_factory=list)

    @property
    def default_role(self) -> ScanRole | None:
        return next((r for r in self.roles if r.is_default), None)

    def summary(self) -> str:
        channels = sum(len(c.channels) for c in self.categories)
        real_categories = sum(1 for c in self.categories if c.id is not None)
        return (
            f"'{self.guild.name}' — "
            f"{len(self.roles)} roles, "
            f"{real_categories} categories, "
            f"{channels} channels, "
            f"{len(self.emojis)} emojis"
        )

    @classmethod
    def from_dict(cls, raw: dict) -> "ScanSnapshot":
        """Parse the JSON-shaped scan.  Raises ScanError on anything malformed."""
        if not isinstance(raw, dict):
            raise ScanError("scan snapshot must be an object")
        guild = _require(raw, "guild", dict, "scan")
        categories = _require(raw, "categories", list, "scan")
        roles = _require(raw, "roles", list, "scan")
        emojis = raw.get("emojis") or []
        if not isinstance(emojis, list):
            raise ScanError("scan.emojis must be a list")

        return cls(
            guild=ScanGuild(
                id=str(_require(guild, "id", (str, int), "guild")),
                name=_require(guild, "name", str, "guild"),
                icon=guild.get("icon") or None,
                banner=guild.get("banner") or None,
                member_count=guild.get("member_count"),
            ),
            categories=[
                _parse_category(c, f"categories[{i}]") for i, c in enumerate(categories)
            ],
            roles=[_parse_role(r, f"roles[{i}]") for i, r in enumerate(roles)],
            emojis=[_parse_emoji(e, f"emojis[{i}]") for i, e in enumerate(emojis)],
        )


# ── parsing helpers ───────────────────────────────────────────────────────────


def _require(obj: dict, key: str, kind, where: str):
    if not isinstance(obj, dict):
        raise ScanError(f"{where} must be an object")
    if key not in obj or obj[key] is None:
        raise ScanError(f"{where}.{key} is required")
    value = obj[key]
    if not isinstance(value, kind):
        raise ScanError(f"{where}.{key} has the wrong type ({type(value).__name__})")
    return value


def _object(raw, where: str) -> dict:
    if not isinstance(raw, dict):
        raise ScanError(f"{where} must be an object")
    return raw


def _int(obj: dict, key: str, where: str, default: int = 0) -> int:
    value = obj.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        raise ScanError(f"{where}.{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ScanError(f"{where}.{key} must be an integer, got {value!r}") from None


def _bits(value, where: str) -> int:
    try:
        return parse_bitset(value)
    except PermissionParseError as e:
        raise ScanError(f"{where}: {e}") from e


def _parse_overwrite(raw: dict, where: str) -> RawOverwrite:
    raw = _object(raw, where)
    return RawOverwrite(
        id=str(_require(raw, "id", (str, int), where)),
        type=_int(raw, "type", where, OVERWRITE_ROLE),
        allow=_bits(raw.get("allow"), f"{where}.allow"),
        deny=_bits(raw.get("deny"), f"{where}.deny"),
    )


def _parse_channel(raw: dict, where: str) -> ScanChannel:
    raw = _object(raw, where)
    overwrites = raw.get("permission_overwrites") or []
    if not isinstance(overwrites, list):
        raise ScanError(f"{where}.permission_overwrites must be a list")
    return ScanChannel(
        id=str(_require(raw, "id", (str, int), where)),
        name=_require(raw, "name", str, where),
        type=_int(raw, "type", where),
        type_name=raw.get("typeName") or "text",
        position=_int(raw, "position", where),
        topic=raw.get("topic") or None,
        nsfw=bool(raw.get("nsfw", False)),
        permission_overwrites=[
            _parse_overwrite(ow, f"{where}.permission_overwrites[{i}]")
            for i, ow in enumerate(overwrites)
        ],
    )


def _parse_category(raw: dict, where: str) -> ScanCategory:
    raw = _object(raw, where)
    channels = _require(raw, "channels", list, where)
    cat_id = raw.get("id")
    return ScanCategory(
        id=str(cat_id) if cat_id is not None else None,
        name=_require(raw, "name", str, where),
        position=_int(raw, "position", where),
        channels=[
            _parse_channel(ch, f"{where}.channels[{i}]") for i, ch in enumerate(channels)
        ],
    )


def _parse_role(raw: dict, where: str) -> ScanRole:
    raw = _object(raw, where)
    return ScanRole(
        id=str(_require(raw, "id", (str, int), where)),
        name=_require(raw, "name", str, where),
        color=_int(raw, "color", where),
        position=_int(raw, "position", where),
        permissions=_bits(raw.get("permissions"), f"{where}.permissions"),
        managed=bool(raw.get("managed", False)),
        hoist=bool(raw.get("hoist", False)),
        is_default=bool(raw.get("isDefault", False)),
    )


def _parse_emoji(raw: dict, where: str) -> ScanEmoji:
    raw = _object(raw, where)
    return ScanEmoji(
        id=str(_require(raw, "id", (str, int), where)),
        name=_require(raw, "name", str, where),
        url=_require(raw, "url", str, where),
        animated=bool(raw.get("animated", False)),
    )
