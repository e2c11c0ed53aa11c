"""
models.py
─────────
The editable transfer plan (MappingConfig).

The importer projects a ScanSnapshot into a MappingConfig with sensible
defaults; the user then renames, toggles and edits it through the id-keyed
mutators below; the migrator only ever reads it.  Entities are addressed by
their Discord id (or, for custom entities, by their generated key), never by
list position.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator

from adapters.permissions.stoat import (
    DEFAULT_CHATTER,
    PERMISSION_MAP_VERSION,
    PermissionPair,
    TriState,
    cycle_tri_state,
)

__all__ = [
    "ChannelKind",
    "ChannelPermissionOverride",
    "CustomCategory",
    "CustomChannel",
    "CustomRole",
    "MappedCategory",
    "MappedChannel",
    "MappedEmoji",
    "MappedRole",
    "MappingConfig",
    "PermissionPair",
    "TriState",
]


class ChannelKind(Enum):
    TEXT = "text"
    VOICE = "voice"
    ANNOUNCEMENT = "announcement"  # no native equivalent → created as text
    UNSUPPORTED = "unsupported"  # forum, stage, … never transferred

    @classmethod
    def from_type_name(cls, type_name: str) -> "ChannelKind":
        try:
            kind = cls(type_name)
        except ValueError:
            return cls.UNSUPPORTED
        return kind

    @property
    def transferable(self) -> bool:
        return self is not ChannelKind.UNSUPPORTED

    @property
    def stoat_type(self) -> str:
        return "Voice" if self is ChannelKind.VOICE else "Text"


@dataclass
class ChannelPermissionOverride:
    role_id: str  # Discord role id, or a custom role key
    role_name: str
    can_view: TriState = TriState.INHERIT
    can_send: TriState = TriState.INHERIT

    @property
    def is_inherit(self) -> bool:
        return self.can_view is TriState.INHERIT and self.can_send is TriState.INHERIT

    def set_view(self, value: TriState) -> None:
        # Send is meaningless without view.
        self.can_view = value
        if value is TriState.DENY:
            self.can_send = TriState.DENY
        elif value is TriState.INHERIT:
            self.can_send = TriState.INHERIT

    def to_dict(self) -> dict:
        return {
            "role_id": self.role_id,
            "role_name": self.role_name,
            "can_view": self.can_view.to_bool(),
            "can_send": self.can_send.to_bool(),
        }


@dataclass
class MappedChannel:
    source_id: str
    name: str
    kind: ChannelKind = ChannelKind.TEXT
    included: bool = True
    topic: str | None = None
    nsfw: bool = False
    is_private: bool = False
    overrides: list[ChannelPermissionOverride] = field(default_factory=list)

    def __post_init__(self):
        if not self.kind.transferable:
            self.included = False

    def override_for(self, role_id: str) -> ChannelPermissionOverride | None:
        return next((o for o in self.overrides if o.role_id == role_id), None)


@dataclass
class MappedCategory:
    source_id: str | None  # None = "Uncategorized", never created remotely
    name: str
    included: bool = True
    channels: list[MappedChannel] = field(default_factory=list)

    @property
    def is_synthetic(self) -> bool:
        return self.source_id is None


@dataclass
class MappedRole:
    source_id: str
    name: str
    included: bool = True
    color: int = 0  # 0xRRGGBB, 0 = no colour
    position: int = 0
    hoist: bool = False
    is_managed: bool = False  # bot-owned, never recreated
    is_default: bool = False  # @everyone → Stoat's "default" permissions
    source_permissions: int = 0  # raw Discord bitfield
    permissions: PermissionPair | None = None  # None → translate at transfer time

    @property
    def colour_hex(self) -> str | None:
        return f"#{self.color:06x}" if self.color else None


@dataclass
class MappedEmoji:
    source_id: str
    name: str
    url: str
    animated: bool = False
    included: bool = True


@dataclass
class CustomCategory:
    key: str
    name: str


@dataclass
class CustomRole:
    key: str
    name: str
    color: str | None = None  # "#rrggbb"
    permissions: PermissionPair | None = DEFAULT_CHATTER


@dataclass
class CustomChannel:
    key: str
    name: str
    kind: ChannelKind = ChannelKind.TEXT
    category_id: str | None = None  # Discord category id or custom category key
    is_private: bool = False
    overrides: list[ChannelPermissionOverride] = field(default_factory=list)


@dataclass
class MappingConfig:
    server_name: str
    server_description: str = ""

    include_icon: bool = False
    include_banner: bool = False
    icon_url: str | None = None  # source CDN URL
    banner_url: str | None = None
    custom_icon_url: str | None = None  # user-supplied replacement
    custom_banner_url: str | None = None

    categories: list[MappedCategory] = field(default_factory=list)
    roles: list[MappedRole] = field(default_factory=list)
    emojis: list[MappedEmoji] = field(default_factory=list)

    custom_categories: list[CustomCategory] = field(default_factory=list)
    custom_roles: list[CustomRole] = field(default_factory=list)
    custom_channels: list[CustomChannel] = field(default_factory=list)

    permission_map_version: int = PERMISSION_MAP_VERSION

    _custom_seq: int = field(default=0, repr=False, compare=False)

    # ── lookups ───────────────────────────────────────────────────────────

    def iter_channels(self) -> Iterator[tuple[MappedCategory, MappedChannel]]:
        for cat in self.categories:
            for ch in cat.channels:
                yield cat, ch

    def category(self, source_id: str | None) -> MappedCategory:
        for cat in self.categories:
            if cat.source_id == source_id:
                return cat
        raise KeyError(f"unknown category {source_id!r}")

    def channel(self, source_id: str) -> MappedChannel:
        for _, ch in self.iter_channels():
            if ch.source_id == source_id:
                return ch
        raise KeyError(f"unknown channel {source_id!r}")

    def category_of(self, channel_id: str) -> MappedCategory:
        for cat, ch in self.iter_channels():
            if ch.source_id == channel_id:
                return cat
        raise KeyError(f"unknown channel {channel_id!r}")

    def role(self, source_id: str) -> MappedRole:
        for role in self.roles:
            if role.source_id == source_id:
                return role
        raise KeyError(f"unknown role {source_id!r}")

    def emoji(self, source_id: str) -> MappedEmoji:
        for emoji in self.emojis:
            if emoji.source_id == source_id:
                return emoji
        raise KeyError(f"unknown emoji {source_id!r}")

    def custom_channel(self, key: str) -> CustomChannel:
        for ch in self.custom_channels:
            if ch.key == key:
                return ch
        raise KeyError(f"unknown custom channel {key!r}")

    def custom_role(self, key: str) -> CustomRole:
        for role in self.custom_roles:
            if role.key == key:
                return role
        raise KeyError(f"unknown custom role {key!r}")

    @property
    def default_role(self) -> MappedRole | None:
        return next((r for r in self.roles if r.is_default), None)

    def role_name(self, role_id: str) -> str:
        for role in self.roles:
            if role.source_id == role_id:
                return role.name
        for role in self.custom_roles:
            if role.key == role_id:
                return role.name
        raise KeyError(f"unknown role {role_id!r}")

    # ── channel & category edits ──────────────────────────────────────────

    def rename_category(self, source_id: str | None, name: str) -> None:
        self.category(source_id).name = _clean_name(name)

    def set_category_included(self, source_id: str | None, included: bool) -> None:
        """Include/exclude a category together with its transferable channels."""
        cat = self.category(source_id)
        cat.included = included
        for ch in cat.channels:
            ch.included = included and ch.kind.transferable

    def rename_channel(self, source_id: str, name: str) -> None:
        self.channel(source_id).name = _clean_name(name)

    def set_channel_included(self, source_id: str, included: bool) -> None:
        ch = self.channel(source_id)
        if included and not ch.kind.transferable:
            raise ValueError(f"#{ch.name} is a {ch.kind.value} channel and cannot be transferred")
        ch.included = included

    def set_channel_topic(self, source_id: str, topic: str | None) -> None:
        self.channel(source_id).topic = topic or None

    def set_channel_nsfw(self, source_id: str, nsfw: bool) -> None:
        self.channel(source_id).nsfw = nsfw

    def set_channel_private(self, source_id: str, private: bool) -> None:
        ch = self.channel(source_id)
        if ch.is_private and not private:
            # Access lists of a private channel mean nothing once it is public.
            ch.overrides = []
        ch.is_private = private

    def move_channel(
        self, channel_id: str, category_id: str | None, index: int | None = None
    ) -> None:
        """Move a channel into ``category_id`` at ``index`` (end when None)."""
        source = self.category_of(channel_id)
        target = self.category(category_id)
        ch = self.channel(channel_id)
        source.channels.remove(ch)
        if index is None:
            target.channels.append(ch)
        else:
            target.channels.insert(index, ch)

    def move_category(self, source_id: str | None, index: int) -> None:
        cat = self.category(source_id)
        self.categories.remove(cat)
        self.categories.insert(index, cat)

    # ── per-role channel overrides ────────────────────────────────────────

    def _override_target(self, channel_id: str):
        for _, ch in self.iter_channels():
            if ch.source_id == channel_id:
                return ch
        return self.custom_channel(channel_id)

    def set_override(
        self,
        channel_id: str,
        role_id: str,
        can_view: TriState = TriState.INHERIT,
        can_send: TriState = TriState.INHERIT,
    ) -> ChannelPermissionOverride:
        """Add or replace the override for ``role_id`` on a channel."""
        target = self._override_target(channel_id)
        if can_view is TriState.DENY:
            can_send = TriState.DENY
        override = next((o for o in target.overrides if o.role_id == role_id), None)
        if override is None:
            override = ChannelPermissionOverride(
                role_id=role_id, role_name=self.role_name(role_id)
            )
            target.overrides.append(override)
        override.can_view = can_view
        override.can_send = can_send
        return override

    def cycle_override_view(self, channel_id: str, role_id: str) -> TriState:
        override = self._existing_override(channel_id, role_id)
        override.set_view(cycle_tri_state(override.can_view))
        return override.can_view

    def cycle_override_send(self, channel_id: str, role_id: str) -> TriState:
        override = self._existing_override(channel_id, role_id)
        override.can_send = cycle_tri_state(override.can_send)
        return override.can_send

    def remove_override(self, channel_id: str, role_id: str) -> None:
        target = self._override_target(channel_id)
        target.overrides = [o for o in target.overrides if o.role_id != role_id]

    def _existing_override(self, channel_id: str, role_id: str) -> ChannelPermissionOverride:
        target = self._override_target(channel_id)
        for o in target.overrides:
            if o.role_id == role_id:
                return o
        raise KeyError(f"no override for role {role_id!r} on {channel_id!r}")

    # ── roles & emoji ─────────────────────────────────────────────────────

    def rename_role(self, source_id: str, name: str) -> None:
        self.role(source_id).name = _clean_name(name)

    def set_role_included(self, source_id: str, included: bool) -> None:
        role = self.role(source_id)
        if included and role.is_managed:
            raise ValueError(f"role '{role.name}' is managed by an integration")
        role.included = included

    def set_role_color(self, source_id: str, color: int) -> None:
        self.role(source_id).color = color & 0xFFFFFF

    def set_role_permissions(self, source_id: str, permissions: PermissionPair) -> None:
        self.role(source_id).permissions = permissions

    def toggle_role_permission(self, source_id: str, bit: int) -> PermissionPair:
        role = self.role(source_id)
        role.permissions = (role.permissions or PermissionPair()).toggle(bit)
        return role.permissions

    def rename_emoji(self, source_id: str, name: str) -> None:
        self.emoji(source_id).name = _clean_name(name)

    def set_emoji_included(self, source_id: str, included: bool) -> None:
        self.emoji(source_id).included = included

    # ── custom entities ───────────────────────────────────────────────────

    def _next_key(self, prefix: str) -> str:
        key = f"{prefix}-{self._custom_seq}"
        self._custom_seq += 1
        return key

    def add_custom_category(self, name: str) -> CustomCategory:
        cat = CustomCategory(key=self._next_key("custom-category"), name=_clean_name(name))
        self.custom_categories.append(cat)
        return cat

    def add_custom_role(
        self,
        name: str,
        color: str | None = None,
        permissions: PermissionPair | None = DEFAULT_CHATTER,
    ) -> CustomRole:
        role = CustomRole(
            key=self._next_key("custom-role"),
            name=_clean_name(name),
            color=color,
            permissions=permissions,
        )
        self.custom_roles.append(role)
        return role

    def add_custom_channel(
        self,
        name: str,
        kind: ChannelKind = ChannelKind.TEXT,
        category_id: str | None = None,
        is_private: bool = False,
    ) -> CustomChannel:
        if kind not in (ChannelKind.TEXT, ChannelKind.VOICE):
            raise ValueError("custom channels are text or voice")
        if category_id is not None and not self._category_exists(category_id):
            raise KeyError(f"unknown category {category_id!r}")
        ch = CustomChannel(
            key=self._next_key("custom-channel"),
            name=_clean_name(name),
            kind=kind,
            category_id=category_id,
            is_private=is_private,
        )
        self.custom_channels.append(ch)
        return ch

    def _category_exists(self, category_id: str) -> bool:
        return any(c.source_id == category_id for c in self.categories) or any(
            c.key == category_id for c in self.custom_categories
        )

    def remove_custom_category(self, key: str) -> None:
        self.custom_categories = [c for c in self.custom_categories if c.key != key]
        for ch in self.custom_channels:
            if ch.category_id == key:
                ch.category_id = None

    def remove_custom_role(self, key: str) -> None:
        self.custom_roles = [r for r in self.custom_roles if r.key != key]
        for ch in self.custom_channels:
            ch.overrides = [o for o in ch.overrides if o.role_id != key]
        for _, ch in self.iter_channels():
            ch.overrides = [o for o in ch.overrides if o.role_id != key]

    def remove_custom_channel(self, key: str) -> None:
        self.custom_channels = [c for c in self.custom_channels if c.key != key]

    # ── reporting ─────────────────────────────────────────────────────────

    def summary(self) -> str:
        channels = sum(1 for _, ch in self.iter_channels() if ch.included)
        channels += len(self.custom_channels)
        roles = sum(1 for r in self.roles if r.included) + len(self.custom_roles)
        emojis = sum(1 for e in self.emojis if e.included)
        text = f"'{self.server_name}' — {channels} channels, {roles} roles"
        if emojis:
            text += f", {emojis} emojis"
        return text


def _clean_name(name: str) -> str:
    name = name.strip()
    if not name:
        raise ValueError("name must not be empty")
    return name
