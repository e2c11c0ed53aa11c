"""
importer.py
───────────
Builds the default MappingConfig from a ScanSnapshot.

Runs once per scan.  Every decision is a pure function of the snapshot, so
importing the same scan twice yields equal plans.
"""

from __future__ import annotations
import logging

from adapters.permissions.stoat import (
    DISCORD_ADMINISTRATOR,
    DISCORD_SEND_MESSAGES,
    DISCORD_VIEW_CHANNEL,
    TriState,
    translate_role_permissions,
)
from models import (
    ChannelKind,
    ChannelPermissionOverride,
    MappedCategory,
    MappedChannel,
    MappedEmoji,
    MappedRole,
    MappingConfig,
)
from snapshot import OVERWRITE_ROLE, RawOverwrite, ScanChannel, ScanRole, ScanSnapshot

logger = logging.getLogger(__name__)


def _tri_state(allow: int, deny: int, bit: int) -> TriState:
    if deny & bit:
        return TriState.DENY
    if allow & bit:
        return TriState.ALLOW
    return TriState.INHERIT


def find_everyone_overwrite(
    overwrites: list[RawOverwrite], roles: list[ScanRole]
) -> RawOverwrite | None:
    """The @everyone entry: the default role's id, or an unknown role id when
    the scan did not flag a default role."""
    default_role = next((r for r in roles if r.is_default), None)
    known = {r.id for r in roles}
    for ow in overwrites:
        if ow.type != OVERWRITE_ROLE:
            continue
        if default_role is not None:
            if ow.id == default_role.id:
                return ow
        elif ow.id not in known:
            return ow
    return None


def is_private_channel(overwrites: list[RawOverwrite], roles: list[ScanRole]) -> bool:
    everyone = find_everyone_overwrite(overwrites, roles)
    return everyone is not None and bool(everyone.deny & DISCORD_VIEW_CHANNEL)


def convert_raw_overwrites(
    overwrites: list[RawOverwrite], roles: list[ScanRole]
) -> list[ChannelPermissionOverride]:
    """Derive tri-state (view, send) overrides from Discord overwrites.

    - @everyone gets an entry whenever it has an overwrite at all.
    - Other roles get an entry only when they have their own overwrite.
    - Administrator roles are left out unless the channel is private, where
      every role's access has to be explicit.
    """
    if not overwrites:
        return []

    everyone = find_everyone_overwrite(overwrites, roles)
    base_deny_view = everyone is not None and bool(everyone.deny & DISCORD_VIEW_CHANNEL)

    role_ids = {r.id for r in roles}
    specific: dict[str, RawOverwrite] = {}
    for ow in overwrites:
        if ow.type != OVERWRITE_ROLE or ow is everyone or ow.id not in role_ids:
            continue
        specific[ow.id] = ow

    result: list[ChannelPermissionOverride] = []
    for role in roles:
        if role.is_default:
            if everyone is not None:
                result.append(_override(role, everyone))
            continue
        if role.permissions & DISCORD_ADMINISTRATOR and not base_deny_view:
            continue
        ow = specific.get(role.id)
        if ow is not None:
            result.append(_override(role, ow))
    return result


def _override(role: ScanRole, ow: RawOverwrite) -> ChannelPermissionOverride:
    can_view = _tri_state(ow.allow, ow.deny, DISCORD_VIEW_CHANNEL)
    can_send = _tri_state(ow.allow, ow.deny, DISCORD_SEND_MESSAGES)
    if can_view is TriState.DENY:
        can_send = TriState.DENY
    return ChannelPermissionOverride(
        role_id=role.id,
        role_name=role.name,
        can_view=can_view,
        can_send=can_send,
    )


def _map_channel(ch: ScanChannel, roles: list[ScanRole]) -> MappedChannel:
    kind = ChannelKind.from_type_name(ch.type_name)
    return MappedChannel(
        source_id=ch.id,
        name=ch.name,
        kind=kind,
        included=kind.transferable,
        topic=ch.topic,
        nsfw=ch.nsfw,
        is_private=is_private_channel(ch.permission_overwrites, roles),
        overrides=convert_raw_overwrites(ch.permission_overwrites, roles),
    )


def _map_role(role: ScanRole) -> MappedRole:
    included = True if role.is_default else not role.managed
    return MappedRole(
        source_id=role.id,
        name=role.name,
        included=included,
        color=role.color,
        position=role.position,
        hoist=role.hoist,
        is_managed=role.managed and not role.is_default,
        is_default=role.is_default,
        source_permissions=role.permissions,
        permissions=translate_role_permissions(role.permissions) if included else None,
    )


def build_default_mapping(scan: ScanSnapshot) -> MappingConfig:
    mapping = MappingConfig(
        server_name=scan.guild.name,
        server_description="",
        include_icon=bool(scan.guild.icon),
        include_banner=bool(scan.guild.banner),
        icon_url=scan.guild.icon_url,
        banner_url=scan.guild.banner_url,
        categories=[
            MappedCategory(
                source_id=cat.id,
                name=cat.name,
                included=True,
                channels=[_map_channel(ch, scan.roles) for ch in cat.channels],
            )
            for cat in scan.categories
        ],
        roles=[_map_role(r) for r in scan.roles],
        emojis=[
            MappedEmoji(
                source_id=e.id,
                name=e.name,
                url=e.url,
                animated=e.animated,
                included=True,
            )
            for e in scan.emojis
        ],
    )

    unsupported = sum(
        1 for _, ch in mapping.iter_channels() if not ch.kind.transferable
    )
    if unsupported:
        logger.info("%d channel(s) have no Stoat equivalent and are excluded", unsupported)
    return mapping


def import_scan(raw: dict) -> MappingConfig:
    """Parse a raw scan dict and build its default plan.  Raises ScanError."""
    return build_default_mapping(ScanSnapshot.from_dict(raw))
