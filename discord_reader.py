"""
discord_reader.py
─────────────────
Reads a Discord server via the Discord REST API and converts it into a
ScanSnapshot: categories with their channels and raw permission overwrites,
roles with raw permission bitfields, emoji and guild branding.

Requires a Discord bot token with at minimum:
  • View Channels
  • Manage Roles  ← only needed to see overwrites on hidden channels
"""

from __future__ import annotations
import logging
import time
from typing import Callable

import requests

from adapters.base import RetryPolicy, request_with_retry
from errors import GatewayError, ScanError
from snapshot import ScanSnapshot

logger = logging.getLogger(__name__)

DISCORD_API = "https://discord.com/api/v10"
DISCORD_CDN = "https://cdn.discordapp.com"

# Discord channel type constants
_D_TEXT = 0
_D_VOICE = 2
_D_CATEGORY = 4
_D_ANNOUNCE = 5
_D_STAGE = 13
_D_FORUM = 15

_TYPE_NAMES = {
    _D_TEXT: "text",
    _D_VOICE: "voice",
    _D_ANNOUNCE: "announcement",
    _D_STAGE: "stage",
    _D_FORUM: "forum",
}

UNCATEGORIZED = "Uncategorized"


def type_name(dtype: int) -> str | None:
    """Scan type name for a Discord channel type; None for DMs, threads, …"""
    return _TYPE_NAMES.get(dtype)


def emoji_url(emoji: dict) -> str:
    ext = "gif" if emoji.get("animated") else "png"
    return f"{DISCORD_CDN}/emojis/{emoji['id']}.{ext}?size=128"


def _channel(ch: dict) -> dict:
    return {
        "id": ch["id"],
        "name": ch.get("name") or "unnamed",
        "type": ch["type"],
        "typeName": type_name(ch["type"]),
        "position": ch.get("position", 0),
        "topic": ch.get("topic") or None,
        "nsfw": bool(ch.get("nsfw", False)),
        "permission_overwrites": [
            {
                "id": ow["id"],
                "type": int(ow.get("type", 0)),
                "allow": ow.get("allow", "0"),
                "deny": ow.get("deny", "0"),
            }
            for ow in ch.get("permission_overwrites") or []
        ],
    }


def build_scan(guild: dict, raw_roles: list, raw_channels: list, raw_emojis: list) -> dict:
    """Assemble the JSON-shaped scan from raw Discord API payloads."""
    categories: dict[str, dict] = {}
    uncategorized = {"id": None, "name": UNCATEGORIZED, "position": -1, "channels": []}

    for ch in raw_channels:
        if ch["type"] == _D_CATEGORY:
            categories[ch["id"]] = {
                "id": ch["id"],
                "name": ch.get("name") or "unnamed",
                "position": ch.get("position", 0),
                "channels": [],
            }

    for ch in sorted(raw_channels, key=lambda c: c.get("position", 0)):
        if type_name(ch["type"]) is None:
            continue  # category, DM, thread, etc.
        parent = categories.get(ch.get("parent_id") or "")
        (parent or uncategorized)["channels"].append(_channel(ch))

    ordered = sorted(categories.values(), key=lambda c: c["position"])
    if uncategorized["channels"]:
        ordered.insert(0, uncategorized)

    roles = [
        {
            "id": r["id"],
            "name": r["name"],
            "color": r.get("color") or 0,
            "position": r.get("position", 0),
            "permissions": r.get("permissions", "0"),
            "managed": bool(r.get("managed", False)),
            "hoist": bool(r.get("hoist", False)),
            "isDefault": r["name"] == "@everyone",
        }
        for r in sorted(raw_roles, key=lambda r: r.get("position", 0), reverse=True)
    ]

    emojis = [
        {
            "id": e["id"],
            "name": e.get("name") or "emoji",
            "url": emoji_url(e),
            "animated": bool(e.get("animated", False)),
        }
        for e in raw_emojis
        if e.get("id")
    ]

    return {
        "guild": {
            "id": guild["id"],
            "name": guild["name"],
            "icon": guild.get("icon"),
            "banner": guild.get("banner"),
            "member_count": guild.get("approximate_member_count"),
        },
        "categories": ordered,
        "roles": roles,
        "emojis": emojis,
    }


class DiscordReader:
    def __init__(
        self,
        bot_token: str,
        guild_id: str,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        policy: RetryPolicy | None = None,
    ):
        self.token = bot_token
        self.guild_id = guild_id
        self.session = session or requests.Session()
        self.sleep = sleep
        # Discord reports retry_after in seconds.
        self.policy = policy or RetryPolicy(
            max_retries=5, retry_after_scale=1.0, padding=0.1, max_wait=60.0
        )

    def _get(self, endpoint: str):
        try:
            r = request_with_retry(
                self.session,
                "GET",
                f"{DISCORD_API}{endpoint}",
                action="discord_read",
                policy=self.policy,
                sleep=self.sleep,
                headers={"Authorization": f"Bot {self.token}"},
                timeout=10,
            )
        except GatewayError as e:
            if e.status == 401:
                raise ScanError("Invalid Discord bot token.") from e
            if e.status in (403, 404):
                raise ScanError(
                    f"Could not read {endpoint} ({e.status}). Is the bot in the server?"
                ) from e
            raise ScanError(f"Discord request failed on {endpoint}: {e}") from e
        return r.json()

    def read_raw(self) -> dict:
        guild = self._get(f"/guilds/{self.guild_id}?with_counts=true")
        logger.info("Server: %s (icon: %s)", guild.get("name"), bool(guild.get("icon")))
        raw_roles = self._get(f"/guilds/{self.guild_id}/roles") or []
        raw_channels = self._get(f"/guilds/{self.guild_id}/channels") or []
        raw_emojis = self._get(f"/guilds/{self.guild_id}/emojis") or []
        logger.info(
            "Fetched %d roles, %d channels, %d emojis",
            len(raw_roles),
            len(raw_channels),
            len(raw_emojis),
        )
        return build_scan(guild, raw_roles, raw_channels, raw_emojis)

    def read(self) -> ScanSnapshot:
        return ScanSnapshot.from_dict(self.read_raw())
