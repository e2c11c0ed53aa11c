"""Shared test fixtures for the transfer test suite."""

from __future__ import annotations

import pytest

from adapters.base import RemoteGateway
from errors import GatewayError
from importer import import_scan
from migrator import Migrator, TransferContext

DISCORD_VIEW = 1 << 10
DISCORD_SEND = 1 << 11


class FakeGateway(RemoteGateway):
    """Records every call; individual actions can be told to fail."""

    platform_name = "Fake"

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.failures: dict[str, tuple] = {}
        self._seq = 0

    def fail(self, action, when=None, status=500):
        """Make ``action`` raise GatewayError (only when ``when(body)`` is true)."""
        self.failures[action] = (when, status)

    def call(self, action, body=None, auth_token=None):
        body = dict(body or {})
        self.calls.append((action, body))
        if action in self.failures:
            when, status = self.failures[action]
            if when is None or when(body):
                raise GatewayError(action, status, "simulated failure")

        self._seq += 1
        if action == "create_server":
            return {"server": {"_id": "srv-1", "name": body.get("name")}, "channels": []}
        if action == "create_role":
            return {"id": f"role-{self._seq}", "role": {"name": body.get("name")}}
        if action == "create_category":
            return {"_id": f"cat-{self._seq}", "id": f"cat-{self._seq}"}
        if action == "create_channel":
            return {"_id": f"chan-{self._seq}", "name": body.get("name")}
        if action == "clear_server":
            return {"channels_deleted": 2, "roles_deleted": 1, "categories_cleared": True}
        if action == "list_servers":
            return []
        return {}

    def actions(self) -> list[str]:
        return [a for a, _ in self.calls]

    def calls_for(self, action) -> list[dict]:
        return [b for a, b in self.calls if a == action]


@pytest.fixture()
def raw_scan():
    """A small server: three categories, five channels, four roles, one emoji.

    - #welcome sits in the Uncategorized bucket
    - #announcements is read-only for @everyone
    - #staff-chat is private, Mod is explicitly allowed in
    - #forum has no Stoat equivalent
    """
    return {
        "guild": {"id": "100", "name": "Test Guild", "icon": "abc123", "banner": None},
        "categories": [
            {
                "id": None,
                "name": "Uncategorized",
                "position": -1,
                "channels": [
                    {"id": "400", "name": "welcome", "type": 0, "typeName": "text"},
                ],
            },
            {
                "id": "200",
                "name": "General",
                "position": 0,
                "channels": [
                    {"id": "401", "name": "chat", "type": 0, "typeName": "text", "topic": "Talk"},
                    {
                        "id": "402",
                        "name": "announcements",
                        "type": 5,
                        "typeName": "announcement",
                        "permission_overwrites": [
                            {"id": "100", "type": 0, "allow": "0", "deny": str(DISCORD_SEND)},
                        ],
                    },
                    {"id": "403", "name": "Lounge", "type": 2, "typeName": "voice"},
                    {"id": "404", "name": "forum", "type": 15, "typeName": "forum"},
                ],
            },
            {
                "id": "201",
                "name": "Staff",
                "position": 1,
                "channels": [
                    {
                        "id": "405",
                        "name": "staff-chat",
                        "type": 0,
                        "typeName": "text",
                        "permission_overwrites": [
                            {"id": "100", "type": 0, "allow": "0", "deny": str(DISCORD_VIEW)},
                            {
                                "id": "301",
                                "type": 0,
                                "allow": str(DISCORD_VIEW | DISCORD_SEND),
                                "deny": "0",
                            },
                            {"id": "300", "type": 0, "allow": "0", "deny": "0"},
                            {"id": "999", "type": 1, "allow": str(DISCORD_VIEW), "deny": "0"},
                        ],
                    },
                ],
            },
        ],
        "roles": [
            {
                "id": "300",
                "name": "Admin",
                "color": 0xFF0000,
                "position": 3,
                "permissions": "8",
                "hoist": True,
            },
            {"id": "301", "name": "Mod", "color": 0, "position": 2, "permissions": str((1 << 13) | (1 << 1))},
            {"id": "302", "name": "Helper Bot", "position": 1, "permissions": "0", "managed": True},
            {
                "id": "100",
                "name": "@everyone",
                "position": 0,
                "permissions": str(DISCORD_VIEW | DISCORD_SEND | (1 << 16)),
                "isDefault": True,
            },
        ],
        "emojis": [
            {"id": "500", "name": "party", "url": "https://cdn.discordapp.com/emojis/500.png?size=128"},
        ],
    }


@pytest.fixture()
def mapping(raw_scan):
    return import_scan(raw_scan)


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def context():
    return TransferContext(auth_token="token")


@pytest.fixture()
def migrator(gateway):
    return Migrator(gateway, call_delay=0)
