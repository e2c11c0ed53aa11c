"""
adapters/stoat.py
─────────────────
Remote Gateway for Stoat (stoat.chat), formerly Revolt.

API base: https://stoat.chat/api
Auth:     x-bot-token (bot tokens) or x-session-token (user sessions)
Files:    "Autumn" file service, URL discovered from the API root
Docs:     https://developers.stoat.chat
"""

from __future__ import annotations
import json
import logging
import random
import re
import time
from typing import Any, Callable
from urllib.parse import quote, urlparse

import requests
from websockets.exceptions import WebSocketException
from websockets.sync.client import connect

from adapters.base import RemoteGateway, RetryPolicy, request_with_retry
from adapters.permissions.stoat import (
    parse_bitset,
    translate_channel_overwrite,
    translate_role_permissions,
)
from errors import GatewayError, PermissionParseError, RequestValidationError

logger = logging.getLogger(__name__)

STOAT_API = "https://stoat.chat/api"
AUTUMN_API = "https://cdn.stoatusercontent.com"
STOAT_WS = "wss://stoat.chat/events"

MAX_FETCH_SIZE = 10 * 1024 * 1024  # 10 MiB
SESSION_TOKEN_MIN_LEN = 61  # longer than any bot token

# Only assets from these hosts are re-uploaded.
ALLOWED_FETCH_DOMAINS = (
    "cdn.discordapp.com",
    "media.discordapp.net",
    "cdn.revoltusercontent.com",
    "autumn.revolt.chat",
    "stoat.chat",
    "cdn.stoatusercontent.com",
)

_CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def generate_id(now_ms: int | None = None, rng: random.Random | None = None) -> str:
    """A 26-char ULID-style id: 10 time chars + 16 random chars."""
    t = int(time.time() * 1000) if now_ms is None else now_ms
    rng = rng or random.SystemRandom()
    head = []
    for _ in range(10):
        head.append(_CROCKFORD[t % 32])
        t //= 32
    tail = [rng.choice(_CROCKFORD) for _ in range(16)]
    return "".join(reversed(head)) + "".join(tail)


def normalise_emoji_name(name: str) -> str:
    name = re.sub(r"[-\s]+", "_", name.strip().lower())
    name = re.sub(r"[^a-z0-9_]", "", name)[:32]
    return name or "emoji"


def auth_headers(token: str) -> dict:
    if len(token) >= SESSION_TOKEN_MIN_LEN:
        return {"x-session-token": token}
    return {"x-bot-token": token}


def is_allowed_asset_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme == "https" and parsed.hostname in ALLOWED_FETCH_DOMAINS


def _text(body: dict, key: str, action: str, max_len: int = 100, required: bool = True) -> str | None:
    value = body.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise RequestValidationError(action, f"{key} is required")
        return None
    if not isinstance(value, str):
        raise RequestValidationError(action, f"{key} must be a string")
    value = value.strip()
    if len(value) > max_len:
        raise RequestValidationError(action, f"{key} must be under {max_len} characters")
    return value


def _ids(body: dict, action: str, *keys: str) -> list[str]:
    missing = [k for k in keys if not body.get(k)]
    if missing:
        raise RequestValidationError(action, f"{', '.join(missing)} required")
    return [str(body[k]) for k in keys]


class StoatGateway(RemoteGateway):
    platform_name = "Stoat"

    def __init__(
        self,
        api_url: str = STOAT_API,
        policy: RetryPolicy | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: float = 10,
        ws_timeout: float = 15,
        clear_delay: float = 0.5,
    ):
        self.api_url = api_url.rstrip("/")
        self.policy = policy or RetryPolicy()
        self.session = session or requests.Session()
        self.sleep = sleep
        self.timeout = timeout
        self.ws_timeout = ws_timeout
        self.clear_delay = clear_delay
        self._autumn_url: str | None = None
        self._ws_url: str | None = None

        self._actions: dict[str, Callable[[dict, str], Any]] = {
            "check_connection": self._check_connection,
            "list_servers": self._list_servers,
            "create_server": self._create_server,
            "set_server_icon": self._set_server_icon,
            "set_server_banner": self._set_server_banner,
            "create_emoji": self._create_emoji,
            "create_role": self._create_role,
            "edit_role": self._edit_role,
            "set_role_permissions": self._set_role_permissions,
            "set_default_permissions": self._set_default_permissions,
            "create_category": self._create_category,
            "create_channel": self._create_channel,
            "set_permissions": self._set_permissions,
            "move_channel_to_category": self._move_channel_to_category,
            "clear_server": self._clear_server,
        }

    @property
    def actions(self) -> list[str]:
        return sorted(self._actions)

    def call(self, action: str, body: dict | None = None, auth_token: str | None = None) -> Any:
        handler = self._actions.get(action)
        if handler is None:
            raise RequestValidationError(action, "unknown action")
        if not auth_token:
            raise RequestValidationError(action, "Stoat not connected, a token is required")
        return handler(dict(body or {}), auth_token)

    # ── internal HTTP helpers ─────────────────────────────────────────────

    def _fetch(
        self,
        action: str,
        token: str,
        method: str,
        path: str,
        payload: dict | None = None,
    ) -> Any:
        url = f"{self.api_url}{path}"
        logger.debug("[stoat] %s %s", method, path)
        kwargs: dict = {"headers": auth_headers(token), "timeout": self.timeout}
        if payload is not None:
            kwargs["json"] = payload
        r = request_with_retry(
            self.session, method, url, action=action, policy=self.policy, sleep=self.sleep, **kwargs
        )
        if r.status_code == 204 or not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise GatewayError(action, r.status_code, "response was not JSON") from e

    def _discover(self) -> None:
        """Read the file-service and events URLs from the API root, once."""
        if self._autumn_url is not None:
            return
        autumn, ws = AUTUMN_API, STOAT_WS
        try:
            r = self.session.get(f"{self.api_url}/", timeout=self.timeout)
            if r.ok:
                data = r.json()
                autumn = (data.get("features", {}).get("autumn", {}) or {}).get("url") or autumn
                ws = data.get("ws") or ws
        except (requests.RequestException, ValueError, AttributeError) as e:
            logger.debug("[stoat] API root discovery failed, using defaults: %s", e)
        self._autumn_url, self._ws_url = autumn.rstrip("/"), ws

    def _upload(self, action: str, token: str, file_url: str | None, tag: str) -> str:
        """Download an asset from an allowed CDN and upload it to Autumn."""
        if not file_url or not is_allowed_asset_url(file_url):
            raise RequestValidationError(
                action, "only HTTPS URLs from known CDN domains are accepted"
            )
        self._discover()

        r = request_with_retry(
            self.session,
            "GET",
            file_url,
            action=action,
            policy=self.policy,
            sleep=self.sleep,
            allow_redirects=False,
            stream=True,
            timeout=self.timeout,
        )
        try:
            if r.status_code != 200:
                raise GatewayError(action, r.status_code, "failed to download file from URL")
            length = r.headers.get("Content-Length")
            if length and length.isdigit() and int(length) > MAX_FETCH_SIZE:
                raise GatewayError(action, None, "file too large (max 10MB)")
            content = bytearray()
            for chunk in r.iter_content(64 * 1024):
                content.extend(chunk)
                if len(content) > MAX_FETCH_SIZE:
                    raise GatewayError(action, None, "file too large (max 10MB)")
            content_type = r.headers.get("Content-Type", "application/octet-stream")
        finally:
            r.close()

        upload = request_with_retry(
            self.session,
            "POST",
            f"{self._autumn_url}/{tag}",
            action=action,
            policy=self.policy,
            sleep=self.sleep,
            files={"file": ("upload", bytes(content), content_type)},
            headers=auth_headers(token),
            timeout=self.timeout * 3,
        )
        upload_id = upload.json().get("id")
        if not upload_id:
            raise GatewayError(action, upload.status_code, "upload returned no id")
        return upload_id

    # ── actions ───────────────────────────────────────────────────────────

    def _check_connection(self, body: dict, token: str):
        return self._fetch("check_connection", token, "GET", "/users/@me")

    def _list_servers(self, body: dict, token: str) -> list[dict]:
        me = self._fetch("list_servers", token, "GET", "/users/@me") or {}
        my_id = me.get("_id")
        self._discover()
        url = f"{self._ws_url}?version=1&format=json&token={quote(token)}"

        try:
            with connect(url, open_timeout=self.ws_timeout) as ws:
                deadline = time.monotonic() + self.ws_timeout
                while True:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise GatewayError("list_servers", None, "timed out waiting for Ready event")
                    try:
                        msg = json.loads(ws.recv(timeout=remaining))
                    except ValueError:
                        continue
                    if isinstance(msg, dict) and msg.get("type") == "Ready":
                        break
        except TimeoutError as e:
            raise GatewayError("list_servers", None, "timed out waiting for Ready event") from e
        except (OSError, WebSocketException) as e:
            raise GatewayError("list_servers", None, f"WebSocket error: {e}") from e

        servers = [
            {
                "id": s["_id"],
                "name": s.get("name") or "Unknown",
                "icon": (s.get("icon") or {}).get("_id"),
            }
            for s in msg.get("servers") or []
            if s.get("owner") == my_id
        ]
        logger.info("[stoat] %d owned server(s) in Ready event", len(servers))
        return servers

    def _create_server(self, body: dict, token: str):
        action = "create_server"
        payload = {"name": _text(body, "name", action)}
        description = _text(body, "description", action, max_len=1024, required=False)
        if description:
            payload["description"] = description
        return self._fetch(action, token, "POST", "/servers/create", payload)

    def _set_branding(self, action: str, body: dict, token: str, url_key: str, field: str, tag: str):
        (server_id,) = _ids(body, action, "server_id")
        asset_id = self._upload(action, token, body.get(url_key), tag)
        return self._fetch(action, token, "PATCH", f"/servers/{server_id}", {field: asset_id})

    def _set_server_icon(self, body: dict, token: str):
        return self._set_branding("set_server_icon", body, token, "icon_url", "icon", "icons")

    def _set_server_banner(self, body: dict, token: str):
        return self._set_branding("set_server_banner", body, token, "banner_url", "banner", "banners")

    def _create_emoji(self, body: dict, token: str):
        action = "create_emoji"
        (server_id,) = _ids(body, action, "server_id")
        name = normalise_emoji_name(_text(body, "name", action, max_len=32))
        asset_id = self._upload(action, token, body.get("emoji_url"), "emojis")
        data = self._fetch(
            action,
            token,
            "PUT",
            f"/custom/emoji/{asset_id}",
            {"name": name, "parent": {"type": "Server", "id": server_id}},
        )
        if not data or data.get("name") != name:
            logger.info("[stoat] emoji name mismatch, patching to %s", name)
            try:
                data = self._fetch(action, token, "PATCH", f"/custom/emoji/{asset_id}", {"name": name})
            except GatewayError as e:
                logger.warning("[stoat] emoji name patch failed: %s", e)
        return data

    def _create_role(self, body: dict, token: str):
        action = "create_role"
        (server_id,) = _ids(body, action, "server_id")
        payload = {"name": _text(body, "name", action)}
        if body.get("rank") is not None:
            payload["rank"] = body["rank"]
        return self._fetch(action, token, "POST", f"/servers/{server_id}/roles", payload)

    def _edit_role(self, body: dict, token: str):
        action = "edit_role"
        server_id, role_id = _ids(body, action, "server_id", "role_id")
        payload: dict = {}
        name = _text(body, "name", action, required=False)
        if name:
            payload["name"] = name
        for key in ("colour", "hoist", "rank"):
            if body.get(key) is not None:
                payload[key] = body[key]
        return self._fetch(action, token, "PATCH", f"/servers/{server_id}/roles/{role_id}", payload)

    def _set_role_permissions(self, body: dict, token: str):
        action = "set_role_permissions"
        server_id, role_id = _ids(body, action, "server_id", "role_id")
        if "allow" in body or "deny" in body:
            allow, deny = int(body.get("allow") or 0), int(body.get("deny") or 0)
        else:
            try:
                pair = translate_role_permissions(parse_bitset(body.get("source_permissions")))
            except PermissionParseError as e:
                raise RequestValidationError(action, str(e)) from e
            allow, deny = pair.allow, pair.deny
        return self._fetch(
            action,
            token,
            "PUT",
            f"/servers/{server_id}/permissions/{role_id}",
            {"permissions": {"allow": allow, "deny": deny}},
        )

    def _set_default_permissions(self, body: dict, token: str):
        action = "set_default_permissions"
        (server_id,) = _ids(body, action, "server_id")
        permissions = body.get("permissions")
        if not isinstance(permissions, dict):
            raise RequestValidationError(action, "permissions are required")
        # The default role takes a plain allow mask.
        return self._fetch(
            action,
            token,
            "PUT",
            f"/servers/{server_id}/permissions/default",
            {"permissions": int(permissions.get("allow") or 0)},
        )

    def _categories(self, action: str, token: str, server_id: str) -> list[dict]:
        server = self._fetch(action, token, "GET", f"/servers/{server_id}") or {}
        return list(server.get("categories") or [])

    def _create_category(self, body: dict, token: str):
        action = "create_category"
        (server_id,) = _ids(body, action, "server_id")
        title = _text(body, "name", action)
        cat_id = generate_id()
        categories = self._categories(action, token, server_id)
        categories.append({"id": cat_id, "title": title, "channels": []})
        self._fetch(action, token, "PATCH", f"/servers/{server_id}", {"categories": categories})
        return {"_id": cat_id, "id": cat_id, "title": title}

    def _create_channel(self, body: dict, token: str):
        action = "create_channel"
        (server_id,) = _ids(body, action, "server_id")
        payload: dict = {
            "name": _text(body, "name", action),
            "type": body.get("channel_type") or "Text",
        }
        description = _text(body, "description", action, max_len=1024, required=False)
        if description:
            payload["description"] = description
        if body.get("nsfw") is not None:
            payload["nsfw"] = bool(body["nsfw"])
        return self._fetch(action, token, "POST", f"/servers/{server_id}/channels", payload)

    def _set_permissions(self, body: dict, token: str):
        action = "set_permissions"
        channel_id, role_id = _ids(body, action, "channel_id", "role_id")
        if "source_allow" in body or "source_deny" in body:
            try:
                pair = translate_channel_overwrite(
                    parse_bitset(body.get("source_allow")),
                    parse_bitset(body.get("source_deny")),
                )
            except PermissionParseError as e:
                raise RequestValidationError(action, str(e)) from e
            allow, deny = pair.allow, pair.deny
        else:
            allow, deny = int(body.get("allow") or 0), int(body.get("deny") or 0)
        return self._fetch(
            action,
            token,
            "PUT",
            f"/channels/{channel_id}/permissions/{role_id}",
            {"permissions": {"allow": allow, "deny": deny}},
        )

    def _move_channel_to_category(self, body: dict, token: str):
        action = "move_channel_to_category"
        server_id, category_id, channel_id = _ids(
            body, action, "server_id", "category_id", "channel_id"
        )
        categories = self._categories(action, token, server_id)
        for cat in categories:
            if cat.get("id") == category_id:
                channels = cat.setdefault("channels", [])
                if channel_id not in channels:
                    channels.append(channel_id)
                break
        else:
            categories.append({"id": category_id, "title": "Category", "channels": [channel_id]})
        return self._fetch(action, token, "PATCH", f"/servers/{server_id}", {"categories": categories})

    def _clear_server(self, body: dict, token: str) -> dict:
        action = "clear_server"
        (server_id,) = _ids(body, action, "server_id")
        logger.info("[stoat] clearing server %s", server_id)
        server = self._fetch(action, token, "GET", f"/servers/{server_id}") or {}
        summary = {"channels_deleted": 0, "roles_deleted": 0, "categories_cleared": False}

        for channel_id in server.get("channels") or []:
            try:
                self._fetch(action, token, "DELETE", f"/channels/{channel_id}")
                summary["channels_deleted"] += 1
            except GatewayError as e:
                logger.warning("[stoat] failed to delete channel %s: %s", channel_id, e)
            self.sleep(self.clear_delay)

        for role_id in server.get("roles") or {}:
            if role_id == "default":
                continue
            try:
                self._fetch(action, token, "DELETE", f"/servers/{server_id}/roles/{role_id}")
                summary["roles_deleted"] += 1
            except GatewayError as e:
                logger.warning("[stoat] failed to delete role %s: %s", role_id, e)
            self.sleep(self.clear_delay)

        self._fetch(action, token, "PATCH", f"/servers/{server_id}", {"categories": []})
        summary["categories_cleared"] = True
        logger.info(
            "[stoat] server cleared: %d channels, %d roles",
            summary["channels_deleted"],
            summary["roles_deleted"],
        )
        return summary
