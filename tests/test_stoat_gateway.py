"""Unit tests for the Stoat gateway and the shared retry loop."""

import json
from unittest.mock import MagicMock, call, patch

import pytest
import requests

from adapters.base import RetryPolicy, request_with_retry
from adapters.permissions.stoat import SEND_MESSAGE, VIEW_CHANNEL
from adapters.stoat import (
    StoatGateway,
    auth_headers,
    generate_id,
    is_allowed_asset_url,
    normalise_emoji_name,
)
from errors import GatewayError, RequestValidationError

TOKEN = "bot-token-abcdefghijklmnopqrstuvwxyz"
API = "https://stoat.chat/api"

# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------


def _response(status=200, data=None, headers=None, chunks=None):
    """Build a requests.Response stand-in."""
    r = MagicMock()
    r.status_code = status
    r.ok = status < 400
    r.json.return_value = data if data is not None else {}
    r.content = json.dumps(data).encode() if data is not None else b""
    r.text = json.dumps(data) if data is not None else ""
    r.headers = headers or {}
    r.iter_content.return_value = chunks or []
    return r


@pytest.fixture()
def session():
    s = MagicMock()
    s.get.side_effect = requests.ConnectionError("no root")
    return s


@pytest.fixture()
def sleep():
    return MagicMock()


@pytest.fixture()
def gateway(session, sleep):
    return StoatGateway(session=session, sleep=sleep)


def _sent(session, index=-1):
    """(method, url, kwargs) of a recorded session.request call."""
    c = session.request.call_args_list[index]
    return c.args[0], c.args[1], c.kwargs


# -------------------------------------------------------------------
# Helpers with no I/O
# -------------------------------------------------------------------


class TestPureHelpers:
    def test_bot_token_header(self):
        assert auth_headers(TOKEN) == {"x-bot-token": TOKEN}

    def test_session_token_header(self):
        token = "s" * 80
        assert auth_headers(token) == {"x-session-token": token}

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Party Time", "party_time"),
            ("pog-champ", "pog_champ"),
            ("Ünïcode!", "ncode"),
            ("!!!", "emoji"),
            ("x" * 40, "x" * 32),
        ],
    )
    def test_normalise_emoji_name(self, name, expected):
        assert normalise_emoji_name(name) == expected

    def test_generate_id_shape(self):
        new_id = generate_id()
        assert len(new_id) == 26
        assert set(new_id) <= set("0123456789ABCDEFGHJKMNPQRSTVWXYZ")

    def test_generate_id_is_time_prefixed(self):
        assert generate_id(now_ms=0)[:10] == "0000000000"
        assert generate_id(now_ms=1)[:10] < generate_id(now_ms=2**40)[:10]

    @pytest.mark.parametrize(
        "url, allowed",
        [
            ("https://cdn.discordapp.com/icons/1/a.png", True),
            ("https://cdn.stoatusercontent.com/x", True),
            ("http://cdn.discordapp.com/icons/1/a.png", False),
            ("https://evil.example.com/a.png", False),
            ("https://cdn.discordapp.com.evil.com/a.png", False),
            ("not a url", False),
        ],
    )
    def test_asset_allow_list(self, url, allowed):
        assert is_allowed_asset_url(url) is allowed


# -------------------------------------------------------------------
# request_with_retry
# -------------------------------------------------------------------


class TestRetry:
    def _send(self, session, sleep, policy=None):
        return request_with_retry(
            session, "GET", f"{API}/x", action="test", policy=policy or RetryPolicy(), sleep=sleep
        )

    def test_rate_limit_obeys_retry_after(self, session, sleep):
        session.request.side_effect = [_response(429, {"retry_after": 2000}), _response(200, {})]
        assert self._send(session, sleep).status_code == 200
        sleep.assert_called_once_with(3.0)

    def test_rate_limit_without_retry_after(self, session, sleep):
        session.request.side_effect = [_response(429), _response(200, {})]
        self._send(session, sleep)
        sleep.assert_called_once_with(3.0)

    def test_rate_limit_wait_is_capped(self, session, sleep):
        session.request.side_effect = [_response(429, {"retry_after": 60000}), _response(200, {})]
        self._send(session, sleep)
        sleep.assert_called_once_with(15.0)

    def test_bad_gateway_backs_off(self, session, sleep):
        session.request.side_effect = [_response(502), _response(502), _response(200, {})]
        self._send(session, sleep)
        assert sleep.call_args_list == [call(3.0), call(6.0)]

    def test_retries_exhausted(self, session, sleep):
        session.request.return_value = _response(429, {"retry_after": 10})
        with pytest.raises(GatewayError) as exc:
            self._send(session, sleep)
        assert exc.value.status == 429
        assert sleep.call_count == 3
        assert session.request.call_count == 4

    def test_custom_retry_count(self, session, sleep):
        session.request.return_value = _response(502)
        with pytest.raises(GatewayError):
            self._send(session, sleep, RetryPolicy(max_retries=1))
        assert session.request.call_count == 2

    def test_client_error_not_retried(self, session, sleep):
        session.request.return_value = _response(404, {"type": "NotFound"})
        with pytest.raises(GatewayError, match="NotFound") as exc:
            self._send(session, sleep)
        assert exc.value.status == 404
        sleep.assert_not_called()

    def test_network_error_wrapped(self, session, sleep):
        session.request.side_effect = requests.ConnectionError("boom")
        with pytest.raises(GatewayError) as exc:
            self._send(session, sleep)
        assert exc.value.status is None


# -------------------------------------------------------------------
# Dispatch and validation
# -------------------------------------------------------------------


class TestDispatch:
    def test_unknown_action(self, gateway):
        with pytest.raises(RequestValidationError, match="unknown action"):
            gateway.call("launch_rockets", {}, TOKEN)

    def test_token_required(self, gateway, session):
        with pytest.raises(RequestValidationError):
            gateway.call("create_server", {"name": "x"}, None)
        session.request.assert_not_called()

    def test_name_too_long(self, gateway, session):
        with pytest.raises(RequestValidationError, match="under 100"):
            gateway.call("create_server", {"name": "x" * 101}, TOKEN)
        session.request.assert_not_called()

    def test_missing_ids(self, gateway):
        with pytest.raises(RequestValidationError, match="server_id"):
            gateway.call("create_role", {"name": "Mod"}, TOKEN)

    def test_validation_error_is_a_gateway_error(self):
        assert issubclass(RequestValidationError, GatewayError)

    def test_actions_cover_the_vocabulary(self, gateway):
        assert {
            "create_server",
            "set_server_icon",
            "set_server_banner",
            "create_role",
            "edit_role",
            "set_role_permissions",
            "set_default_permissions",
            "create_category",
            "create_channel",
            "move_channel_to_category",
            "set_permissions",
            "create_emoji",
            "clear_server",
            "list_servers",
        } <= set(gateway.actions)


# -------------------------------------------------------------------
# Actions
# -------------------------------------------------------------------


class TestActions:
    def test_create_server(self, gateway, session):
        session.request.return_value = _response(200, {"server": {"_id": "S1"}, "channels": []})
        result = gateway.call("create_server", {"name": " Guild ", "description": "Hi"}, TOKEN)
        assert result["server"]["_id"] == "S1"
        session.request.assert_called_once_with(
            "POST",
            f"{API}/servers/create",
            headers={"x-bot-token": TOKEN},
            timeout=10,
            json={"name": "Guild", "description": "Hi"},
        )

    def test_custom_api_url(self, session, sleep):
        gw = StoatGateway(api_url="https://chat.example.org/api/", session=session, sleep=sleep)
        session.request.return_value = _response(200, {"_id": "U"})
        gw.call("check_connection", None, TOKEN)
        assert _sent(session)[1] == "https://chat.example.org/api/users/@me"

    def test_create_role(self, gateway, session):
        session.request.return_value = _response(200, {"id": "R1", "role": {}})
        gateway.call("create_role", {"server_id": "S", "name": "Mod", "rank": 2}, TOKEN)
        method, url, kwargs = _sent(session)
        assert (method, url, kwargs["json"]) == ("POST", f"{API}/servers/S/roles", {"name": "Mod", "rank": 2})

    def test_edit_role(self, gateway, session):
        session.request.return_value = _response(200, {})
        gateway.call(
            "edit_role", {"server_id": "S", "role_id": "R", "colour": "#ff0000", "hoist": True}, TOKEN
        )
        method, url, kwargs = _sent(session)
        assert (method, url) == ("PATCH", f"{API}/servers/S/roles/R")
        assert kwargs["json"] == {"colour": "#ff0000", "hoist": True}

    def test_set_role_permissions_pair(self, gateway, session):
        session.request.return_value = _response(204)
        assert gateway.call(
            "set_role_permissions", {"server_id": "S", "role_id": "R", "allow": 5, "deny": 2}, TOKEN
        ) is None
        method, url, kwargs = _sent(session)
        assert (method, url) == ("PUT", f"{API}/servers/S/permissions/R")
        assert kwargs["json"] == {"permissions": {"allow": 5, "deny": 2}}

    def test_set_role_permissions_from_source_bits(self, gateway, session):
        session.request.return_value = _response(204)
        gateway.call(
            "set_role_permissions",
            {"server_id": "S", "role_id": "R", "source_permissions": str((1 << 10) | (1 << 11))},
            TOKEN,
        )
        assert _sent(session)[2]["json"] == {
            "permissions": {"allow": VIEW_CHANNEL | SEND_MESSAGE, "deny": 0}
        }

    def test_set_role_permissions_bad_source_bits(self, gateway, session):
        with pytest.raises(RequestValidationError):
            gateway.call(
                "set_role_permissions",
                {"server_id": "S", "role_id": "R", "source_permissions": "many"},
                TOKEN,
            )
        session.request.assert_not_called()

    def test_set_default_permissions_sends_allow_only(self, gateway, session):
        session.request.return_value = _response(204)
        gateway.call(
            "set_default_permissions",
            {"server_id": "S", "permissions": {"allow": 7, "deny": 8}},
            TOKEN,
        )
        method, url, kwargs = _sent(session)
        assert (method, url) == ("PUT", f"{API}/servers/S/permissions/default")
        assert kwargs["json"] == {"permissions": 7}

    def test_set_permissions_for_default_role(self, gateway, session):
        session.request.return_value = _response(200, {})
        gateway.call(
            "set_permissions",
            {"channel_id": "C", "role_id": "default", "allow": 0, "deny": VIEW_CHANNEL | SEND_MESSAGE},
            TOKEN,
        )
        method, url, kwargs = _sent(session)
        assert (method, url) == ("PUT", f"{API}/channels/C/permissions/default")
        assert kwargs["json"] == {"permissions": {"allow": 0, "deny": VIEW_CHANNEL | SEND_MESSAGE}}

    def test_set_permissions_from_source_overwrite(self, gateway, session):
        session.request.return_value = _response(200, {})
        gateway.call(
            "set_permissions",
            {"channel_id": "C", "role_id": "R", "source_allow": str(1 << 10), "source_deny": str(1 << 11)},
            TOKEN,
        )
        assert _sent(session)[2]["json"] == {
            "permissions": {"allow": VIEW_CHANNEL, "deny": SEND_MESSAGE}
        }

    def test_create_channel(self, gateway, session):
        session.request.return_value = _response(200, {"_id": "C1"})
        gateway.call(
            "create_channel",
            {"server_id": "S", "name": "chat", "channel_type": "Voice", "description": "Talk", "nsfw": False},
            TOKEN,
        )
        assert _sent(session)[2]["json"] == {
            "name": "chat",
            "type": "Voice",
            "description": "Talk",
            "nsfw": False,
        }

    def test_create_category_appends_to_list(self, gateway, session):
        session.request.side_effect = [
            _response(200, {"categories": [{"id": "OLD", "title": "Old", "channels": ["c"]}]}),
            _response(200, {}),
        ]
        result = gateway.call("create_category", {"server_id": "S", "name": "General"}, TOKEN)

        assert len(result["id"]) == 26
        method, url, kwargs = _sent(session)
        assert (method, url) == ("PATCH", f"{API}/servers/S")
        assert kwargs["json"]["categories"] == [
            {"id": "OLD", "title": "Old", "channels": ["c"]},
            {"id": result["id"], "title": "General", "channels": []},
        ]

    def test_move_channel_into_known_category(self, gateway, session):
        session.request.side_effect = [
            _response(200, {"categories": [{"id": "K", "title": "General", "channels": ["a"]}]}),
            _response(200, {}),
        ]
        gateway.call("move_channel_to_category", {"server_id": "S", "category_id": "K", "channel_id": "b"}, TOKEN)
        assert _sent(session)[2]["json"]["categories"] == [
            {"id": "K", "title": "General", "channels": ["a", "b"]}
        ]

    def test_move_channel_into_unknown_category(self, gateway, session):
        session.request.side_effect = [_response(200, {"categories": []}), _response(200, {})]
        gateway.call("move_channel_to_category", {"server_id": "S", "category_id": "K", "channel_id": "b"}, TOKEN)
        assert _sent(session)[2]["json"]["categories"] == [
            {"id": "K", "title": "Category", "channels": ["b"]}
        ]

    def test_clear_server(self, gateway, session, sleep):
        session.request.side_effect = [
            _response(200, {"channels": ["c1", "c2"], "roles": {"r1": {}}}),
            _response(204),  # DELETE c1
            _response(403, {"type": "MissingPermission"}),  # DELETE c2
            _response(204),  # DELETE r1
            _response(200, {}),  # PATCH categories
        ]
        summary = gateway.call("clear_server", {"server_id": "S"}, TOKEN)

        assert summary == {"channels_deleted": 1, "roles_deleted": 1, "categories_cleared": True}
        assert _sent(session, 3)[:2] == ("DELETE", f"{API}/servers/S/roles/r1")
        assert _sent(session)[2]["json"] == {"categories": []}
        assert sleep.call_args_list == [call(0.5)] * 3

    def test_clear_server_category_failure_raises(self, gateway, session):
        session.request.side_effect = [_response(200, {}), _response(403, {})]
        with pytest.raises(GatewayError):
            gateway.call("clear_server", {"server_id": "S"}, TOKEN)


# -------------------------------------------------------------------
# Asset uploads
# -------------------------------------------------------------------


class TestUploads:
    ICON = "https://cdn.discordapp.com/icons/1/abc.png?size=512"

    def test_icon_upload_flow(self, gateway, session):
        session.get.side_effect = None
        session.get.return_value = _response(
            200, {"features": {"autumn": {"url": "https://autumn.test/"}}, "ws": "wss://events.test"}
        )
        download = _response(200, headers={"Content-Type": "image/png"}, chunks=[b"abc", b"def"])
        session.request.side_effect = [download, _response(200, {"id": "F1"}), _response(200, {})]

        gateway.call("set_server_icon", {"server_id": "S", "icon_url": self.ICON}, TOKEN)

        method, url, kwargs = _sent(session, 0)
        assert (method, url) == ("GET", self.ICON)
        assert kwargs["allow_redirects"] is False
        method, url, kwargs = _sent(session, 1)
        assert (method, url) == ("POST", "https://autumn.test/icons")
        assert kwargs["files"]["file"][1:] == (b"abcdef", "image/png")
        assert _sent(session, 2)[2]["json"] == {"icon": "F1"}
        download.close.assert_called_once_with()

    def test_falls_back_to_default_file_server(self, gateway, session):
        session.request.side_effect = [
            _response(200, chunks=[b"x"]),
            _response(200, {"id": "F1"}),
            _response(200, {}),
        ]
        gateway.call("set_server_banner", {"server_id": "S", "banner_url": self.ICON}, TOKEN)
        assert _sent(session, 1)[1] == "https://cdn.stoatusercontent.com/banners"
        assert _sent(session, 2)[2]["json"] == {"banner": "F1"}

    def test_disallowed_host(self, gateway, session):
        with pytest.raises(RequestValidationError, match="known CDN"):
            gateway.call("set_server_icon", {"server_id": "S", "icon_url": "https://evil.example.com/a.png"}, TOKEN)
        session.request.assert_not_called()

    def test_redirect_refused(self, gateway, session):
        session.request.return_value = _response(302, headers={"Location": "https://evil.example.com"})
        with pytest.raises(GatewayError) as exc:
            gateway.call("set_server_icon", {"server_id": "S", "icon_url": self.ICON}, TOKEN)
        assert exc.value.status == 302
        assert session.request.call_count == 1
        session.request.return_value.close.assert_called_once_with()

    def test_declared_size_too_large(self, gateway, session):
        session.request.return_value = _response(200, headers={"Content-Length": str(11 * 1024 * 1024)})
        with pytest.raises(GatewayError, match="too large"):
            gateway.call("set_server_icon", {"server_id": "S", "icon_url": self.ICON}, TOKEN)
        session.request.return_value.close.assert_called_once_with()

    def test_streamed_size_too_large(self, gateway, session):
        chunk = b"x" * (1024 * 1024)
        session.request.return_value = _response(200, chunks=[chunk] * 11)
        with pytest.raises(GatewayError, match="too large"):
            gateway.call("set_server_icon", {"server_id": "S", "icon_url": self.ICON}, TOKEN)
        session.request.return_value.close.assert_called_once_with()

    def test_create_emoji(self, gateway, session):
        session.request.side_effect = [
            _response(200, chunks=[b"gif"]),
            _response(200, {"id": "E1"}),
            _response(200, {"_id": "E1", "name": "party_time"}),
        ]
        gateway.call(
            "create_emoji",
            {"server_id": "S", "name": "Party Time", "emoji_url": "https://cdn.discordapp.com/emojis/5.gif"},
            TOKEN,
        )
        assert _sent(session, 1)[1] == "https://cdn.stoatusercontent.com/emojis"
        method, url, kwargs = _sent(session, 2)
        assert (method, url) == ("PUT", f"{API}/custom/emoji/E1")
        assert kwargs["json"] == {"name": "party_time", "parent": {"type": "Server", "id": "S"}}
        assert session.request.call_count == 3

    def test_create_emoji_patches_renamed_emoji(self, gateway, session):
        session.request.side_effect = [
            _response(200, chunks=[b"gif"]),
            _response(200, {"id": "E1"}),
            _response(200, {"_id": "E1", "name": "party_time_2"}),
            _response(200, {"_id": "E1", "name": "party_time"}),
        ]
        result = gateway.call(
            "create_emoji",
            {"server_id": "S", "name": "party_time", "emoji_url": "https://cdn.discordapp.com/emojis/5.gif"},
            TOKEN,
        )
        assert _sent(session)[:2] == ("PATCH", f"{API}/custom/emoji/E1")
        assert result["name"] == "party_time"


# -------------------------------------------------------------------
# list_servers
# -------------------------------------------------------------------


class TestListServers:
    READY = {
        "type": "Ready",
        "servers": [
            {"_id": "S1", "name": "Mine", "owner": "U1", "icon": {"_id": "I1"}},
            {"_id": "S2", "name": "Theirs", "owner": "U2"},
            {"_id": "S3", "owner": "U1"},
        ],
    }

    @patch("adapters.stoat.connect")
    def test_owned_servers_from_ready(self, connect, gateway, session):
        session.request.return_value = _response(200, {"_id": "U1"})
        ws = connect.return_value.__enter__.return_value
        ws.recv.side_effect = ["not json", json.dumps({"type": "Authenticated"}), json.dumps(self.READY)]

        servers = gateway.call("list_servers", None, TOKEN)

        assert servers == [
            {"id": "S1", "name": "Mine", "icon": "I1"},
            {"id": "S3", "name": "Unknown", "icon": None},
        ]
        url = connect.call_args.args[0]
        assert url.startswith("wss://stoat.chat/events?version=1&format=json&token=")

    @patch("adapters.stoat.connect")
    def test_connection_error(self, connect, gateway, session):
        session.request.return_value = _response(200, {"_id": "U1"})
        connect.side_effect = OSError("refused")
        with pytest.raises(GatewayError, match="WebSocket error"):
            gateway.call("list_servers", None, TOKEN)

    @patch("adapters.stoat.connect")
    def test_timeout(self, connect, gateway, session):
        session.request.return_value = _response(200, {"_id": "U1"})
        connect.return_value.__enter__.return_value.recv.side_effect = TimeoutError()
        with pytest.raises(GatewayError, match="timed out"):
            gateway.call("list_servers", None, TOKEN)
