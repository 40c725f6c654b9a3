"""Unit tests for permit_client.py."""

import json
import threading
from unittest.mock import MagicMock, patch

import pytest
import requests

from permit_client import (
    ExportCancelled,
    PermitClient,
    Scope,
    current_token,
    error_message,
    extract_records,
    validate_api_key_scope,
)


def _page(size, start=0):
    return [{"key": f"item_{i}"} for i in range(start, start + size)]


def _http_error(status, body=None, reason="Error"):
    resp = requests.Response()
    resp.status_code = status
    resp.reason = reason
    resp._content = json.dumps(body).encode() if body is not None else b""
    return requests.HTTPError(f"{status} {reason}", response=resp)


def _bound_client():
    client = PermitClient("KEY")
    client.bind_scope(Scope("org", "proj", "env"))
    return client


# ===== PermitClient init =====

class TestPermitClientInit:
    def test_bearer_header(self):
        client = PermitClient("permit_key_abc")
        assert client.session.headers["Authorization"] == "Bearer permit_key_abc"

    def test_trailing_slash_stripped(self):
        client = PermitClient("KEY", api_url="https://api.permit.io/")
        assert client.base_url == "https://api.permit.io"

    def test_insecure_disables_verify(self):
        assert PermitClient("KEY", insecure=True).session.verify is False
        assert PermitClient("KEY").session.verify is True


# ===== get =====

class TestPermitClientGet:
    def test_returns_json(self):
        client = PermitClient("KEY")
        resp = MagicMock(content=b'{"a": 1}')
        resp.json.return_value = {"a": 1}
        with patch.object(client.session, "get", return_value=resp) as mock_get:
            assert client.get("/v2/x", {"page": 1}) == {"a": 1}
        mock_get.assert_called_once_with("https://api.permit.io/v2/x", params={"page": 1},
                                         timeout=client.timeout)
        resp.raise_for_status.assert_called_once()

    def test_empty_body(self):
        client = PermitClient("KEY")
        with patch.object(client.session, "get", return_value=MagicMock(content=b"")):
            assert client.get("/v2/x") is None

    def test_cancelled_client_sends_nothing(self):
        client = PermitClient("KEY")
        client.cancel()
        with patch.object(client.session, "get") as mock_get:
            with pytest.raises(ExportCancelled):
                client.get("/v2/x")
        mock_get.assert_not_called()
        assert client.cancelled

    def test_shared_cancel_event(self):
        event = threading.Event()
        client = PermitClient("KEY", cancel_event=event)
        assert not client.cancelled
        event.set()
        assert client.cancelled


# ===== pagination =====

class TestPaginate:
    def test_stops_after_short_page(self):
        client = PermitClient("KEY")
        pages = [_page(100), _page(100, 100), _page(37, 200)]
        with patch.object(client, "get", side_effect=pages) as mock_get:
            records = client.paginate("/v2/items")
        assert len(records) == 237
        assert mock_get.call_count == 3
        assert [c.args[1]["page"] for c in mock_get.call_args_list] == [1, 2, 3]
        assert all(c.args[1]["per_page"] == 100 for c in mock_get.call_args_list)

    def test_empty_first_page(self):
        client = PermitClient("KEY")
        with patch.object(client, "get", return_value=[]) as mock_get:
            assert client.paginate("/v2/items") == []
        assert mock_get.call_count == 1

    def test_full_then_empty_page(self):
        client = PermitClient("KEY")
        with patch.object(client, "get", side_effect=[_page(2), []]) as mock_get:
            assert len(client.paginate("/v2/items", per_page=2)) == 2
        assert mock_get.call_count == 2

    def test_wrapped_pages(self):
        client = PermitClient("KEY")
        with patch.object(client, "get", return_value={"data": _page(3), "total_count": 3}):
            assert len(client.paginate("/v2/items")) == 3

    def test_keeps_filters(self):
        client = PermitClient("KEY")
        with patch.object(client, "get", return_value=[]) as mock_get:
            client.paginate("/v2/items", {"user_set": ""})
        assert mock_get.call_args.args[1] == {"user_set": "", "page": 1, "per_page": 100}


class TestExtractRecords:
    def test_bare_list(self):
        assert extract_records([{"a": 1}, "junk"]) == [{"a": 1}]

    def test_wrapped(self):
        assert extract_records({"data": [{"a": 1}]}) == [{"a": 1}]

    def test_unexpected(self):
        assert extract_records(None) == []
        assert extract_records({"message": "nope"}) == []


# ===== entity endpoints =====

class TestEntityPaths:
    def test_resources_path(self):
        client = _bound_client()
        with patch.object(client, "paginate", return_value=[]) as mock_paginate:
            client.list_resources()
        mock_paginate.assert_called_once_with("/v2/schema/proj/env/resources")

    def test_relations_path_quotes_key(self):
        client = _bound_client()
        with patch.object(client, "paginate", return_value=[]) as mock_paginate:
            client.list_resource_relations("my doc")
        mock_paginate.assert_called_once_with("/v2/schema/proj/env/resources/my%20doc/relations")

    def test_condition_set_rules_send_all_filters(self):
        client = _bound_client()
        with patch.object(client, "paginate", return_value=[]) as mock_paginate:
            client.list_condition_set_rules()
        mock_paginate.assert_called_once_with(
            "/v2/facts/proj/env/set_rules",
            {"user_set": "", "permission": "", "resource_set": ""},
        )

    def test_get_resource_non_dict(self):
        client = _bound_client()
        with patch.object(client, "get", return_value=[]):
            assert client.get_resource("__user") is None


# ===== scope validation =====

class TestValidateAPIKeyScope:
    def test_environment_key(self):
        scope = Scope("org", "proj", "env")
        with patch.object(PermitClient, "get_scope", return_value=scope):
            result = validate_api_key_scope("KEY", "environment")
        assert result.valid
        assert result.error is None
        assert result.scope == scope

    def test_project_key_rejected_for_environment(self):
        with patch.object(PermitClient, "get_scope", return_value=Scope("org", "proj", "")):
            result = validate_api_key_scope("KEY", "environment")
        assert not result.valid
        assert "environment" in result.error

    def test_project_key_accepted_for_project(self):
        with patch.object(PermitClient, "get_scope", return_value=Scope("org", "proj", "")):
            assert validate_api_key_scope("KEY", "project").valid

    def test_http_error_message(self):
        err = _http_error(401, {"message": "Invalid API key"}, reason="Unauthorized")
        with patch.object(PermitClient, "get_scope", side_effect=err):
            result = validate_api_key_scope("KEY", "environment")
        assert not result.valid
        assert result.error == "401: Invalid API key"

    def test_connection_error(self):
        with patch.object(PermitClient, "get_scope",
                          side_effect=requests.ConnectionError("connection refused")):
            result = validate_api_key_scope("KEY", "environment")
        assert not result.valid
        assert "connection refused" in result.error


class TestErrorMessage:
    def test_http_error_without_body(self):
        assert error_message(_http_error(503, reason="Service Unavailable")) == "503: Service Unavailable"

    def test_detail_field(self):
        assert error_message(_http_error(422, {"detail": "bad filter"})) == "422: bad filter"

    def test_plain_exception(self):
        assert error_message(ValueError("boom")) == "boom"
        assert error_message(ValueError()) == "ValueError"


# ===== current_token =====

class TestCurrentToken:
    def test_env_var(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PERMIT_API_KEY", "env_key")
        assert current_token(str(tmp_path / "session.json")) == "env_key"

    def test_session_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv("PERMIT_API_KEY", raising=False)
        path = tmp_path / "session.json"
        path.write_text(json.dumps({"token": "session_key"}))
        assert current_token(str(path)) == "session_key"

    def test_missing_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv("PERMIT_API_KEY", raising=False)
        assert current_token(str(tmp_path / "session.json")) is None

    def test_corrupt_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv("PERMIT_API_KEY", raising=False)
        path = tmp_path / "session.json"
        path.write_text("{not json")
        assert current_token(str(path)) is None
