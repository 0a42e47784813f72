"""Tests for the remote sync client and its failure classification."""

import json
from unittest.mock import MagicMock

import pytest
import requests

from warranty_sync.api_client import SyncApiClient
from warranty_sync.errors import RetryableSyncError, SyncError, TerminalSyncError
from warranty_sync.queue.models import QueueItem


def _response(status, body=None, headers=None):
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.url = "https://api.test/sync"
    response.reason = "reason"
    if body is None:
        response.content = b""
        response.text = ""
        response.json.side_effect = ValueError("no body")
    else:
        raw = json.dumps(body)
        response.content = raw.encode()
        response.text = raw
        response.json.return_value = body
    return response


@pytest.fixture
def api(auth):
    client = SyncApiClient(auth, base_url="https://api.test/", timeout=5)
    client.session = MagicMock()
    return client


@pytest.fixture
def item():
    return QueueItem.create("receipt", "r-1", "create", {"merchantName": "Shop", "totalAmount": 12.5})


def test_apply_posts_mutation_with_bearer_token(api, item):
    api.session.request.return_value = _response(200, {"success": True})
    assert api.apply(item) == {"success": True}

    kwargs = api.session.request.call_args.kwargs
    assert kwargs["method"] == "POST"
    assert kwargs["url"] == "https://api.test/sync"
    assert kwargs["headers"] == {"Authorization": "Bearer token-1"}
    assert kwargs["timeout"] == 5
    assert kwargs["json"] == {
        "entityType": "receipt",
        "entityId": "r-1",
        "operation": "create",
        "data": {"merchantName": "Shop", "totalAmount": 12.5},
    }


def test_token_is_read_per_request(api, item, auth):
    api.session.request.return_value = _response(204)
    auth.sign_in("user-2", "token-2")
    assert api.apply(item) == {}
    assert api.session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer token-2"


def test_canonical_id_is_returned(api, item):
    api.session.request.return_value = _response(201, {"id": "srv-42"})
    assert api.apply(item)["id"] == "srv-42"


@pytest.mark.parametrize("exc", [requests.exceptions.ConnectionError("down"), requests.exceptions.Timeout("slow")])
def test_transport_errors_are_retryable(api, item, exc):
    api.session.request.side_effect = exc
    with pytest.raises(RetryableSyncError):
        api.apply(item)


@pytest.mark.parametrize("status", [401, 408, 425, 429, 500, 502, 503])
def test_transient_statuses_are_retryable(api, item, status):
    api.session.request.return_value = _response(status, {"error": "try later"})
    with pytest.raises(RetryableSyncError) as info:
        api.apply(item)
    assert info.value.status_code == status
    assert "try later" in str(info.value)


@pytest.mark.parametrize("status", [400, 403, 404, 409, 422])
def test_rejections_are_terminal(api, item, status):
    api.session.request.return_value = _response(status, {"error": "Invalid entity type"})
    with pytest.raises(TerminalSyncError) as info:
        api.apply(item)
    assert info.value.status_code == status
    assert isinstance(info.value, SyncError)


def test_error_without_json_body_uses_text(api, item):
    response = _response(400)
    response.text = "Missing required fields"
    api.session.request.return_value = response
    with pytest.raises(TerminalSyncError, match="Missing required fields"):
        api.apply(item)


def test_pull_returns_data_mapping(api):
    api.session.request.return_value = _response(200, {
        "success": True,
        "data": {"receipts": [{"id": "r-1"}], "settings": None},
        "meta": {"counts": {"receipts": 1}},
    })

    assert api.pull() == {"receipts": [{"id": "r-1"}], "settings": None}
    kwargs = api.session.request.call_args.kwargs
    assert kwargs["method"] == "GET"
    assert kwargs["url"] == "https://api.test/sync/pull"


def test_pull_without_data_is_empty(api):
    api.session.request.return_value = _response(200, {"success": True})
    assert api.pull() == {}


def test_pull_reported_failure_is_retryable(api):
    api.session.request.return_value = _response(200, {"success": False, "error": "db timeout"})
    with pytest.raises(RetryableSyncError, match="db timeout"):
        api.pull()
