from __future__ import annotations

import pytest

from sharebuilder_sync.errors import MissingToken
from sharebuilder_sync.portal.tokens import TokenStore


def test_merge_returns_new_store() -> None:
    empty = TokenStore()
    store = empty.merge({"__VIEWSTATE": "abc"})
    assert store is not empty
    assert "__VIEWSTATE" in store
    assert "__VIEWSTATE" not in empty


def test_snapshot_never_contains_empty_values() -> None:
    store = TokenStore().merge({"__VIEWSTATE": "abc", "__EVENTVALIDATION": "", "guid": None})
    assert store.snapshot_for_request() == {"__VIEWSTATE": "abc"}
    assert len(store) == 1


def test_empty_value_clears_previous_token() -> None:
    store = TokenStore().merge({"__VIEWSTATE": "abc", "__EVENTVALIDATION": "ev1"})
    store = store.merge({"__VIEWSTATE": "", "__EVENTVALIDATION": "ev2"})
    assert store.snapshot_for_request() == {"__EVENTVALIDATION": "ev2"}


def test_tokens_not_mentioned_are_kept() -> None:
    store = TokenStore().merge({"0123456789abcdef0123456789abcdef": "x"})
    store = store.merge({"__VIEWSTATE": "vs"})
    assert store.snapshot_for_request() == {
        "0123456789abcdef0123456789abcdef": "x",
        "__VIEWSTATE": "vs",
    }


def test_snapshot_restricted_to_names() -> None:
    store = TokenStore().merge({"pageToken": "p1", "__VIEWSTATE": "vs"})
    assert store.snapshot_for_request(["pageToken"]) == {"pageToken": "p1"}


def test_require_reports_missing_names() -> None:
    store = TokenStore().merge({"pageToken": ""})
    with pytest.raises(MissingToken) as exc:
        store.require("pageToken", step="transfer_input")
    assert exc.value.names == ("pageToken",)
    assert exc.value.step == "transfer_input"

    store.merge({"pageToken": "p1"}).require("pageToken")
