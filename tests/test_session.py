"""Tests for auth session and connectivity signals."""

import pytest

from warranty_sync.connectivity import ConnectivityMonitor
from warranty_sync.session import AuthSession


def test_sign_in_and_out_notify_once():
    session = AuthSession()
    seen = []
    session.subscribe(seen.append)

    session.sign_in("user-1", "token-1")
    session.sign_out()
    session.sign_out()

    assert seen == ["user-1", None]
    assert not session.is_authenticated


def test_sign_in_requires_both_fields():
    with pytest.raises(ValueError):
        AuthSession().sign_in("user-1", "")


def test_connectivity_emits_only_on_transitions():
    monitor = ConnectivityMonitor()
    online, visible = [], []
    monitor.subscribe_online(online.append)
    sub = monitor.subscribe_visibility(visible.append)

    monitor.set_online(True)
    monitor.set_online(False)
    monitor.set_online(True)
    monitor.set_visible(False)
    sub.unsubscribe()
    monitor.set_visible(True)

    assert online == [False, True]
    assert visible == [False]
    assert monitor.visible


def test_failing_listener_does_not_stop_others():
    monitor = ConnectivityMonitor()
    seen = []

    def explode(value):
        raise RuntimeError("boom")

    monitor.subscribe_online(explode)
    monitor.subscribe_online(seen.append)
    monitor.set_online(False)
    assert seen == [False]
