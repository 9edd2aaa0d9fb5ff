"""Tests for change polling."""

from __future__ import annotations

import threading
import time

from helpers import FlaskSession, make_document
from timetrack.models.document import TimeTrackerData
from timetrack.store.document_store import DocumentStore
from timetrack.sync.client import SyncClient


def _client(app) -> SyncClient:
    client = SyncClient("http://test", session=FlaskSession(app), sleep=lambda _: None)
    assert client.login("admin", "secret")
    return client


class TestPollOnce:
    def test_reloads_and_notifies_on_remote_change(self, app, store: DocumentStore):
        client = _client(app)
        client.load_data()
        received: list[TimeTrackerData] = []
        client.set_on_data_change(received.append)

        store.save("admin", make_document("remote"), "other", expected_version=0)

        assert client.poller.poll_once() is True
        assert client.current_version == 1
        assert [s.id for s in received[0].sessions] == ["remote"]

        # Nothing new the second time round
        assert client.poller.poll_once() is False
        assert len(received) == 1

    def test_no_change_no_reload(self, app):
        client = _client(app)
        client.load_data()
        session: FlaskSession = client.session

        assert client.poller.poll_once() is False
        assert session.calls[-1] == ("HEAD", "/api/data")

    def test_callback_errors_are_contained(self, app, store: DocumentStore):
        client = _client(app)
        client.load_data()

        def boom(_data):
            raise RuntimeError("ui exploded")

        client.set_on_data_change(boom)
        store.save("admin", make_document("remote"), "other")

        assert client.poller.poll_once() is True
        assert client.current_version == 1


class TestPollingLoop:
    def test_start_is_idempotent_and_stop_is_safe(self, app):
        client = _client(app)

        client.start_polling()
        first_timer = client.poller._timer
        client.start_polling()
        assert client.is_polling
        assert client.poller._timer is first_timer

        client.stop_polling()
        client.stop_polling()
        assert not client.is_polling

    def test_background_loop_delivers_change(self, app, store: DocumentStore):
        client = _client(app)
        client.load_data()
        changed = threading.Event()
        client.set_on_data_change(lambda _data: changed.set())
        client.set_poll_interval(0.05)

        client.start_polling()
        try:
            store.save("admin", make_document("remote"), "other")
            assert changed.wait(timeout=5.0)
        finally:
            client.stop_polling()

    def test_set_interval_restarts_running_poller(self, app):
        client = _client(app)
        client.start_polling()
        try:
            client.set_poll_interval(30)
            assert client.is_polling
            assert client.poller.interval == 30
        finally:
            client.stop_polling()

    def test_superseded_timer_does_not_reschedule(self, app):
        client = _client(app)
        client.set_poll_interval(60)
        client.start_polling()
        try:
            owned = client.poller._timer
            # A tick from a timer this poller no longer owns ends the chain.
            stray = threading.Thread(target=client.poller._run)
            stray.start()
            stray.join()
            assert client.poller._timer is owned
        finally:
            client.stop_polling()

    def test_interval_change_from_callback_keeps_one_loop(self, app, store: DocumentStore):
        client = _client(app)
        client.load_data()
        client.set_poll_interval(0.1)
        changed = threading.Event()
        probes: list[float] = []
        check = client.check_for_updates

        def counting_check() -> bool:
            probes.append(time.monotonic())
            return check()

        def on_change(_data) -> None:
            if not changed.is_set():
                changed.set()
                client.set_poll_interval(0.1)

        client.check_for_updates = counting_check
        client.set_on_data_change(on_change)
        client.start_polling()
        try:
            store.save("admin", make_document("remote"), "other")
            assert changed.wait(timeout=5.0)
            probes.clear()
            time.sleep(1.0)
            # One loop at 0.1s gives at most ~10 probes a second
            assert len(probes) <= 13
        finally:
            client.stop_polling()
        time.sleep(0.2)
        settled = len(probes)
        time.sleep(0.3)
        assert len(probes) == settled
