import random
import threading

import pytest

from statemark.controller import BookmarkController, Phase
from statemark.errors import (
    BookmarkBusyError,
    BookmarkError,
    EncodingError,
    NotFoundError,
    StorageError,
)
from statemark.locator import InlineLocator, ReferenceLocator
from statemark.runtime import ReactiveState
from statemark.store import BookmarkStore, MemoryBookmarkStore
from statemark.util import CONFIG


class FailingStore(BookmarkStore):
    def store(self, token):
        raise StorageError("disk full")

    def record(self, id):
        raise NotFoundError(id)


def make(initial=None, **kwargs):
    state = ReactiveState(initial or {"omega": 1.0, "delta": 1.5708})
    return state, BookmarkController(state, **kwargs)


def test_inline_bookmark_round_trip():
    state, controller = make(store="url", base_url="http://localhost:8000/")
    locator = controller.bookmark()
    assert isinstance(locator, InlineLocator)
    assert locator.url().startswith("http://localhost:8000/?_inputs_&")

    fresh, restorer = make({"omega": 0.0, "delta": 0.0}, store="url")
    restored = restorer.restore(locator.url())
    assert restored.input == {"omega": 1.0, "delta": 1.5708}
    assert fresh.values() == {"omega": 1.0, "delta": 1.5708}
    assert restorer.phase is Phase.IDLE


def test_server_bookmark_round_trip():
    store = MemoryBookmarkStore()
    state, controller = make(store=store)
    locator = controller.bookmark()
    assert isinstance(locator, ReferenceLocator)
    assert "_state_id_=" in locator.url()
    assert "omega" not in locator.url()

    fresh, restorer = make({"omega": 0.0, "delta": 0.0}, store=store)
    restorer.restore(locator.url())
    assert fresh.omega == 1.0


def test_excluded_inputs_are_not_captured():
    state, controller = make({"secret1": "x", "omega": 1.0}, exclude=["secret1"])
    assert controller.capture() == {"omega": 1.0}
    locator = controller.bookmark()
    assert "secret1" not in locator.token


def test_excluded_inputs_are_not_restored():
    _, writer = make({"secret1": "x", "omega": 1.0})
    locator = writer.bookmark()
    fresh, restorer = make({"secret1": "default", "omega": 0.0})
    restorer.exclude("secret1")
    restorer.restore(locator)
    assert fresh.values() == {"secret1": "default", "omega": 1.0}


def test_listeners_fire_in_order_after_success():
    state, controller = make()
    calls = []
    controller.on_bookmark(lambda s: calls.append("bookmark"))
    controller.on_bookmarked(lambda locator: calls.append("bookmarked"))
    controller.on_restore(lambda s: calls.append("restore"))
    controller.on_restored(lambda s: calls.append("restored"))
    locator = controller.bookmark()
    controller.restore(locator)
    assert calls == ["bookmark", "bookmarked", "restore", "restored"]


def test_values_carry_a_seed_for_reproducible_replay():
    state, controller = make({"n": 3})

    @controller.on_bookmark
    def save_seed(bookmark_state):
        bookmark_state.values["seed"] = 1234

    locator = controller.bookmark()

    fresh, restorer = make({"n": 0})
    draws = []

    @restorer.on_restore
    def reseed(restore_state):
        rng = random.Random(restore_state.values["seed"])
        draws.append([rng.random() for _ in range(restore_state.input["n"])])

    restored = restorer.restore(locator.url())
    assert restored.values == {"seed": 1234}
    expected = random.Random(1234)
    assert draws == [[expected.random() for _ in range(3)]]


def test_failed_store_publishes_nothing():
    state, controller = make(store=FailingStore())
    published = []
    controller.on_bookmarked(published.append)
    with pytest.raises(StorageError):
        controller.bookmark()
    assert published == []
    assert controller.phase is Phase.IDLE


def test_unencodable_input_publishes_nothing():
    state, controller = make({"callback": lambda: None})
    published = []
    controller.on_bookmarked(published.append)
    with pytest.raises(EncodingError):
        controller.bookmark()
    assert published == []
    assert controller.phase is Phase.IDLE


def test_missing_record_leaves_inputs_untouched():
    state, controller = make({"omega": 0.0}, store=MemoryBookmarkStore())
    restored = []
    controller.on_restored(restored.append)
    with pytest.raises(NotFoundError):
        controller.restore("?_state_id_=0123456789abcdef")
    assert state.values() == {"omega": 0.0}
    assert restored == []
    assert controller.phase is Phase.IDLE


def test_malformed_token_leaves_inputs_untouched():
    state, controller = make({"omega": 0.0, "delta": 0.0})
    with pytest.raises(EncodingError):
        controller.restore("?_inputs_&omega=1.0&delta=oops")
    assert state.values() == {"omega": 0.0, "delta": 0.0}


def test_reference_without_store():
    state, controller = make(store="url")
    with pytest.raises(NotFoundError):
        controller.restore("?_state_id_=0123456789abcdef")


def test_url_without_bookmark():
    state, controller = make()
    assert controller.restore("http://localhost:8000/?tab=1") is None
    assert controller.restore(None) is None


def test_registered_tab_container_is_restored():
    state, controller = make({"n": 1})
    state.register_container("tabs", choices=["tabA", "tabB"], selected="tabA")
    locator = controller.bookmark()
    assert controller.capture()["tabs"] == "tabA"

    fresh, restorer = make({"n": 0})
    fresh.register_container("tabs", choices=["tabA", "tabB"], selected="tabB")
    restorer.restore(locator)
    assert fresh.selected("tabs") == "tabA"


def test_auto_bookmark_once_per_batch():
    state, controller = make()
    published = []
    controller.on_bookmarked(published.append)
    controller.auto_bookmark()
    with state.batch():
        state.omega = 2.0
        state.delta = 3.0
        state.extra = "x"
    assert len(published) == 1
    assert "extra=" in published[0].token

    state.omega = 4.0
    assert len(published) == 2

    controller.auto_bookmark(False)
    state.omega = 5.0
    assert len(published) == 2


def test_auto_bookmark_ignores_restores():
    state, controller = make()
    locator = controller.bookmark()
    published = []
    controller.on_bookmarked(published.append)
    controller.auto_bookmark()
    controller.restore(locator)
    assert published == []


def test_auto_bookmark_errors():
    state, controller = make(store=FailingStore())
    controller.auto_bookmark()
    with pytest.raises(StorageError):
        state.omega = 2.0

    errors = []
    controller.on_error(errors.append)
    state.omega = 3.0
    assert len(errors) == 1
    assert isinstance(errors[0], StorageError)


def test_concurrent_request_is_rejected():
    state, controller = make()
    rejected = []

    @controller.on_bookmark
    def reenter(bookmark_state):
        with pytest.raises(BookmarkBusyError):
            controller.bookmark()
        with pytest.raises(BookmarkBusyError):
            controller.restore("?_inputs_&omega=3")
        rejected.append(controller.phase)

    assert controller.bookmark() is not None
    assert rejected == [Phase.CAPTURING]


def test_close_mid_store_discards_result():
    class ClosingStore(MemoryBookmarkStore):
        def store(self, token):
            id = super().store(token)
            controller.close()
            return id

    state = ReactiveState({"n": 1})
    controller = BookmarkController(state, store=ClosingStore())
    published = []
    controller.on_bookmarked(published.append)
    assert controller.bookmark() is None
    assert published == []
    assert controller.closed
    with pytest.raises(BookmarkError):
        controller.bookmark()


def test_disabled_bookmarking():
    state, controller = make(store="disable")
    with pytest.raises(BookmarkError):
        controller.bookmark()
    assert controller.restore("?_inputs_&omega=3") is None
    assert state.omega == 1.0


def test_long_inline_url_warns(monkeypatch):
    monkeypatch.setitem(CONFIG, "max_url_length", 40)
    state, controller = make({"text": "x" * 100})
    with pytest.warns(UserWarning):
        controller.bookmark()


def test_excluded_live_handle_is_never_read():
    state, controller = make({"omega": 1.0, "conn": threading.Lock()}, exclude=["conn"])
    locator = controller.bookmark()
    assert "conn" not in locator.token
    assert controller.capture() == {"omega": 1.0}


def test_live_handle_raises_encoding_error():
    state, controller = make({"omega": 1.0, "conn": threading.Lock()})
    with pytest.raises(EncodingError):
        controller.bookmark()
    assert controller.phase is Phase.IDLE


def test_auto_bookmark_reports_live_handle_to_error_listeners():
    state, controller = make({"omega": 1.0, "conn": threading.Lock()})
    errors = []
    controller.on_error(errors.append)
    controller.auto_bookmark()
    state.omega = 2.0
    assert len(errors) == 1
    assert isinstance(errors[0], EncodingError)


def test_failing_restore_listener_rolls_back_inputs():
    _, writer = make({"omega": 1.0, "delta": 1.5708})
    locator = writer.bookmark()

    fresh, restorer = make({"omega": 0.0, "delta": 0.0})

    def reject(state, event):
        raise RuntimeError("listener failed")

    fresh.on_change({"delta": reject})
    with pytest.raises(RuntimeError):
        restorer.restore(locator)
    assert fresh.values() == {"omega": 0.0, "delta": 0.0}
    assert restorer.phase is Phase.IDLE
