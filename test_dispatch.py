"""Tests for the UI dispatcher and background runner"""

import threading

import pytest

from licensing_engine.dispatch import BackgroundRunner, OnceCallback, UIDispatcher


def test_call_runs_inline_on_designated_thread(dispatcher):
    ran = []

    assert dispatcher.call(ran.append, 1) is True
    assert ran == [1]
    assert dispatcher.pending() == 0


def test_call_from_other_thread_is_queued(dispatcher):
    ran = []
    results = []

    worker = threading.Thread(target=lambda: results.append(dispatcher.call(ran.append, 1)))
    worker.start()
    worker.join()

    assert results == [False]
    assert ran == []
    assert dispatcher.run_pending() == 1
    assert ran == [1]


def test_post_always_queues(dispatcher):
    ran = []

    dispatcher.post(ran.append, 1)

    assert ran == []
    dispatcher.run_pending()
    assert ran == [1]


def test_run_pending_requires_designated_thread(dispatcher):
    errors = []

    def drain():
        try:
            dispatcher.run_pending()
        except RuntimeError as e:
            errors.append(e)

    worker = threading.Thread(target=drain)
    worker.start()
    worker.join()

    assert len(errors) == 1


def test_failing_task_does_not_stop_the_queue(dispatcher):
    ran = []

    dispatcher.post(lambda: 1 / 0)
    dispatcher.post(ran.append, 2)

    assert dispatcher.run_pending() == 2
    assert ran == [2]


def test_background_result_is_delivered_on_ui_thread(dispatcher):
    runner = BackgroundRunner(dispatcher)
    delivered = []
    try:
        runner.submit(lambda x: x * 2, lambda future: delivered.append((future.result(), threading.get_ident())), 21)

        assert dispatcher.run_until(lambda: delivered)
        assert delivered == [(42, threading.get_ident())]
    finally:
        runner.shutdown()


def test_run_until_times_out(dispatcher):
    assert dispatcher.run_until(lambda: False, timeout=0.1) is False


def test_once_callback_fires_once(logger):
    calls = []
    callback = OnceCallback(logger, calls.append, "test")

    assert callback("first") is True
    assert callback("second") is False
    assert calls == ["first"]
    assert callback.fired


@pytest.mark.parametrize("callback,present", [(None, False), (print, True)])
def test_once_callback_presence(logger, callback, present):
    assert OnceCallback(logger, callback, "test").present is present


def test_dispatcher_bound_to_given_thread(logger):
    other = threading.Thread(target=lambda: None)
    other.start()
    other.join()

    dispatcher = UIDispatcher(logger, thread=other)

    assert not dispatcher.is_designated_thread()
