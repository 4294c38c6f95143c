"""Tests for checkout sessions"""

import threading

import pytest

from licensing_engine.checkout import CheckoutOptions, CheckoutResult, CheckoutState
from licensing_engine.errors import ErrorCode, InvalidStateError, NetworkFailureError, ServerRejectedError
from licensing_engine.presentation import TriggeredAction, UIKind

PROCESSED_ORDER = {"order_id": "ord-1", "state": "processed", "total": "29.00"}


def closed_data(checkout_id="chk-1", email="buyer@example.com", order=None):
    data = {"checkout": {"checkout_id": checkout_id, "email": email}}
    if order is not None:
        data["order"] = order
    return data


def test_closing_without_purchase_abandons(engine, renderer, gateway, completions):
    product = engine.product("P1")

    engine.show_checkout(product, completion=completions)
    handle = renderer.checkouts[0]
    handle.opened("chk-1")
    handle.closed()

    assert completions.calls == [(CheckoutState.ABANDONED, None)]
    assert (UIKind.CHECKOUT, TriggeredAction.CANCEL) in gateway.dismissed
    assert engine.active_checkouts() == []


def test_processed_order_reports_purchase(engine, renderer, gateway, vendor, completions):
    product = engine.product("P1")

    session = engine.show_checkout(product, completion=completions)
    handle = renderer.checkouts[0]
    handle.opened("chk-1")
    handle.closed(closed_data(order=PROCESSED_ORDER))

    state, payload = completions.last
    assert state == CheckoutState.PURCHASED
    assert payload == {
        "checkout": {"checkout_id": "chk-1", "email": "buyer@example.com"},
        "order": PROCESSED_ORDER,
    }
    assert session.state == CheckoutState.PURCHASED
    assert (UIKind.CHECKOUT, TriggeredAction.FINISHED) in gateway.dismissed
    assert vendor.called('order_status') == []


def test_flagged_order_has_no_order_payload(engine, renderer, completions):
    product = engine.product("P1")

    engine.show_checkout(product, completion=completions)
    handle = renderer.checkouts[0]
    handle.opened("chk-1")
    handle.closed(closed_data(order={"state": "processed", "flagged": True}))

    state, payload = completions.last
    assert state == CheckoutState.FLAGGED
    assert "order" not in payload
    assert payload["checkout"]["checkout_id"] == "chk-1"


def test_pending_order_is_polled_until_processed(engine, renderer, vendor, completions):
    product = engine.product("P1")
    vendor.order_results = [{"state": "processing"}, NetworkFailureError("offline"), PROCESSED_ORDER]

    engine.show_checkout(product, completion=completions)
    handle = renderer.checkouts[0]
    handle.opened("chk-1")
    handle.closed(closed_data())

    assert completions.calls == []
    assert completions.wait(engine.dispatcher, timeout=3)
    state, payload = completions.last
    assert state == CheckoutState.PURCHASED
    assert payload["order"]["order_id"] == "ord-1"
    assert vendor.called('order_status') == [('order_status', "chk-1")] * 3


def test_order_confirmation_signal_while_open(engine, renderer, completions):
    product = engine.product("P1")

    engine.show_checkout(product, completion=completions)
    handle = renderer.checkouts[0]
    handle.opened("chk-7")
    handle.order_confirmed(PROCESSED_ORDER)

    state, payload = completions.last
    assert state == CheckoutState.PURCHASED
    assert payload["checkout"]["checkout_id"] == "chk-7"


def test_checkout_that_never_loads_fails(engine, renderer, completions):
    product = engine.product("P1")

    engine.show_checkout(product, completion=completions)

    assert completions.wait(engine.dispatcher, timeout=3)
    assert completions.last == (CheckoutState.FAILED, None)
    assert UIKind.CHECKOUT in renderer.closed


def test_unconfirmed_order_times_out(engine, renderer, vendor, completions):
    product = engine.product("P1")

    engine.show_checkout(product, completion=completions)
    handle = renderer.checkouts[0]
    handle.opened("chk-1")
    handle.closed(closed_data())

    assert completions.wait(engine.dispatcher, timeout=3)
    state, payload = completions.last
    assert state == CheckoutState.FAILED
    assert "order" not in payload
    assert vendor.called('order_status')


def test_rejected_order_lookup_without_completion_reports_error(engine, renderer, vendor, gateway):
    product = engine.product("P1")
    vendor.order_results = [ServerRejectedError("Unknown checkout")]

    session = engine.show_checkout(product)
    handle = renderer.checkouts[0]
    handle.opened("chk-1")
    handle.closed(closed_data())

    assert engine.dispatcher.run_until(lambda: session.state.terminal)
    assert session.state == CheckoutState.FAILED
    assert gateway.errors[0].code == ErrorCode.SERVER_REJECTED


def test_load_failure_fails(engine, renderer, completions):
    product = engine.product("P1")

    engine.show_checkout(product, completion=completions)
    renderer.checkouts[0].load_failed("blocked")

    assert completions.last == (CheckoutState.FAILED, None)


def test_suppressed_checkout_abandons(engine, gateway, renderer, vendor, completions):
    gateway.suppress.add(UIKind.CHECKOUT)
    product = engine.product("P1")

    engine.show_checkout(product, completion=completions)

    assert completions.calls == [(CheckoutState.ABANDONED, None)]
    assert renderer.checkouts == []
    assert vendor.called('open_checkout') == []
    assert gateway.dismissed == []


def test_signals_from_other_threads_complete_on_ui_thread(engine, renderer, completions):
    product = engine.product("P1")
    engine.show_checkout(product, completion=completions)
    handle = renderer.checkouts[0]

    def webview():
        handle.opened("chk-1")
        handle.closed(closed_data(order=PROCESSED_ORDER))

    worker = threading.Thread(target=webview)
    worker.start()
    worker.join()

    assert completions.calls == []
    engine.dispatcher.run_pending()
    assert completions.last[0] == CheckoutState.PURCHASED
    assert completions.threads == [threading.get_ident()]


def test_signals_after_finish_are_ignored(engine, renderer, completions):
    product = engine.product("P1")
    engine.show_checkout(product, completion=completions)
    handle = renderer.checkouts[0]

    handle.closed()
    handle.closed(closed_data(order=PROCESSED_ORDER))

    assert completions.calls == [(CheckoutState.ABANDONED, None)]


def test_session_opens_once(engine, renderer):
    session = engine.show_checkout(engine.product("P1"))

    with pytest.raises(InvalidStateError):
        session.open()


def test_checkout_result_invariants():
    with pytest.raises(ValueError):
        CheckoutResult(CheckoutState.ACTIVE)
    with pytest.raises(ValueError):
        CheckoutResult(CheckoutState.PURCHASED)
    with pytest.raises(ValueError):
        CheckoutResult(CheckoutState.ABANDONED, order=PROCESSED_ORDER)
    with pytest.raises(ValueError):
        CheckoutResult(CheckoutState.PURCHASED, order={"state": "processing"})

    assert CheckoutResult(CheckoutState.ABANDONED).to_payload() is None


def test_checkout_options_params():
    options = CheckoutOptions(
        email="buyer@example.com",
        coupon="SPRING",
        quantity=2,
        allow_quantity=False,
        message="Thanks!",
        passthrough={"user": 42},
        custom_params={"referrer": "app"},
    )

    assert options.to_params() == {
        "guest_email": "buyer@example.com",
        "coupon_code": "SPRING",
        "quantity": "2",
        "quantity_variable": "0",
        "custom_message": "Thanks!",
        "passthrough": '{"user": 42}',
        "referrer": "app",
    }
    assert CheckoutOptions().to_params() == {}


def test_unexpected_error_opening_checkout_fails_session(engine, vendor, completions):
    def broken_open(product, options=None):
        raise TypeError("bad checkout options")

    vendor.open_checkout_session = broken_open

    session = engine.show_checkout(engine.product("P1"), completion=completions)

    assert completions.calls == [(CheckoutState.FAILED, None)]
    assert session.state == CheckoutState.FAILED
    assert engine.active_checkouts() == []


def test_load_timeout_without_completion_reports_error(engine, gateway):
    session = engine.show_checkout(engine.product("P1"))

    assert engine.dispatcher.run_until(lambda: session.state.terminal, timeout=3)
    assert session.state == CheckoutState.FAILED
    assert [e.code for e in gateway.errors] == [ErrorCode.CHECKOUT_TIMEOUT]


def test_order_timeout_without_completion_reports_error(engine, renderer, gateway):
    session = engine.show_checkout(engine.product("P1"))
    handle = renderer.checkouts[0]
    handle.opened("chk-1")
    handle.closed(closed_data())

    assert engine.dispatcher.run_until(lambda: session.state.terminal, timeout=3)
    assert session.state == CheckoutState.FAILED
    assert [e.code for e in gateway.errors] == [ErrorCode.ORDER_TIMEOUT]


def test_shutdown_abandons_open_checkout(engine, renderer, gateway, completions):
    engine.show_checkout(engine.product("P1"), completion=completions)
    renderer.checkouts[0].opened("chk-1")

    engine.shutdown()

    assert completions.calls == [(CheckoutState.ABANDONED, None)]
    assert UIKind.CHECKOUT in renderer.closed
    assert (UIKind.CHECKOUT, TriggeredAction.CANCEL) in gateway.dismissed
    assert engine.active_checkouts() == []
