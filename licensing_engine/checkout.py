"""
Checkout Session Controller
Drives one purchase attempt from opening the hosted checkout to its outcome
"""

import json
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, Callable

from .errors import ErrorCode, InvalidStateError, LicensingError, NetworkFailureError, ServerRejectedError
from .presentation import TriggeredAction, UIKind


ORDER_STATE_PROCESSED = "processed"
FLAGGED_ORDER_STATES = ("flagged", "manual_review", "review")


class CheckoutState(Enum):
    NOT_STARTED = "not_started"
    OPENING = "opening"
    ACTIVE = "active"
    PURCHASED = "purchased"
    ABANDONED = "abandoned"
    FAILED = "failed"
    FLAGGED = "flagged"

    @property
    def terminal(self) -> bool:
        return self in (CheckoutState.PURCHASED, CheckoutState.ABANDONED,
                        CheckoutState.FAILED, CheckoutState.FLAGGED)


@dataclass
class CheckoutOptions:
    """Optional settings passed to the hosted checkout"""
    email: Optional[str] = None
    coupon: Optional[str] = None
    country: Optional[str] = None
    postcode: Optional[str] = None
    quantity: Optional[int] = None
    allow_quantity: Optional[bool] = None
    title: Optional[str] = None
    message: Optional[str] = None
    passthrough: Any = None
    locale: Optional[str] = None
    custom_params: Dict[str, str] = field(default_factory=dict)

    def to_params(self) -> Dict[str, str]:
        params = {}
        if self.email:
            params['guest_email'] = self.email
        if self.coupon:
            params['coupon_code'] = self.coupon
        if self.country:
            params['guest_country'] = self.country
        if self.postcode:
            params['guest_postcode'] = self.postcode
        if self.quantity is not None:
            params['quantity'] = str(self.quantity)
        if self.allow_quantity is not None:
            params['quantity_variable'] = '1' if self.allow_quantity else '0'
        if self.title:
            params['title'] = self.title
        if self.message:
            params['custom_message'] = self.message
        if self.passthrough is not None:
            if isinstance(self.passthrough, str):
                params['passthrough'] = self.passthrough
            else:
                params['passthrough'] = json.dumps(self.passthrough)
        if self.locale:
            params['locale'] = self.locale
        params.update(self.custom_params)
        return params


class CheckoutSignal(Enum):
    OPENED = "opened"
    CLOSED = "closed"
    ORDER_CONFIRMED = "order_confirmed"
    LOAD_FAILED = "load_failed"


class CheckoutSessionHandle:
    """
    Handle to a hosted checkout. The renderer loads ``checkout_url`` and
    reports lifecycle signals through the methods below, from any thread.
    """

    def __init__(self, product_id: str, checkout_url: str, options: Optional[CheckoutOptions] = None):
        self.product_id = product_id
        self.checkout_url = checkout_url
        self.options = options or CheckoutOptions()
        self._listener = None
        self._lock = threading.Lock()

    def bind(self, listener) -> None:
        with self._lock:
            self._listener = listener

    def _emit(self, signal: CheckoutSignal, payload=None) -> None:
        with self._lock:
            listener = self._listener
        if listener is not None:
            listener.handle_signal(signal, payload)

    def opened(self, checkout_id: str) -> None:
        self._emit(CheckoutSignal.OPENED, checkout_id)

    def closed(self, checkout_data: Optional[Dict[str, Any]] = None) -> None:
        self._emit(CheckoutSignal.CLOSED, checkout_data)

    def order_confirmed(self, order: Dict[str, Any]) -> None:
        self._emit(CheckoutSignal.ORDER_CONFIRMED, order)

    def load_failed(self, message: str = "Checkout failed to load") -> None:
        self._emit(CheckoutSignal.LOAD_FAILED, message)


@dataclass(frozen=True)
class CheckoutResult:
    """Terminal outcome of a checkout; ``order`` only accompanies a purchase"""
    state: CheckoutState
    checkout_id: Optional[str] = None
    buyer_email: Optional[str] = None
    order: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.state.terminal:
            raise ValueError(f"Checkout result requires a terminal state, got {self.state.value}")
        if self.order is not None:
            if self.state != CheckoutState.PURCHASED:
                raise ValueError("Order data is only reported for purchased checkouts")
            if order_state(self.order) != ORDER_STATE_PROCESSED:
                raise ValueError("Purchased order must be processed")
        elif self.state == CheckoutState.PURCHASED:
            raise ValueError("Purchased checkout requires order data")

    def to_payload(self) -> Optional[Dict[str, Any]]:
        """Completion data: optional "checkout" and "order" keys"""
        payload = {}
        if self.checkout_id:
            payload['checkout'] = {'checkout_id': self.checkout_id, 'email': self.buyer_email}
        if self.order is not None:
            payload['order'] = dict(self.order)
        return payload or None


def order_state(order: Dict[str, Any]) -> str:
    return str(order.get('state') or order.get('status') or '').lower()


def is_flagged(order: Dict[str, Any]) -> bool:
    return bool(order.get('flagged')) or order_state(order) in FLAGGED_ORDER_STATES


class CheckoutSession:
    """
    One purchase attempt.

    NOT_STARTED -> OPENING -> ACTIVE -> PURCHASED | ABANDONED | FAILED | FLAGGED

    The purchase itself happens inside the hosted checkout; this class only
    observes its signals, polls order processing when the checkout closes
    before the order is confirmed, and reports exactly one outcome.
    """

    def __init__(self, product, options: Optional[CheckoutOptions], vendor_api, gateway, renderer,
                 dispatcher, runner, settings, app_logger,
                 completion: Optional[Callable] = None,
                 on_finished: Optional[Callable] = None):
        self.product = product
        self.options = options or CheckoutOptions()
        self.vendor_api = vendor_api
        self.gateway = gateway
        self.renderer = renderer
        self.dispatcher = dispatcher
        self.runner = runner
        self.settings = settings
        self.logger = app_logger

        self.session_id: Optional[str] = None
        self.state = CheckoutState.NOT_STARTED
        self.result: Optional[CheckoutResult] = None

        self._completion = completion
        self._on_finished = on_finished
        self._handle = None
        self._presented = False
        self._buyer_email: Optional[str] = None
        self._checkout_reported = False
        self._delivered = False
        self._awaiting_order = False
        self._load_timer: Optional[threading.Timer] = None
        self._order_timer: Optional[threading.Timer] = None
        self._poll_timer: Optional[threading.Timer] = None
        self._state_lock = threading.Lock()

    def open(self) -> None:
        with self._state_lock:
            if self.state != CheckoutState.NOT_STARTED:
                raise InvalidStateError(f"Checkout already {self.state.value}")
            self.state = CheckoutState.OPENING
        self.dispatcher.call(self._run_step, self._present)

    def _present(self) -> None:
        display = self.gateway.should_present(UIKind.CHECKOUT, self.product)
        if display is None:
            self.logger.info(f"Checkout for {self.product.product_id} suppressed by the host")
            self._finish(CheckoutResult(CheckoutState.ABANDONED))
            return

        try:
            self._handle = self.vendor_api.open_checkout_session(self.product, self.options)
        except LicensingError as e:
            self.logger.error(f"Could not open checkout for {self.product.product_id}: {e.message}")
            self._finish(CheckoutResult(CheckoutState.FAILED), error=e)
            return

        self._handle.bind(self)
        self._load_timer = self._start_timer(self.settings.checkout_load_timeout, self._on_load_timeout)
        self._presented = True
        self.logger.info(f"Presenting checkout for {self.product.product_id}")
        self.renderer.show_checkout(self._handle, display)

    def handle_signal(self, signal: CheckoutSignal, payload=None) -> None:
        """Entry point for session handle signals; marshals onto the UI thread"""
        self.dispatcher.call(self._run_step, self._on_signal, signal, payload)

    def _on_signal(self, signal: CheckoutSignal, payload) -> None:
        if self.state.terminal:
            self.logger.debug(f"Ignoring {signal.value} for finished checkout")
            return

        if signal == CheckoutSignal.OPENED:
            self._cancel_timer(self._load_timer)
            self.session_id = payload
            self.state = CheckoutState.ACTIVE
            self.logger.info(f"Checkout session {payload} opened")
        elif signal == CheckoutSignal.LOAD_FAILED:
            self.logger.warning(f"Checkout failed to load: {payload}")
            self._finish(self._result(CheckoutState.FAILED), error=NetworkFailureError(str(payload)))
        elif signal == CheckoutSignal.ORDER_CONFIRMED:
            self._cancel_timer(self._load_timer)
            if not self._classify_order(payload or {}):
                self._await_order()
        elif signal == CheckoutSignal.CLOSED:
            self._cancel_timer(self._load_timer)
            self._on_closed(payload)

    def _on_closed(self, checkout_data: Optional[Dict[str, Any]]) -> None:
        checkout = (checkout_data or {}).get('checkout') or {}
        order = (checkout_data or {}).get('order')

        if checkout.get('checkout_id'):
            self.session_id = checkout['checkout_id']
            self._buyer_email = checkout.get('email')
            self._checkout_reported = True

        if order:
            if not self._classify_order(order):
                self._await_order()
        elif checkout.get('checkout_id'):
            self._await_order()
        elif not self._awaiting_order:
            self.logger.info(f"Checkout for {self.product.product_id} closed without a purchase")
            self._finish(self._result(CheckoutState.ABANDONED))

    def _classify_order(self, order: Dict[str, Any]) -> bool:
        """Finish on a final order state; returns False while processing is still pending"""
        self._checkout_reported = True
        if order.get('checkout_id') and not self.session_id:
            self.session_id = order['checkout_id']
        customer = order.get('customer')
        if not self._buyer_email and isinstance(customer, dict):
            self._buyer_email = customer.get('email')

        if is_flagged(order):
            self.logger.warning(f"Order for checkout {self.session_id} flagged for manual processing")
            self._finish(self._result(CheckoutState.FLAGGED))
            return True
        if order_state(order) == ORDER_STATE_PROCESSED:
            self.logger.info(f"Order for checkout {self.session_id} processed")
            self._finish(self._result(CheckoutState.PURCHASED, order))
            return True
        return False

    def _await_order(self) -> None:
        if self._awaiting_order:
            return
        if not self.session_id:
            self._finish(self._result(CheckoutState.FAILED))
            return
        self._awaiting_order = True
        self.logger.info(f"Waiting for order confirmation of checkout {self.session_id}")
        self._order_timer = self._start_timer(self.settings.order_confirmation_timeout, self._on_order_timeout)
        self._poll_order()

    def _poll_order(self) -> None:
        if self.state.terminal:
            return
        self.runner.submit(self.vendor_api.order_status,
                           lambda future: self._run_step(self._on_poll_result, future), self.session_id)

    def _on_poll_result(self, future) -> None:
        if self.state.terminal:
            return
        try:
            order = future.result()
        except NetworkFailureError as e:
            self.logger.warning(f"Order status unavailable for {self.session_id}: {e.message}")
            order = None
        except LicensingError as e:
            self.logger.error(f"Order status rejected for {self.session_id}: {e.message}")
            self._finish(self._result(CheckoutState.FAILED), error=e)
            return

        if order and self._classify_order(order):
            return
        self._poll_timer = self._start_timer(self.settings.order_poll_interval, self._poll_order)

    def _on_load_timeout(self) -> None:
        if self.state.terminal or self.state == CheckoutState.ACTIVE:
            return
        self.logger.warning(f"Checkout for {self.product.product_id} did not load in time")
        self.renderer.close(UIKind.CHECKOUT, self.product)
        self._finish(self._result(CheckoutState.FAILED), error=NetworkFailureError(
            "Checkout did not load in time", code=ErrorCode.CHECKOUT_TIMEOUT))

    def _on_order_timeout(self) -> None:
        if self.state.terminal:
            return
        self.logger.warning(f"Order for checkout {self.session_id} not confirmed in time")
        self._finish(self._result(CheckoutState.FAILED), error=NetworkFailureError(
            "Order was not confirmed in time", code=ErrorCode.ORDER_TIMEOUT))

    def abandon(self) -> None:
        """End the session as abandoned unless it already finished"""
        self.dispatcher.call(self._run_step, self._on_abandon)

    def _on_abandon(self) -> None:
        if self.state.terminal:
            return
        self.logger.info(f"Checkout for {self.product.product_id} abandoned")
        if self._presented:
            self.renderer.close(UIKind.CHECKOUT, self.product)
        self._finish(self._result(CheckoutState.ABANDONED))

    def _run_step(self, fn: Callable, *args) -> None:
        """Run one transition; an unexpected error fails the session instead of leaving it open"""
        try:
            fn(*args)
        except Exception as e:
            self.logger.exception(f"Unexpected checkout error for {self.product.product_id}")
            self._abort(e)

    def _abort(self, exc: Exception) -> None:
        if not self.state.terminal:
            self.state = CheckoutState.FAILED
            self.result = self._result(CheckoutState.FAILED)
            self._cancel_timers()
        self._deliver(self.result, ServerRejectedError(f"Checkout error: {exc}", underlying=exc))

    def _result(self, state: CheckoutState, order: Optional[Dict[str, Any]] = None) -> CheckoutResult:
        checkout_id = self.session_id if self._checkout_reported else None
        return CheckoutResult(state=state, checkout_id=checkout_id,
                              buyer_email=self._buyer_email, order=order)

    def _finish(self, result: CheckoutResult, error: Optional[LicensingError] = None) -> None:
        if self.state.terminal:
            return
        self.state = result.state
        self.result = result
        self._cancel_timers()

        if self._presented:
            action = TriggeredAction.CANCEL if result.state == CheckoutState.ABANDONED else TriggeredAction.FINISHED
            self.gateway.notify_dismissed(UIKind.CHECKOUT, action, self.product)
        self._deliver(result, error)

    def _deliver(self, result: CheckoutResult, error: Optional[LicensingError]) -> None:
        if self._delivered:
            return
        self._delivered = True

        if error is not None and self._completion is None:
            self.gateway.did_error(error.record)
        try:
            if self._completion is not None:
                self._completion(result.state, result.to_payload())
        finally:
            if self._on_finished is not None:
                self._on_finished(self)

    def _start_timer(self, delay: float, fn: Callable) -> threading.Timer:
        timer = threading.Timer(delay, self.dispatcher.post, args=(self._run_step, fn))
        timer.daemon = True
        timer.start()
        return timer

    def _cancel_timers(self) -> None:
        for timer in (self._load_timer, self._order_timer, self._poll_timer):
            self._cancel_timer(timer)

    @staticmethod
    def _cancel_timer(timer: Optional[threading.Timer]) -> None:
        if timer is not None:
            timer.cancel()
