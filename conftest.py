"""
Shared fixtures and fakes for the licensing engine tests
"""

import dataclasses
import logging
import threading
from datetime import datetime

import pytest

from licensing_engine.checkout import CheckoutSessionHandle
from licensing_engine.config import EngineSettings
from licensing_engine.dispatch import UIDispatcher
from licensing_engine.engine import LicensingEngine
from licensing_engine.license_store import LicenseStore
from licensing_engine.presentation import DialogRenderer, PresentationGateway
from licensing_engine.vendor_api import ActivationResponse, ValidationStatus

DEVICE = "device-fingerprint-123"


class FakeVendorApi:
    """Scripted vendor backend; queued results may be exceptions"""

    def __init__(self):
        self.calls = []
        self.activate_results = []
        self.deactivate_results = []
        self.validate_results = []
        self.recover_results = []
        self.order_results = []
        self.subscribe_results = []
        self.gate = None
        self._lock = threading.Lock()

    def _next(self, name, queue, default):
        if self.gate is not None:
            self.gate.wait(5)
        with self._lock:
            result = queue.pop(0) if queue else default
        if isinstance(result, Exception):
            raise result
        return result

    def activate(self, product_id, license_code, email=None, device_fingerprint=None):
        self.calls.append(('activate', product_id, license_code, email))
        default = ActivationResponse(license_code=license_code, activation_id="act-1",
                                     activated_at=datetime(2026, 1, 1))
        return self._next('activate', self.activate_results, default)

    def deactivate(self, product_id, license_code, activation_id=None):
        self.calls.append(('deactivate', product_id, license_code))
        return self._next('deactivate', self.deactivate_results, None)

    def validate(self, product_id, license_code, activation_id=None, device_fingerprint=None):
        self.calls.append(('validate', product_id, license_code))
        return self._next('validate', self.validate_results, ValidationStatus.VALID)

    def recover_by_email(self, product_id, email):
        self.calls.append(('recover', product_id, email))
        return self._next('recover', self.recover_results, None)

    def order_status(self, checkout_id):
        self.calls.append(('order_status', checkout_id))
        return self._next('order_status', self.order_results, {"state": "processing"})

    def subscribe_email(self, product_id, email, consent):
        self.calls.append(('subscribe', product_id, email, consent))
        return self._next('subscribe', self.subscribe_results, None)

    def open_checkout_session(self, product, options=None):
        self.calls.append(('open_checkout', product.product_id))
        return CheckoutSessionHandle(product.product_id, f"https://checkout.test/{product.product_id}", options)

    def called(self, name):
        return [c for c in self.calls if c[0] == name]


class ScriptedRenderer(DialogRenderer):
    """
    Answers prompts from scripted inputs. A ``None`` input cancels; with no
    input left the prompt is kept in ``pending`` for the test to drive.
    """

    def __init__(self):
        self.license_inputs = []
        self.recovery_inputs = []
        self.product_access_choices = []
        self.license_prompts = []
        self.recovery_prompts = []
        self.product_access_prompts = []
        self.checkouts = []
        self.alerts = []
        self.closed = []
        self.pending = None

    def show_license_prompt(self, prompt):
        self.license_prompts.append(prompt)
        if not self.license_inputs:
            self.pending = prompt
            return
        answer = self.license_inputs.pop(0)
        if answer is None:
            prompt.cancel()
        else:
            prompt.submit(*answer)

    def show_recovery_prompt(self, prompt):
        self.recovery_prompts.append(prompt)
        if not self.recovery_inputs:
            self.pending = prompt
            return
        answer = self.recovery_inputs.pop(0)
        if answer is None:
            prompt.cancel()
        else:
            prompt.submit(answer)

    def show_product_access(self, prompt):
        self.product_access_prompts.append(prompt)
        if self.product_access_choices:
            prompt.choose(self.product_access_choices.pop(0))

    def show_checkout(self, session, display):
        self.checkouts.append(session)

    def show_alert(self, alert):
        self.alerts.append(alert)

    def close(self, ui_kind, product):
        self.closed.append(ui_kind)


class RecordingGateway(PresentationGateway):
    def __init__(self, suppress=()):
        super().__init__(logging.getLogger('test_gateway'))
        self.suppress = set(suppress)
        self.presented = []
        self.dismissed = []
        self.errors = []
        self.allow_alerts = True

    def should_present(self, ui_kind, product):
        if ui_kind in self.suppress:
            return None
        self.presented.append(ui_kind)
        return super().should_present(ui_kind, product)

    def notify_dismissed(self, ui_kind, triggered_action, product):
        self.dismissed.append((ui_kind, triggered_action))

    def should_show_alert(self, alert):
        return self.allow_alerts

    def did_error(self, error):
        self.errors.append(error)


class Completions:
    """Collects completion calls together with the thread they ran on"""

    def __init__(self):
        self.calls = []
        self.threads = []

    def __call__(self, *args):
        self.calls.append(args)
        self.threads.append(threading.get_ident())

    def wait(self, dispatcher, count=1, timeout=5.0):
        return dispatcher.run_until(lambda: len(self.calls) >= count, timeout)

    @property
    def last(self):
        return self.calls[-1]


@pytest.fixture
def logger():
    return logging.getLogger('licensing_engine.tests')


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        vendor_id='1234',
        api_key='test-key',
        data_dir=str(tmp_path / 'data'),
        backup_dir=str(tmp_path / 'backup'),
        secret_key='test-secret',
        max_input_retries=3,
        checkout_load_timeout=0.3,
        order_confirmation_timeout=0.6,
        order_poll_interval=0.05,
        offline_grace_days=10,
    )


@pytest.fixture
def dispatcher(logger):
    return UIDispatcher(logger)


@pytest.fixture
def store(logger, settings):
    return LicenseStore(logger, settings.data_dir, settings.secret_key,
                        backup_dir=settings.backup_dir, device_fingerprint=DEVICE)


@pytest.fixture
def vendor():
    return FakeVendorApi()


@pytest.fixture
def renderer():
    return ScriptedRenderer()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def exits():
    return []


@pytest.fixture
def engine(settings, logger, vendor, store, gateway, renderer, dispatcher, exits):
    engine = LicensingEngine(settings, app_logger=logger, vendor_api=vendor, store=store,
                             gateway=gateway, renderer=renderer, dispatcher=dispatcher,
                             exit_process=exits.append)
    yield engine
    if vendor.gate is not None:
        vendor.gate.set()
    engine.shutdown()


@pytest.fixture
def completions():
    return Completions()


@pytest.fixture
def make_engine(settings, logger, vendor, store, gateway, dispatcher, exits):
    """Build engines around a custom renderer or settings overrides"""
    engines = []

    def build(renderer, **overrides):
        engine = LicensingEngine(dataclasses.replace(settings, **overrides), app_logger=logger,
                                 vendor_api=vendor, store=store, gateway=gateway, renderer=renderer,
                                 dispatcher=dispatcher, exit_process=exits.append)
        engines.append(engine)
        return engine

    yield build
    if vendor.gate is not None:
        vendor.gate.set()
    for engine in engines:
        engine.shutdown()
