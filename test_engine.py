"""
Engine tests
Product registry, launch revalidation, product access dialog and configuration
"""

import dataclasses
import logging
from datetime import datetime, timedelta

import pytest

from conftest import DEVICE
from licensing_engine import __version__
from licensing_engine.activation import ActivationState
from licensing_engine.checkout import CheckoutState
from licensing_engine.config import Config, EngineSettings
from licensing_engine.engine import LicensingEngine
from licensing_engine.license_store import LicenseRecord
from licensing_engine.log_config import LOGGER_NAME, configure_logging
from licensing_engine.presentation import DialogRenderer, TriggeredAction, UIKind
from licensing_engine.product import EntitlementState, ProductConfiguration, TrialType
from licensing_engine.vendor_api import ValidationStatus

TRIAL = ProductConfiguration(product_name="Sketcher", trial_type=TrialType.TIME_LIMITED, trial_length_days=14)


def save_record(store, product_id, verified_days_ago=0):
    store.save(LicenseRecord(
        product_id=product_id,
        license_code=f"{product_id}-CODE",
        device_fingerprint=DEVICE,
        last_verified_at=datetime.now() - timedelta(days=verified_days_ago),
    ))


def test_product_is_created_once(engine):
    first = engine.product("P1")

    assert engine.product("P1") is first
    assert engine.all_products() == [first]
    with pytest.raises(ValueError):
        engine.product("")


def test_new_product_without_record_is_unactivated(engine):
    product = engine.product("P1")

    assert product.entitlement == EntitlementState.UNACTIVATED
    assert not product.has_access


def test_product_hydrates_from_store(engine, store):
    save_record(store, "P1")
    save_record(store, "P2", verified_days_ago=30)

    assert engine.product("P1").activated
    assert engine.product("P2").entitlement == EntitlementState.UNKNOWN
    assert engine.product("P2").license_code == "P2-CODE"


def test_trial_starts_on_first_reference(engine):
    product = engine.product("P1", configuration=TRIAL)

    assert product.trial_days_remaining == 14
    assert product.has_access
    assert product.get_user_message() == "Trial: 14 days remaining"


def test_start_revalidates_stored_licenses(engine, store, vendor):
    save_record(store, "P1")
    save_record(store, "P2")
    vendor.validate_results = [ValidationStatus.VALID, ValidationStatus.INVALID]

    engine.start()

    assert engine.dispatcher.run_until(
        lambda: all(p.validated_this_session for p in engine.all_products()))
    assert sorted(c[1] for c in vendor.called('validate')) == ["P1", "P2"]
    assert len(store.all_records()) == 1


def test_product_access_opens_checkout(engine, renderer, gateway):
    renderer.product_access_choices = [TriggeredAction.SHOW_CHECKOUT]
    product = engine.product("P1")

    engine.show_product_access(product)

    assert renderer.product_access_prompts[0].options == [
        TriggeredAction.SHOW_CHECKOUT, TriggeredAction.SHOW_ACTIVATE]
    assert (UIKind.PRODUCT, TriggeredAction.SHOW_CHECKOUT) in gateway.dismissed
    assert len(renderer.checkouts) == 1
    assert len(engine.active_checkouts()) == 1


def test_product_access_offers_trial(engine, renderer):
    product = engine.product("P1", configuration=TRIAL)

    engine.show_product_access(product)

    assert TriggeredAction.CONTINUE_TRIAL in renderer.product_access_prompts[0].options


def test_product_access_opens_activation(engine, renderer):
    renderer.product_access_choices = [TriggeredAction.SHOW_ACTIVATE]
    product = engine.product("P1")

    engine.show_product_access(product)

    assert len(renderer.license_prompts) == 1
    assert engine.activation.is_busy(product)


@pytest.fixture
def exiting_engine(settings, logger, vendor, store, gateway, renderer, dispatcher, exits):
    engine = LicensingEngine(dataclasses.replace(settings, can_force_exit=True), app_logger=logger,
                             vendor_api=vendor, store=store, gateway=gateway, renderer=renderer,
                             dispatcher=dispatcher, exit_process=exits.append)
    yield engine
    engine.shutdown()


def test_cancelling_product_access_without_license_exits(exiting_engine, renderer, exits):
    renderer.product_access_choices = [TriggeredAction.CANCEL]

    exiting_engine.show_product_access(exiting_engine.product("P1"))

    assert exits == [0]


def test_cancelling_during_trial_does_not_exit(exiting_engine, renderer, exits):
    renderer.product_access_choices = [TriggeredAction.CANCEL]

    exiting_engine.show_product_access(exiting_engine.product("P1", configuration=TRIAL))

    assert exits == []


def test_exit_requires_permission(engine, renderer, exits):
    renderer.product_access_choices = [TriggeredAction.CANCEL]

    engine.show_product_access(engine.product("P1"))

    assert exits == []


def test_suppressed_product_access(engine, gateway, renderer):
    gateway.suppress.add(UIKind.PRODUCT)

    engine.show_product_access(engine.product("P1"))

    assert renderer.product_access_prompts == []


def test_email_subscribe_is_fire_and_forget(engine, vendor):
    product = engine.product("P1")

    engine.send_email_subscribe("not-an-email", True, product)
    engine.send_email_subscribe("buyer@example.com", True, product)

    assert engine.dispatcher.run_until(lambda: vendor.called('subscribe'))
    assert vendor.called('subscribe') == [('subscribe', "P1", "buyer@example.com", True)]


def test_diagnose(engine, store):
    save_record(store, "P1", verified_days_ago=30)
    engine.product("P1")
    engine.product("P2")

    diagnosis = engine.diagnose()

    assert diagnosis["device_fingerprint"] == DEVICE
    assert diagnosis["files"]["store_exists"]
    assert [p["product_id"] for p in diagnosis["products"]] == ["P1", "P2"]
    assert len(diagnosis["recommendations"]) == 2
    assert diagnosis["busy_products"] == []


def test_settings_validation(settings):
    with pytest.raises(ValueError):
        dataclasses.replace(settings, max_input_retries=-1)
    with pytest.raises(ValueError):
        dataclasses.replace(settings, order_poll_interval=0)


def test_settings_from_config():
    class TestConfig(Config):
        VENDOR_ID = '42'
        API_KEY = 'key'
        DATA_DIR = '/tmp/licensing'
        FORCE_EXIT = True
        OFFLINE_GRACE_DAYS = 3

    settings = EngineSettings.from_config(TestConfig)

    assert settings.vendor_id == '42'
    assert settings.can_force_exit
    assert settings.offline_grace_days == 3
    assert settings.max_input_retries == Config.MAX_INPUT_RETRIES


def test_missing_credentials_are_reported(monkeypatch):
    monkeypatch.setattr(Config, 'VENDOR_ID', None)
    monkeypatch.setattr(Config, 'API_KEY', 'key')

    with pytest.raises(ValueError, match='LICENSING_VENDOR_ID'):
        Config.validate_config()


def test_configure_logging_adds_file_handler(tmp_path):
    logger = configure_logging(debug=True, log_file=str(tmp_path / 'logs' / 'licensing.log'))
    try:
        assert logger.name == LOGGER_NAME
        assert logger.level == logging.DEBUG
        assert (tmp_path / 'logs' / 'licensing.log').exists()
    finally:
        for handler in list(logger.handlers):
            if isinstance(handler, logging.FileHandler):
                logger.removeHandler(handler)
                handler.close()


def test_version():
    assert __version__ == "1.0.0"


class AlertOnlyRenderer(DialogRenderer):
    def __init__(self):
        self.alerts = []

    def show_alert(self, alert):
        self.alerts.append(alert)


def test_renderer_defaults_end_undrawn_dialogs(make_engine, gateway, completions, exits):
    engine = make_engine(AlertOnlyRenderer())
    product = engine.product("P1")

    engine.activate(product, completion=completions)
    assert completions.last == (ActivationState.ABANDONED, None)
    assert not engine.activation.is_busy(product)

    engine.show_checkout(product, completion=completions)
    assert completions.last == (CheckoutState.FAILED, None)
    assert engine.active_checkouts() == []

    engine.show_product_access(product)
    assert (UIKind.PRODUCT, TriggeredAction.CANCEL) in gateway.dismissed
    assert exits == []
