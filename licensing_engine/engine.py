"""
Licensing Engine
Explicitly constructed owner of the product registry, license store,
vendor client and the activation, checkout and recovery flows
"""

import os
import threading
from datetime import datetime
from typing import Optional, Dict, Any, Callable, List

from .activation import ActivationStateMachine, apply_record
from .checkout import CheckoutOptions, CheckoutSession
from .config import EngineSettings
from .dispatch import BackgroundRunner, UIDispatcher
from .errors import BusyError, LicensingError
from .input_validation import mask_email, validate_email
from .license_store import LicenseStore
from .log_config import enable_debug, get_logger
from .presentation import (
    NullDialogRenderer,
    PresentationGateway,
    ProductAccessPrompt,
    TriggeredAction,
    UIKind,
)
from .product import EntitlementState, Product, ProductConfiguration, ProductKind, ProductRegistry
from .recovery import RecoveryFlowController
from .vendor_api import VendorApiClient


class LicensingEngine:
    """
    Entry point for the host application.

    Construct one engine on the UI thread and pass it to the code that
    needs it. Collaborators not supplied are built from ``settings``;
    the gateway and renderer default to null implementations.
    """

    def __init__(self, settings: EngineSettings, app_logger=None, vendor_api=None,
                 store: Optional[LicenseStore] = None,
                 gateway: Optional[PresentationGateway] = None,
                 renderer=None, dispatcher: Optional[UIDispatcher] = None,
                 exit_process: Callable[[int], None] = os._exit):
        self.settings = settings
        self.logger = app_logger or get_logger()
        if settings.debug:
            enable_debug(self.logger)

        self.dispatcher = dispatcher or UIDispatcher(self.logger)
        self.runner = BackgroundRunner(self.dispatcher)
        self.store = store or LicenseStore(
            self.logger, settings.data_dir, settings.secret_key, settings.backup_dir
        )
        self.vendor_api = vendor_api or VendorApiClient(
            self.logger, settings.vendor_id, settings.api_key, settings.api_url,
            settings.checkout_url, timeout=settings.api_timeout,
        )
        self.gateway = gateway or PresentationGateway(self.logger)
        self.renderer = renderer or NullDialogRenderer()
        self.products = ProductRegistry()

        self.activation = ActivationStateMachine(
            self.store, self.vendor_api, self.gateway, self.renderer,
            self.dispatcher, self.runner, settings, self.logger,
        )
        self.recovery = RecoveryFlowController(
            self.vendor_api, self.gateway, self.renderer,
            self.dispatcher, self.runner, settings, self.logger,
        )

        self._exit_process = exit_process
        self._checkouts: List[CheckoutSession] = []
        self._checkouts_lock = threading.Lock()

        self.logger.info("Licensing engine initialized")

    # -- products --------------------------------------------------------------

    def product(self, product_id: str, kind: ProductKind = ProductKind.SDK_PRODUCT,
                configuration: Optional[ProductConfiguration] = None) -> Product:
        """Get a product, creating and hydrating it from the store on first reference"""
        is_new = product_id not in self.products
        product = self.products.get_or_create(product_id, kind, configuration)
        if is_new:
            self._hydrate(product)
        return product

    def all_products(self) -> List[Product]:
        return self.products.all_products()

    def _hydrate(self, product: Product) -> None:
        record = self.store.load(product.product_id)
        if record is not None:
            apply_record(product, record, self.settings.offline_grace_days)
        else:
            product.mark_unactivated()
        if product.configuration.has_trial:
            product.update_trial(self.store.trial_started_at(product.product_id))

    def start(self) -> None:
        """Load stored activations and revalidate them in the background"""
        records = self.store.all_records()
        self.logger.info(f"Revalidating {len(records)} stored license(s)")
        for record in records:
            product = self.product(record.product_id)
            try:
                self.activation.validate(product)
            except BusyError:
                self.logger.debug(f"Skipping launch validation of {product.product_id}; attempt in progress")

    # -- activation ------------------------------------------------------------

    def activate(self, product: Product, email: Optional[str] = None,
                 license_code: Optional[str] = None, completion: Optional[Callable] = None) -> None:
        self.activation.activate(product, email, license_code, completion)

    def deactivate(self, product: Product, completion: Optional[Callable] = None) -> None:
        self.activation.deactivate(product, completion)

    def validate(self, product: Product, completion: Optional[Callable] = None) -> None:
        self.activation.validate(product, completion)

    # -- checkout --------------------------------------------------------------

    def show_checkout(self, product: Product, options: Optional[CheckoutOptions] = None,
                      completion: Optional[Callable] = None) -> CheckoutSession:
        """Open a checkout for product; completion(CheckoutState, payload | None)"""
        session = CheckoutSession(
            product, options, self.vendor_api, self.gateway, self.renderer,
            self.dispatcher, self.runner, self.settings, self.logger,
            completion=completion, on_finished=self._forget_checkout,
        )
        with self._checkouts_lock:
            self._checkouts.append(session)
        session.open()
        return session

    def _forget_checkout(self, session: CheckoutSession) -> None:
        with self._checkouts_lock:
            if session in self._checkouts:
                self._checkouts.remove(session)

    def active_checkouts(self) -> List[CheckoutSession]:
        with self._checkouts_lock:
            return list(self._checkouts)

    # -- recovery --------------------------------------------------------------

    def recover_license(self, product: Product, email: str, completion: Optional[Callable] = None) -> None:
        self.recovery.recover(product, email, completion)

    def show_license_recovery(self, product: Product, completion: Optional[Callable] = None) -> None:
        self.recovery.show_recovery(product, completion)

    # -- product access --------------------------------------------------------

    def show_product_access(self, product: Product) -> None:
        """Product information dialog offering purchase, activation or the trial"""
        self.dispatcher.call(self._present_product_access, product)

    def _present_product_access(self, product: Product) -> None:
        display = self.gateway.should_present(UIKind.PRODUCT, product)
        if display is None:
            self.logger.info(f"Product dialog for {product.product_id} suppressed by the host")
            return

        options = [TriggeredAction.SHOW_CHECKOUT, TriggeredAction.SHOW_ACTIVATE]
        if not product.activated and not product.trial_expired:
            options.append(TriggeredAction.CONTINUE_TRIAL)
        self.renderer.show_product_access(ProductAccessPrompt(
            product=product,
            display=display,
            choose=lambda action: self.dispatcher.call(self._on_product_access_choice, product, action),
            options=options,
        ))

    def _on_product_access_choice(self, product: Product, action: TriggeredAction) -> None:
        self.gateway.notify_dismissed(UIKind.PRODUCT, action, product)

        if action == TriggeredAction.SHOW_CHECKOUT:
            self.show_checkout(product)
        elif action == TriggeredAction.SHOW_ACTIVATE:
            try:
                self.activate(product)
            except BusyError as e:
                self.gateway.did_error(e.record)
        elif action in (TriggeredAction.CANCEL, TriggeredAction.CONTINUE_TRIAL) and not product.has_access:
            if self.settings.can_force_exit:
                self.logger.info(f"No access to {product.product_id}; exiting")
                self._exit_process(0)

    # -- audience --------------------------------------------------------------

    def send_email_subscribe(self, email: str, consent: bool, product: Product) -> None:
        """Subscribe email to product news; fire and forget"""
        if not validate_email(email):
            self.logger.debug(f"Not subscribing invalid email {mask_email(email)}")
            return
        self.runner.submit(self.vendor_api.subscribe_email, self._on_subscribe_done,
                           product.product_id, email, consent)

    def _on_subscribe_done(self, future) -> None:
        try:
            future.result()
        except LicensingError as e:
            self.logger.debug(f"Email subscription not recorded: {e.message}")

    # -- diagnostics -----------------------------------------------------------

    def diagnose(self) -> Dict[str, Any]:
        """Snapshot of licensing state for troubleshooting"""
        products = self.all_products()
        diagnosis = {
            "timestamp": datetime.now().isoformat(),
            "device_fingerprint": self.store.device_fingerprint,
            "files": {
                "store_path": self.store.store_file,
                "store_exists": os.path.exists(self.store.store_file),
                "backup_exists": bool(self.store.backup_file) and os.path.exists(self.store.backup_file),
            },
            "products": [p.to_dict() for p in products],
            "busy_products": [p.product_id for p in products if self.activation.is_busy(p)],
            "active_checkouts": len(self.active_checkouts()),
            "recommendations": [],
        }

        for product in products:
            if product.entitlement == EntitlementState.UNKNOWN:
                diagnosis["recommendations"].append(
                    f"Connect to the internet to verify the license for {product.name}")
            elif not product.has_access:
                diagnosis["recommendations"].append(f"No valid license for {product.name}")

        return diagnosis

    def shutdown(self) -> None:
        """
        End every unfinished attempt before stopping the worker pool.
        Call on the UI thread so the final completions are delivered inline.
        """
        self.activation.abandon_all()
        self.recovery.abandon_all()
        for session in self.active_checkouts():
            session.abandon()
        self.runner.shutdown()
        close = getattr(self.vendor_api, 'close', None)
        if close is not None:
            close()
        self.logger.info("Licensing engine stopped")
