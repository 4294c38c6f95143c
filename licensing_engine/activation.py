"""
Activation State Machine
Drives a product's entitlement through activation, deactivation and
validation, reconciling the local license store with vendor responses.

    UNACTIVATED -> ACTIVATING -> ACTIVATED -> DEACTIVATING -> UNACTIVATED

An attempt that is abandoned or fails leaves the product in the rest state
it started from. Every attempt reports exactly one outcome on the UI thread.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Callable, Any

from .dispatch import OnceCallback
from .errors import (
    ErrorCode,
    BusyError,
    InvalidInputError,
    InvalidStateError,
    LicenseStoreError,
    LicensingError,
    NetworkFailureError,
    ServerRejectedError,
)
from .input_validation import mask_email, sanitize_string_input, validate_email, validate_license_code
from .license_store import LicenseRecord
from .presentation import (
    Alert,
    AlertType,
    LicensePrompt,
    TriggeredAction,
    UIKind,
    present_alert,
)
from .product import EntitlementState, Product
from .vendor_api import ValidationStatus


class ActivationState(Enum):
    """Outcome reported to an activation/deactivation completion"""
    ACTIVATED = "activated"
    DEACTIVATED = "deactivated"
    ABANDONED = "abandoned"
    FAILED = "failed"


class ActivationPhase(Enum):
    UNACTIVATED = "unactivated"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    DEACTIVATING = "deactivating"
    VALIDATING = "validating"


@dataclass
class ActivationAttempt:
    """One in-flight activation, deactivation or validation; never persisted"""
    product: Product
    operation: str
    completion: OnceCallback
    email: Optional[str] = None
    license_code: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    phase: ActivationPhase = ActivationPhase.UNACTIVATED
    ui_driven: bool = False
    prompts: int = 0
    display: Any = None
    future: Any = None
    finished: bool = False


def apply_record(product: Product, record: LicenseRecord, grace_days: int,
                 now: Optional[datetime] = None) -> None:
    """Hydrate a product snapshot from its stored license record"""
    product.mark_activated(
        license_code=record.license_code,
        email=record.activation_email,
        activation_id=record.activation_id,
        activated_at=record.activated_at,
        verified_at=record.last_verified_at,
    )
    if not record.is_within_grace(grace_days, now):
        product.entitlement = EntitlementState.UNKNOWN


class ActivationStateMachine:
    """
    Activation state machine for every product of an engine.

    At most one attempt per product is in flight; a concurrent call raises
    BusyError before anything else happens. All transitions run on the UI
    dispatcher's thread, vendor calls run on the background runner.
    """

    def __init__(self, store, vendor_api, gateway, renderer, dispatcher, runner, settings, app_logger):
        self.store = store
        self.vendor_api = vendor_api
        self.gateway = gateway
        self.renderer = renderer
        self.dispatcher = dispatcher
        self.runner = runner
        self.settings = settings
        self.logger = app_logger

        self._in_flight: Dict[str, ActivationAttempt] = {}
        self._lock = threading.Lock()

    # -- attempt bookkeeping --------------------------------------------------

    def phase(self, product: Product) -> ActivationPhase:
        with self._lock:
            attempt = self._in_flight.get(product.product_id)
        if attempt is not None:
            return attempt.phase
        return ActivationPhase.ACTIVATED if product.activated else ActivationPhase.UNACTIVATED

    def is_busy(self, product: Product) -> bool:
        with self._lock:
            return product.product_id in self._in_flight

    def _begin(self, product: Product, operation: str, completion: Optional[Callable],
               email: Optional[str] = None, license_code: Optional[str] = None) -> ActivationAttempt:
        with self._lock:
            if product.product_id in self._in_flight:
                current = self._in_flight[product.product_id]
                raise BusyError(f"{current.operation.capitalize()} already in progress for {product.product_id}")
            attempt = ActivationAttempt(
                product=product,
                operation=operation,
                completion=OnceCallback(self.logger, completion, f"{operation} of {product.product_id}"),
                email=email,
                license_code=license_code,
                phase=ActivationPhase.ACTIVATED if product.activated else ActivationPhase.UNACTIVATED,
            )
            self._in_flight[product.product_id] = attempt
        return attempt

    def _complete(self, attempt: ActivationAttempt, outcome, error: Optional[LicensingError] = None) -> None:
        attempt.finished = True
        with self._lock:
            if self._in_flight.get(attempt.product.product_id) is attempt:
                del self._in_flight[attempt.product.product_id]
        if attempt.completion.fired:
            return

        record = error.record if error is not None else None
        if record is not None and not attempt.completion.present:
            self.gateway.did_error(record)
        attempt.completion(outcome, record)

    def _run_step(self, step: Callable, attempt: ActivationAttempt, *args) -> None:
        """Run one transition; an unexpected error ends the attempt instead of leaving it in flight"""
        try:
            step(attempt, *args)
        except Exception as e:
            self.logger.exception(f"Unexpected error during {attempt.operation} of {attempt.product.product_id}")
            self._abort(attempt, e)

    def _abort(self, attempt: ActivationAttempt, exc: Exception) -> None:
        if attempt.completion.fired:
            return
        if attempt.ui_driven:
            try:
                self.renderer.close(UIKind.LICENSE, attempt.product)
            except Exception:
                self.logger.exception("Renderer failed to close the license dialog")
        error = ServerRejectedError(f"{attempt.operation.capitalize()} error: {exc}", underlying=exc)
        outcome = ValidationStatus.UNKNOWN if attempt.operation == 'validate' else ActivationState.FAILED
        self._complete(attempt, outcome, error)

    def abandon_all(self) -> None:
        """End every in-flight attempt; used when the engine shuts down"""
        with self._lock:
            attempts = list(self._in_flight.values())
        for attempt in attempts:
            self.dispatcher.call(self._run_step, self._on_shutdown, attempt)

    def _on_shutdown(self, attempt: ActivationAttempt) -> None:
        if attempt.finished:
            return
        if attempt.future is not None:
            attempt.future.cancel()
        if attempt.ui_driven:
            self.renderer.close(UIKind.LICENSE, attempt.product)
            self.gateway.notify_dismissed(UIKind.LICENSE, TriggeredAction.CANCEL, attempt.product)
        self.logger.info(f"{attempt.operation.capitalize()} of {attempt.product.product_id} abandoned on shutdown")
        outcome = ValidationStatus.UNKNOWN if attempt.operation == 'validate' else ActivationState.ABANDONED
        self._complete(attempt, outcome)

    # -- activation ------------------------------------------------------------

    def activate(self, product: Product, email: Optional[str] = None,
                 license_code: Optional[str] = None, completion: Optional[Callable] = None) -> None:
        """
        Activate product on this device.

        Raises BusyError when another attempt for product is in flight;
        otherwise completion(ActivationState, ErrorRecord | None) is called
        exactly once on the UI thread.
        """
        attempt = self._begin(product, 'activate', completion, email, license_code)
        self.dispatcher.call(self._run_step, self._start_activation, attempt)

    def _start_activation(self, attempt: ActivationAttempt) -> None:
        product = attempt.product
        record = self.store.load(product.product_id)

        if record is not None and record.is_within_grace(self.settings.offline_grace_days):
            self.logger.info(f"Product {product.product_id} already activated on this device")
            apply_record(product, record, self.settings.offline_grace_days)
            self._complete(attempt, ActivationState.ACTIVATED)
            return

        if record is not None and not attempt.license_code:
            attempt.license_code = record.license_code
            attempt.email = attempt.email or record.activation_email

        attempt.phase = ActivationPhase.ACTIVATING
        if attempt.email and attempt.license_code:
            self._validate_and_submit(attempt, attempt.email, attempt.license_code)
        else:
            self._prompt_license(attempt)

    def _prompt_license(self, attempt: ActivationAttempt, error: Optional[LicensingError] = None) -> None:
        product = attempt.product
        if attempt.display is None:
            attempt.display = self.gateway.should_present(UIKind.LICENSE, product)
            if attempt.display is None:
                self.logger.info(f"License dialog for {product.product_id} suppressed by the host")
                self._complete(attempt, ActivationState.ABANDONED)
                return

        attempt.ui_driven = True
        attempt.prompts += 1
        prompt = LicensePrompt(
            product=product,
            display=attempt.display,
            submit=lambda email, code: self.dispatcher.call(
                self._run_step, self._validate_and_submit, attempt, email, code),
            cancel=lambda: self.dispatcher.call(self._run_step, self._on_cancel, attempt),
            email=attempt.email,
            license_code=attempt.license_code,
            error=error.record if error is not None else None,
            attempt=attempt.prompts,
        )
        self.renderer.show_license_prompt(prompt)

    def _validate_and_submit(self, attempt: ActivationAttempt, email: Optional[str],
                             license_code: Optional[str]) -> None:
        if attempt.finished or attempt.future is not None:
            return

        email = sanitize_string_input(email, 254)
        license_code = sanitize_string_input(license_code, 128)
        attempt.email = email
        attempt.license_code = license_code

        if not validate_license_code(license_code):
            self._on_invalid_input(attempt, InvalidInputError(
                "Please enter a valid license code", code=ErrorCode.INVALID_LICENSE_CODE))
            return
        if email and not validate_email(email):
            self._on_invalid_input(attempt, InvalidInputError(
                "Please enter a valid email address", code=ErrorCode.INVALID_EMAIL))
            return

        product = attempt.product
        self.logger.info(f"Submitting activation of {product.product_id} for {mask_email(email)}")
        attempt.future = self.runner.submit(
            self.vendor_api.activate,
            lambda future: self._run_step(self._on_activation_response, attempt, future),
            product.product_id, license_code, email, self.store.device_fingerprint,
        )

    def _on_activation_response(self, attempt: ActivationAttempt, future) -> None:
        attempt.future = None
        if attempt.finished:
            self.logger.debug(f"Ignoring late activation response for {attempt.product.product_id}")
            return

        try:
            response = future.result()
        except InvalidInputError as e:
            self._on_invalid_input(attempt, e)
            return
        except LicensingError as e:
            self._fail(attempt, e)
            return
        except Exception as e:
            self.logger.exception(f"Unexpected activation error for {attempt.product.product_id}")
            self._fail(attempt, ServerRejectedError(f"Activation error: {e}", underlying=e))
            return

        product = attempt.product
        now = datetime.now()
        record = LicenseRecord(
            product_id=product.product_id,
            license_code=response.license_code,
            device_fingerprint=self.store.device_fingerprint,
            last_verified_at=now,
            activation_email=attempt.email,
            activation_id=response.activation_id,
            activated_at=response.activated_at or now,
        )
        try:
            self.store.save(record)
        except LicenseStoreError as e:
            self.logger.error(f"Activation of {product.product_id} could not be stored: {e.message}")
            self._fail(attempt, e)
            return

        apply_record(product, record, self.settings.offline_grace_days, now)
        product.validated_this_session = True
        attempt.phase = ActivationPhase.ACTIVATED
        self.logger.info(f"Product {product.product_id} activated")

        if attempt.ui_driven:
            self.renderer.close(UIKind.LICENSE, product)
            self.gateway.notify_dismissed(UIKind.LICENSE, TriggeredAction.ACTIVATED, product)
        self._complete(attempt, ActivationState.ACTIVATED)

    def _on_invalid_input(self, attempt: ActivationAttempt, error: InvalidInputError) -> None:
        retries_used = attempt.prompts - 1
        if attempt.ui_driven and retries_used < self.settings.max_input_retries:
            self.logger.info(f"Re-prompting for {attempt.product.product_id}: {error.message}")
            self._prompt_license(attempt, error)
            return
        self._fail(attempt, error)

    def _fail(self, attempt: ActivationAttempt, error: LicensingError) -> None:
        product = attempt.product
        self.logger.warning(f"{attempt.operation.capitalize()} of {product.product_id} failed: {error.message}")
        if attempt.ui_driven:
            present_alert(self.gateway, self.renderer, Alert(
                alert_type=AlertType.ERROR,
                title="Activation failed",
                message=error.message,
                error=error.record,
            ))
            self.renderer.close(UIKind.LICENSE, product)
            self.gateway.notify_dismissed(UIKind.LICENSE, TriggeredAction.FINISHED, product)
        self._complete(attempt, ActivationState.FAILED, error)

    def _on_cancel(self, attempt: ActivationAttempt) -> None:
        if attempt.finished:
            return
        if attempt.future is not None:
            # the server may already have committed; the response is ignored either way
            attempt.future.cancel()
        self.logger.info(f"{attempt.operation.capitalize()} of {attempt.product.product_id} abandoned")
        self.gateway.notify_dismissed(UIKind.LICENSE, TriggeredAction.CANCEL, attempt.product)
        self._complete(attempt, ActivationState.ABANDONED)

    def cancel(self, product: Product) -> bool:
        """Abandon the in-flight attempt for product, if any"""
        with self._lock:
            attempt = self._in_flight.get(product.product_id)
        if attempt is None:
            return False
        self.dispatcher.call(self._run_step, self._on_cancel, attempt)
        return True

    # -- deactivation ----------------------------------------------------------

    def deactivate(self, product: Product, completion: Optional[Callable] = None) -> None:
        """
        Deactivate product on this device. Only a confirmed remote
        deactivation removes the local record.
        """
        attempt = self._begin(product, 'deactivate', completion)
        self.dispatcher.call(self._run_step, self._start_deactivation, attempt)

    def _start_deactivation(self, attempt: ActivationAttempt) -> None:
        product = attempt.product
        record = self.store.load(product.product_id)
        if record is None or product.entitlement == EntitlementState.UNACTIVATED:
            self._complete(attempt, ActivationState.FAILED,
                           InvalidStateError(f"Product {product.product_id} is not activated"))
            return

        attempt.phase = ActivationPhase.DEACTIVATING
        attempt.future = self.runner.submit(
            self.vendor_api.deactivate,
            lambda future: self._run_step(self._on_deactivation_response, attempt, future),
            product.product_id, record.license_code, record.activation_id,
        )

    def _on_deactivation_response(self, attempt: ActivationAttempt, future) -> None:
        attempt.future = None
        if attempt.finished:
            return
        product = attempt.product

        try:
            future.result()
        except LicensingError as e:
            self.logger.warning(f"Remote deactivation of {product.product_id} failed; keeping local activation")
            attempt.phase = ActivationPhase.ACTIVATED
            self._complete(attempt, ActivationState.FAILED, e)
            return
        except Exception as e:
            self.logger.exception(f"Unexpected deactivation error for {product.product_id}")
            attempt.phase = ActivationPhase.ACTIVATED
            self._complete(attempt, ActivationState.FAILED,
                           ServerRejectedError(f"Deactivation error: {e}", underlying=e))
            return

        try:
            self.store.delete(product.product_id)
        except LicenseStoreError as e:
            self.logger.error(f"Deactivated {product.product_id} remotely but could not update the store")
            self._complete(attempt, ActivationState.FAILED, e)
            return

        product.mark_unactivated()
        attempt.phase = ActivationPhase.UNACTIVATED
        self.logger.info(f"Product {product.product_id} deactivated")
        self._complete(attempt, ActivationState.DEACTIVATED)

    # -- validation ------------------------------------------------------------

    def validate(self, product: Product, completion: Optional[Callable] = None) -> None:
        """
        Re-verify the stored license with the vendor.

        completion(ValidationStatus, ErrorRecord | None); without a
        completion, an inconclusive check is reported to the gateway's
        error channel.
        """
        attempt = self._begin(product, 'validate', completion)
        self.dispatcher.call(self._run_step, self._start_validation, attempt)

    def _start_validation(self, attempt: ActivationAttempt) -> None:
        product = attempt.product
        record = self.store.load(product.product_id)
        if record is None:
            product.mark_unactivated()
            self._complete(attempt, ValidationStatus.INVALID)
            return

        attempt.phase = ActivationPhase.VALIDATING
        attempt.future = self.runner.submit(
            self.vendor_api.validate,
            lambda future: self._run_step(self._on_validation_response, attempt, record, future),
            product.product_id, record.license_code, record.activation_id, self.store.device_fingerprint,
        )

    def _on_validation_response(self, attempt: ActivationAttempt, record: LicenseRecord, future) -> None:
        attempt.future = None
        if attempt.finished:
            return
        product = attempt.product

        try:
            status = future.result()
        except Exception:
            self.logger.exception(f"Unexpected validation error for {product.product_id}")
            status = ValidationStatus.UNKNOWN

        now = datetime.now()
        if status == ValidationStatus.VALID:
            record.last_verified_at = now
            try:
                self.store.save(record)
            except LicenseStoreError as e:
                self.logger.warning(f"Could not refresh verification time for {product.product_id}: {e.message}")
            apply_record(product, record, self.settings.offline_grace_days, now)
            product.validated_this_session = True
            self.logger.info(f"License for {product.product_id} verified")
            self._complete(attempt, status)
        elif status == ValidationStatus.INVALID:
            try:
                self.store.delete(product.product_id)
            except LicenseStoreError as e:
                self.logger.error(f"Could not remove revoked license for {product.product_id}: {e.message}")
            product.mark_unactivated()
            product.validated_this_session = True
            self.logger.warning(f"License for {product.product_id} is no longer valid")
            self._complete(attempt, status)
        else:
            apply_record(product, record, self.settings.offline_grace_days, now)
            self._complete(attempt, status, NetworkFailureError(
                f"License for {product.product_id} could not be verified"))
