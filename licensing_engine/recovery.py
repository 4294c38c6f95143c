"""
Recovery Flow Controller
Emails previously purchased license codes to the buyer
"""

import threading
from dataclasses import dataclass
from typing import Optional, Callable, Any, List

from .dispatch import OnceCallback
from .errors import (
    ErrorCode,
    InvalidInputError,
    LicensingError,
    ServerRejectedError,
    UnsupportedError,
)
from .input_validation import mask_email, sanitize_string_input, validate_email
from .presentation import (
    Alert,
    AlertType,
    RecoveryPrompt,
    TriggeredAction,
    UIKind,
    present_alert,
)
from .product import Product, ProductKind


@dataclass
class _RecoveryAttempt:
    product: Product
    completion: OnceCallback
    ui_driven: bool
    prompts: int = 0
    display: Any = None
    future: Any = None
    finished: bool = False


class RecoveryFlowController:
    """
    collect email -> submit -> sent

    UI-driven recoveries return to the email step when the address is
    rejected, up to ``max_input_retries`` times. Direct recoveries never
    loop: the first error is the outcome.
    """

    def __init__(self, vendor_api, gateway, renderer, dispatcher, runner, settings, app_logger):
        self.vendor_api = vendor_api
        self.gateway = gateway
        self.renderer = renderer
        self.dispatcher = dispatcher
        self.runner = runner
        self.settings = settings
        self.logger = app_logger

        self._live: List[_RecoveryAttempt] = []
        self._lock = threading.Lock()

    def recover(self, product: Product, email: str, completion: Optional[Callable] = None) -> None:
        """Request recovery for an email collected by the host; completion(sent, ErrorRecord | None)"""
        attempt = self._new_attempt(product, completion, ui_driven=False)
        self.dispatcher.call(self._run_step, self._submit, attempt, email)

    def show_recovery(self, product: Product, completion: Optional[Callable] = None) -> None:
        """Collect the email through the recovery dialog and report the result to the user"""
        attempt = self._new_attempt(product, completion, ui_driven=True)
        self.dispatcher.call(self._run_step, self._start_ui, attempt)

    def _new_attempt(self, product: Product, completion: Optional[Callable], ui_driven: bool) -> _RecoveryAttempt:
        attempt = _RecoveryAttempt(
            product=product,
            completion=OnceCallback(self.logger, completion, f"recovery of {product.product_id}"),
            ui_driven=ui_driven,
        )
        with self._lock:
            self._live.append(attempt)
        return attempt

    def _forget(self, attempt: _RecoveryAttempt) -> None:
        with self._lock:
            if attempt in self._live:
                self._live.remove(attempt)

    def _run_step(self, step: Callable, attempt: _RecoveryAttempt, *args) -> None:
        try:
            step(attempt, *args)
        except Exception as e:
            self.logger.exception(f"Unexpected error during recovery of {attempt.product.product_id}")
            self._abort(attempt, e)

    def _abort(self, attempt: _RecoveryAttempt, exc: Exception) -> None:
        attempt.finished = True
        self._forget(attempt)
        if attempt.completion.fired:
            return
        record = ServerRejectedError(f"Recovery error: {exc}", underlying=exc).record
        if not attempt.completion.present:
            self.gateway.did_error(record)
        attempt.completion(False, record)

    def abandon_all(self) -> None:
        """End every unfinished recovery as not sent; used when the engine shuts down"""
        with self._lock:
            attempts = list(self._live)
        for attempt in attempts:
            self.dispatcher.call(self._run_step, self._on_cancel, attempt)

    def _start_ui(self, attempt: _RecoveryAttempt) -> None:
        if self._reject_unsupported(attempt):
            return
        attempt.display = self.gateway.should_present(UIKind.RECOVERY, attempt.product)
        if attempt.display is None:
            self.logger.info(f"Recovery dialog for {attempt.product.product_id} suppressed by the host")
            self._finish(attempt, False)
            return
        self._prompt(attempt)

    def _prompt(self, attempt: _RecoveryAttempt, error: Optional[LicensingError] = None) -> None:
        attempt.prompts += 1
        self.renderer.show_recovery_prompt(RecoveryPrompt(
            product=attempt.product,
            display=attempt.display,
            submit=lambda email: self.dispatcher.call(self._run_step, self._submit, attempt, email),
            cancel=lambda: self.dispatcher.call(self._run_step, self._on_cancel, attempt),
            error=error.record if error is not None else None,
            attempt=attempt.prompts,
        ))

    def _reject_unsupported(self, attempt: _RecoveryAttempt) -> bool:
        if attempt.product.kind == ProductKind.SDK_PRODUCT:
            return False
        self._finish(attempt, False, UnsupportedError(
            f"License recovery is only available for SDK products, not {attempt.product.kind.value}"))
        return True

    def _submit(self, attempt: _RecoveryAttempt, email: Optional[str]) -> None:
        if attempt.finished or attempt.future is not None:
            return
        if not attempt.ui_driven and self._reject_unsupported(attempt):
            return

        email = sanitize_string_input(email, 254)
        if not validate_email(email):
            self._on_invalid_email(attempt, InvalidInputError(
                "Please enter a valid email address", code=ErrorCode.INVALID_EMAIL))
            return

        self.logger.info(f"Recovering licenses of {attempt.product.product_id} for {mask_email(email)}")
        attempt.future = self.runner.submit(
            self.vendor_api.recover_by_email,
            lambda future: self._run_step(self._on_response, attempt, future),
            attempt.product.product_id, email,
        )

    def _on_response(self, attempt: _RecoveryAttempt, future) -> None:
        attempt.future = None
        if attempt.finished:
            return
        try:
            future.result()
        except InvalidInputError as e:
            self._on_invalid_email(attempt, e)
            return
        except LicensingError as e:
            self._finish(attempt, False, e)
            return
        except Exception as e:
            self.logger.exception(f"Unexpected recovery error for {attempt.product.product_id}")
            self._finish(attempt, False, ServerRejectedError(f"Recovery error: {e}", underlying=e))
            return

        self.logger.info(f"Recovery email sent for {attempt.product.product_id}")
        if attempt.ui_driven:
            present_alert(self.gateway, self.renderer, Alert(
                alert_type=AlertType.INFO,
                title="License recovery",
                message="We have emailed your license codes to you.",
            ))
        self._finish(attempt, True)

    def _on_invalid_email(self, attempt: _RecoveryAttempt, error: InvalidInputError) -> None:
        if attempt.ui_driven and attempt.prompts - 1 < self.settings.max_input_retries:
            self._prompt(attempt, error)
            return
        self._finish(attempt, False, error)

    def _on_cancel(self, attempt: _RecoveryAttempt) -> None:
        if attempt.finished:
            return
        if attempt.future is not None:
            attempt.future.cancel()
        self.logger.info(f"Recovery for {attempt.product.product_id} abandoned")
        self._finish(attempt, False)

    def _finish(self, attempt: _RecoveryAttempt, sent: bool, error: Optional[LicensingError] = None) -> None:
        if attempt.finished:
            return
        attempt.finished = True
        self._forget(attempt)

        if attempt.ui_driven and attempt.display is not None:
            self.renderer.close(UIKind.RECOVERY, attempt.product)
            action = TriggeredAction.FINISHED if sent or error is not None else TriggeredAction.CANCEL
            self.gateway.notify_dismissed(UIKind.RECOVERY, action, attempt.product)
            if error is not None and not isinstance(error, InvalidInputError):
                present_alert(self.gateway, self.renderer, Alert(
                    alert_type=AlertType.ERROR,
                    title="License recovery failed",
                    message=error.message,
                    error=error.record,
                ))

        record = error.record if error is not None else None
        if record is not None and not attempt.completion.present:
            self.gateway.did_error(record)
        attempt.completion(sent, record)
