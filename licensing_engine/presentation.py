"""
Presentation Gateway
The seam between orchestration (this package) and rendering (the host).

The gateway decides whether and how UI is shown; the renderer draws it.
Both are capability sets: every method has a default here, so a host only
overrides what it cares about.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .errors import ErrorRecord


class UIKind(Enum):
    PRODUCT = "product"
    LICENSE = "license"
    CHECKOUT = "checkout"
    RECOVERY = "recovery"
    OTHER = "other"


class TriggeredAction(Enum):
    """Action the user took to dismiss a dialog"""
    SHOW_PRODUCT_ACCESS = "show_product_access"
    SHOW_CHECKOUT = "show_checkout"
    SHOW_ACTIVATE = "show_activate"
    CONTINUE_TRIAL = "continue_trial"
    ACTIVATED = "activated"
    DEACTIVATED = "deactivated"
    CANCEL = "cancel"
    FINISHED = "finished"


class DisplayType(Enum):
    WINDOW = "window"
    SHEET = "sheet"


@dataclass(frozen=True)
class DisplayConfiguration:
    display_type: DisplayType = DisplayType.WINDOW
    hide_navigation_buttons: bool = False
    parent: Any = None


class AlertType(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Alert:
    alert_type: AlertType
    title: str
    message: str
    error: Optional[ErrorRecord] = None


@dataclass
class LicensePrompt:
    """Request for the user's email and license code"""
    product: Any
    display: DisplayConfiguration
    submit: Callable[[Optional[str], Optional[str]], None]
    cancel: Callable[[], None]
    email: Optional[str] = None
    license_code: Optional[str] = None
    error: Optional[ErrorRecord] = None
    attempt: int = 1


@dataclass
class RecoveryPrompt:
    """Request for the purchase email used to recover licenses"""
    product: Any
    display: DisplayConfiguration
    submit: Callable[[Optional[str]], None]
    cancel: Callable[[], None]
    error: Optional[ErrorRecord] = None
    attempt: int = 1


@dataclass
class ProductAccessPrompt:
    """Product information dialog; choose() receives the user's TriggeredAction"""
    product: Any
    display: DisplayConfiguration
    choose: Callable[[TriggeredAction], None]
    options: list = field(default_factory=list)


class PresentationGateway:
    """
    Host decisions about UI.

    Defaults: present every dialog in a window, allow every alert, log
    dismissals and log errors that had no nearer handler.
    """

    def __init__(self, app_logger=None):
        self.logger = app_logger

    def should_present(self, ui_kind: UIKind, product) -> Optional[DisplayConfiguration]:
        """Return how to present ui_kind for product, or None to suppress it"""
        return DisplayConfiguration()

    def notify_dismissed(self, ui_kind: UIKind, triggered_action: TriggeredAction, product) -> None:
        if self.logger:
            self.logger.debug(f"{ui_kind.value} UI dismissed with {triggered_action.value} for {product.product_id}")

    def should_show_alert(self, alert: Alert) -> bool:
        return True

    def did_error(self, error: ErrorRecord) -> None:
        """Global error channel for errors without a completion handler"""
        if self.logger:
            self.logger.warning(f"Unhandled licensing error {error.code}: {error.message}")


class DialogRenderer:
    """
    Host-owned rendering. Prompts carry submit/cancel callables that the
    host invokes once the user acts; they may be invoked from any thread.

    Every method has a working default: prompts are cancelled, the product
    dialog is dismissed with CANCEL and checkouts report a load failure,
    so a host only overrides the dialogs it actually draws.
    """

    def show_license_prompt(self, prompt: LicensePrompt) -> None:
        prompt.cancel()

    def show_recovery_prompt(self, prompt: RecoveryPrompt) -> None:
        prompt.cancel()

    def show_product_access(self, prompt: ProductAccessPrompt) -> None:
        prompt.choose(TriggeredAction.CANCEL)

    def show_checkout(self, session, display: DisplayConfiguration) -> None:
        session.load_failed("No renderer available for the checkout")

    def show_alert(self, alert: Alert) -> None:
        pass

    def close(self, ui_kind: UIKind, product) -> None:
        pass


class NullDialogRenderer(DialogRenderer):
    """Renders nothing; used when the host supplies no renderer"""


def present_alert(gateway: PresentationGateway, renderer: DialogRenderer, alert: Alert) -> bool:
    """Show alert unless the gateway vetoes it"""
    if not gateway.should_show_alert(alert):
        return False
    renderer.show_alert(alert)
    return True
