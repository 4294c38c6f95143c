"""
Licensing Engine
Client-side licensing and purchase orchestration for desktop products
"""

__version__ = "1.0.0"

from .activation import ActivationPhase, ActivationState, ActivationStateMachine
from .checkout import CheckoutOptions, CheckoutResult, CheckoutSession, CheckoutSessionHandle, CheckoutState
from .config import Config, EngineSettings
from .dispatch import UIDispatcher
from .engine import LicensingEngine
from .errors import (
    BusyError,
    ErrorRecord,
    InvalidInputError,
    InvalidStateError,
    LicenseStoreError,
    LicensingError,
    NetworkFailureError,
    ServerRejectedError,
    UnsupportedError,
)
from .license_store import LicenseRecord, LicenseStore
from .log_config import configure_logging, enable_debug
from .presentation import (
    Alert,
    AlertType,
    DialogRenderer,
    DisplayConfiguration,
    DisplayType,
    PresentationGateway,
    TriggeredAction,
    UIKind,
)
from .product import EntitlementState, Product, ProductConfiguration, ProductKind, TrialType
from .recovery import RecoveryFlowController
from .vendor_api import ValidationStatus, VendorApiClient

__all__ = [
    'LicensingEngine',
    'EngineSettings',
    'Config',
    'Product',
    'ProductConfiguration',
    'ProductKind',
    'TrialType',
    'EntitlementState',
    'ActivationState',
    'ActivationPhase',
    'ActivationStateMachine',
    'CheckoutOptions',
    'CheckoutResult',
    'CheckoutSession',
    'CheckoutSessionHandle',
    'CheckoutState',
    'RecoveryFlowController',
    'LicenseRecord',
    'LicenseStore',
    'VendorApiClient',
    'ValidationStatus',
    'UIDispatcher',
    'PresentationGateway',
    'DialogRenderer',
    'DisplayConfiguration',
    'DisplayType',
    'UIKind',
    'TriggeredAction',
    'Alert',
    'AlertType',
    'ErrorRecord',
    'LicensingError',
    'NetworkFailureError',
    'InvalidInputError',
    'ServerRejectedError',
    'BusyError',
    'UnsupportedError',
    'InvalidStateError',
    'LicenseStoreError',
    'configure_logging',
    'enable_debug',
]
