"""
Product Registry
Entitlement snapshot and static fallback configuration per product
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List


class ProductKind(Enum):
    """Kinds of vendor products"""
    SDK_PRODUCT = "sdk_product"
    SUBSCRIPTION_PLAN = "subscription_plan"
    STANDARD_PRODUCT = "standard_product"


class EntitlementState(Enum):
    """Right-to-use state of a product"""
    ACTIVATED = "activated"
    UNACTIVATED = "unactivated"
    UNKNOWN = "unknown"


class TrialType(Enum):
    NONE = "none"
    TIME_LIMITED = "time_limited"


@dataclass(frozen=True)
class ProductConfiguration:
    """
    Static product information used on first run and when offline
    """
    product_name: str = ""
    vendor_name: str = ""
    price: Optional[float] = None
    currency: str = "USD"
    trial_length_days: int = 0
    trial_type: TrialType = TrialType.NONE

    @property
    def has_trial(self) -> bool:
        return self.trial_type == TrialType.TIME_LIMITED and self.trial_length_days > 0


@dataclass
class Product:
    """
    Mutable entitlement snapshot for a single product.
    Updated in place by the activation state machine.
    """

    product_id: str
    kind: ProductKind = ProductKind.SDK_PRODUCT
    configuration: ProductConfiguration = field(default_factory=ProductConfiguration)

    # Entitlement
    entitlement: EntitlementState = EntitlementState.UNKNOWN
    license_code: Optional[str] = None
    activation_email: Optional[str] = None
    activation_id: Optional[str] = None
    activated_at: Optional[datetime] = None

    # Trial
    trial_started_at: Optional[datetime] = None
    trial_days_remaining: Optional[int] = None

    # Verification metadata
    last_verified_at: Optional[datetime] = None
    validated_this_session: bool = False

    @property
    def activated(self) -> bool:
        return self.entitlement == EntitlementState.ACTIVATED

    @property
    def name(self) -> str:
        return self.configuration.product_name or self.product_id

    @property
    def trial_expired(self) -> bool:
        if not self.configuration.has_trial:
            return True
        return self.trial_days_remaining is not None and self.trial_days_remaining <= 0

    @property
    def has_access(self) -> bool:
        """Activated, or still inside the trial period"""
        return self.activated or not self.trial_expired

    def update_trial(self, started_at: Optional[datetime], now: Optional[datetime] = None) -> None:
        self.trial_started_at = started_at
        if started_at is None or not self.configuration.has_trial:
            self.trial_days_remaining = None
            return
        now = now or datetime.now()
        days_elapsed = (now - started_at).days
        self.trial_days_remaining = max(0, self.configuration.trial_length_days - days_elapsed)

    def mark_activated(self, license_code: str, email: Optional[str],
                       activation_id: Optional[str], activated_at: Optional[datetime],
                       verified_at: Optional[datetime]) -> None:
        self.entitlement = EntitlementState.ACTIVATED
        self.license_code = license_code
        self.activation_email = email
        self.activation_id = activation_id
        self.activated_at = activated_at
        self.last_verified_at = verified_at

    def mark_unactivated(self) -> None:
        self.entitlement = EntitlementState.UNACTIVATED
        self.license_code = None
        self.activation_email = None
        self.activation_id = None
        self.activated_at = None
        self.last_verified_at = None

    def get_user_message(self) -> str:
        """Get user-friendly entitlement message"""
        if self.activated:
            return f"{self.name} is activated"
        if self.entitlement == EntitlementState.UNKNOWN:
            return "License could not be verified - please connect to the internet"
        if not self.configuration.has_trial:
            return f"{self.name} requires a license"
        if self.trial_expired:
            return "Trial period expired"
        return f"Trial: {self.trial_days_remaining} days remaining"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "kind": self.kind.value,
            "name": self.name,
            "price": self.configuration.price,
            "currency": self.configuration.currency,
            "entitlement": self.entitlement.value,
            "activated": self.activated,
            "license_code": self.license_code,
            "activation_email": self.activation_email,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "last_verified_at": self.last_verified_at.isoformat() if self.last_verified_at else None,
            "validated_this_session": self.validated_this_session,
            "trial_days_remaining": self.trial_days_remaining,
            "trial_expired": self.trial_expired,
            "has_access": self.has_access,
            "user_message": self.get_user_message(),
        }


class ProductRegistry:
    """Creates products on first reference and keeps them for the engine's lifetime"""

    def __init__(self):
        self._products: Dict[str, Product] = {}
        self._lock = threading.Lock()

    def get_or_create(self, product_id: str, kind: ProductKind = ProductKind.SDK_PRODUCT,
                      configuration: Optional[ProductConfiguration] = None) -> Product:
        if not product_id or not isinstance(product_id, str):
            raise ValueError("Product ID must be a non-empty string")
        with self._lock:
            product = self._products.get(product_id)
            if product is None:
                product = Product(
                    product_id=product_id,
                    kind=kind,
                    configuration=configuration or ProductConfiguration(),
                )
                self._products[product_id] = product
            elif configuration is not None:
                product.configuration = configuration
            return product

    def get(self, product_id: str) -> Optional[Product]:
        with self._lock:
            return self._products.get(product_id)

    def all_products(self) -> List[Product]:
        with self._lock:
            return list(self._products.values())

    def __contains__(self, product_id: str) -> bool:
        with self._lock:
            return product_id in self._products
