"""
Vendor API Client
Request/response access to the vendor licensing backend
"""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter

from . import __version__
from .checkout import CheckoutOptions, CheckoutSessionHandle
from .errors import (
    ErrorCode,
    InvalidInputError,
    LicensingError,
    NetworkFailureError,
    ServerRejectedError,
)
from .input_validation import mask_email


class ValidationStatus(Enum):
    VALID = "valid"
    INVALID = "invalid"
    UNKNOWN = "unknown"


@dataclass
class ActivationResponse:
    """Successful activation of a license code on this device"""
    license_code: str
    activation_id: Optional[str] = None
    activated_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


# Vendor error codes that mean the user typed something wrong
_INPUT_ERROR_CODES = {
    'invalid_license_code': ErrorCode.INVALID_LICENSE_CODE,
    'license_code_not_found': ErrorCode.INVALID_LICENSE_CODE,
    'invalid_email': ErrorCode.INVALID_EMAIL,
    'email_not_found': ErrorCode.INVALID_EMAIL,
}

MAX_REQUEST_BYTES = 10240


class VendorApiClient:
    """
    Client for the vendor licensing API.

    Every call is a single attempt; NetworkFailureError is left to the
    caller to retry by re-invoking the operation.
    """

    def __init__(self, app_logger, vendor_id: str, api_key: str, api_url: str,
                 checkout_url: str, timeout: float = 15):
        self.logger = app_logger
        self.vendor_id = vendor_id
        self.api_key = api_key
        self.api_url = api_url.rstrip('/')
        self.checkout_url = checkout_url.rstrip('/')
        self.timeout = timeout

        self._session: Optional[requests.Session] = None
        self._session_lock = threading.Lock()

    def get_session(self) -> requests.Session:
        """Get or create a shared HTTP session with connection pooling"""
        with self._session_lock:
            if self._session is None:
                session = requests.Session()
                adapter = HTTPAdapter(
                    pool_connections=2,
                    pool_maxsize=5,
                    max_retries=0,
                )
                session.mount('https://', adapter)
                session.mount('http://', adapter)
                session.headers.update({
                    'Content-Type': 'application/json',
                    'User-Agent': f'licensing-engine/{__version__}',
                    'Accept': 'application/json',
                })
                self._session = session
            return self._session

    def close(self) -> None:
        with self._session_lock:
            if self._session is not None:
                self._session.close()
                self._session = None

    def _credentials(self) -> Dict[str, str]:
        return {'vendor_id': self.vendor_id, 'vendor_auth_code': self.api_key}

    def _call(self, endpoint: str, data: Dict[str, Any], method: str = 'POST') -> Dict[str, Any]:
        """Perform one API request and return the ``response`` part of the success envelope"""
        payload = dict(self._credentials(), **data)
        try:
            if len(json.dumps(payload)) > MAX_REQUEST_BYTES:
                raise ServerRejectedError(f"Request data too large for {endpoint}")
        except (TypeError, ValueError) as e:
            raise ServerRejectedError(f"Unable to serialize request for {endpoint}", underlying=e) from e

        url = f"{self.api_url}{endpoint}"
        session = self.get_session()
        self.logger.debug(f"Calling vendor API: {method} {url}")

        try:
            if method == 'GET':
                response = session.get(url, params=payload, timeout=self.timeout)
            else:
                response = session.post(url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            self.logger.warning(f"Vendor API timeout for {endpoint}")
            raise NetworkFailureError(f"Timed out calling {endpoint}", underlying=e) from e
        except requests.exceptions.ConnectionError as e:
            self.logger.warning(f"Vendor API connection error for {endpoint}")
            raise NetworkFailureError("Could not reach the licensing server", underlying=e) from e
        except requests.exceptions.RequestException as e:
            self.logger.error(f"Vendor API request error for {endpoint}: {e}")
            raise NetworkFailureError(f"Request to {endpoint} failed", underlying=e) from e

        if response.status_code == 429 or response.status_code >= 500:
            self.logger.warning(f"Vendor API server error {response.status_code} for {endpoint}")
            raise ServerRejectedError(
                f"Licensing server error ({response.status_code})",
                code=ErrorCode.SERVER_ERROR,
            )

        try:
            body = response.json()
        except ValueError as e:
            self.logger.error(f"Vendor API returned invalid JSON for {endpoint}")
            raise ServerRejectedError(f"Invalid response from {endpoint}", code=ErrorCode.SERVER_ERROR,
                                      underlying=e) from e

        if not isinstance(body, dict):
            raise ServerRejectedError(f"Unexpected response from {endpoint}", code=ErrorCode.SERVER_ERROR)

        if response.status_code == 200 and body.get('success'):
            return body.get('response') or {}

        raise self._error_from_envelope(endpoint, response.status_code, body)

    def _error_from_envelope(self, endpoint: str, status_code: int, body: Dict[str, Any]) -> LicensingError:
        error_info = body.get('error') or {}
        if not isinstance(error_info, dict):
            error_info = {'message': str(error_info)}
        vendor_code = str(error_info.get('code', 'unknown_error')).lower()
        message = error_info.get('message') or f"Request to {endpoint} was rejected"

        self.logger.warning(f"Vendor API rejected {endpoint} ({status_code}): {vendor_code} - {message}")

        if vendor_code in _INPUT_ERROR_CODES:
            return InvalidInputError(message, code=_INPUT_ERROR_CODES[vendor_code])
        return ServerRejectedError(message)

    def activate(self, product_id: str, license_code: str, email: Optional[str] = None,
                 device_fingerprint: Optional[str] = None) -> ActivationResponse:
        self.logger.info(f"Activating product {product_id} for {mask_email(email)}")
        data = {'product_id': product_id, 'license_code': license_code}
        if email:
            data['email'] = email
        if device_fingerprint:
            data['uuid'] = device_fingerprint

        result = self._call('/license/activate', data)
        activated_at = result.get('activated')
        try:
            activated_at = datetime.fromisoformat(activated_at) if activated_at else None
        except (TypeError, ValueError):
            activated_at = None
        return ActivationResponse(
            license_code=result.get('license_code') or license_code,
            activation_id=result.get('activation_id'),
            activated_at=activated_at,
            raw=result,
        )

    def deactivate(self, product_id: str, license_code: str,
                   activation_id: Optional[str] = None) -> None:
        self.logger.info(f"Deactivating product {product_id}")
        data = {'product_id': product_id, 'license_code': license_code}
        if activation_id:
            data['activation_id'] = activation_id
        self._call('/license/deactivate', data)

    def validate(self, product_id: str, license_code: str,
                 activation_id: Optional[str] = None,
                 device_fingerprint: Optional[str] = None) -> ValidationStatus:
        """Verify a license; network problems yield UNKNOWN rather than raising"""
        data = {'product_id': product_id, 'license_code': license_code}
        if activation_id:
            data['activation_id'] = activation_id
        if device_fingerprint:
            data['uuid'] = device_fingerprint
        try:
            result = self._call('/license/verify', data)
        except InvalidInputError:
            return ValidationStatus.INVALID
        except LicensingError as e:
            self.logger.warning(f"License verification for {product_id} inconclusive: {e.message}")
            return ValidationStatus.UNKNOWN

        return ValidationStatus.VALID if result.get('valid') else ValidationStatus.INVALID

    def recover_by_email(self, product_id: str, email: str) -> None:
        self.logger.info(f"Requesting license recovery for {mask_email(email)}")
        self._call('/license/recover', {'product_id': product_id, 'email': email})

    def order_status(self, checkout_id: str) -> Dict[str, Any]:
        """Order information for a completed checkout"""
        return self._call('/order', {'checkout_id': checkout_id}, method='GET')

    def subscribe_email(self, product_id: str, email: str, consent: bool) -> None:
        self._call('/audience/subscribe', {
            'product_id': product_id,
            'email': email,
            'marketing_consent': 1 if consent else 0,
        })

    def open_checkout_session(self, product, options: Optional[CheckoutOptions] = None) -> CheckoutSessionHandle:
        """Build the hosted checkout for product; no request is made until it is rendered"""
        options = options or CheckoutOptions()
        params = {'vendor': self.vendor_id}
        params.update(options.to_params())
        url = f"{self.checkout_url}/checkout/product/{product.product_id}?{urlencode(params)}"
        return CheckoutSessionHandle(product_id=product.product_id, checkout_url=url, options=options)
