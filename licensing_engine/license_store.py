"""
License Store
Durable, encrypted record of entitlement per product and device
"""

import os
import json
import threading
import hashlib
import platform
import uuid
import base64
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import LicenseStoreError


STORE_FILE_NAME = 'licenses.enc'
STORE_VERSION = '1.0'
RECORD_ACTIVATED = 'activated'
RECORD_ABANDONED = 'abandoned'


def get_device_fingerprint() -> str:
    """Hash of stable machine identifiers, used to bind activations to this device"""
    mac_node = uuid.getnode()
    mac = ':'.join(f'{(mac_node >> (8 * (5 - i))) & 0xff:02x}' for i in range(6))
    cpu_info = platform.processor() or platform.machine() or 'Unknown'
    combined = f"{mac}|{cpu_info}|{platform.node()}|{platform.system()}"
    return hashlib.sha256(combined.encode()).hexdigest()


@dataclass
class LicenseRecord:
    """Persisted activation of one product on one device"""
    product_id: str
    license_code: str
    device_fingerprint: str
    last_verified_at: datetime
    activation_state: str = RECORD_ACTIVATED
    activation_email: Optional[str] = None
    activation_id: Optional[str] = None
    activated_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.product_id}:{self.device_fingerprint}"

    @property
    def abandoned(self) -> bool:
        return self.activation_state == RECORD_ABANDONED

    def is_within_grace(self, grace_days: int, now: Optional[datetime] = None) -> bool:
        """Whether the last successful verification is recent enough to trust offline"""
        now = now or datetime.now()
        return now - self.last_verified_at <= timedelta(days=grace_days)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['last_verified_at'] = self.last_verified_at.isoformat()
        data['activated_at'] = self.activated_at.isoformat() if self.activated_at else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LicenseRecord':
        activated_at = data.get('activated_at')
        return cls(
            product_id=data['product_id'],
            license_code=data['license_code'],
            device_fingerprint=data['device_fingerprint'],
            last_verified_at=datetime.fromisoformat(data['last_verified_at']),
            activation_state=data.get('activation_state', RECORD_ACTIVATED),
            activation_email=data.get('activation_email'),
            activation_id=data.get('activation_id'),
            activated_at=datetime.fromisoformat(activated_at) if activated_at else None,
        )


class LicenseStore:
    """
    Encrypted local license store
    Source of truth for entitlement when offline.

    Records are keyed by (product ID, device fingerprint), so saving an
    activation replaces any earlier one for the same pair. The file is
    written to the data directory and mirrored to an optional backup
    directory; reads fall back to the backup when the primary is missing.
    """

    def __init__(self, app_logger, data_dir: str, app_secret_key: str,
                 backup_dir: Optional[str] = None,
                 device_fingerprint: Optional[str] = None):
        self.logger = app_logger
        self.data_dir = data_dir
        self.backup_dir = backup_dir
        self.app_secret_key = app_secret_key
        self.device_fingerprint = device_fingerprint or get_device_fingerprint()

        self.store_file = os.path.join(data_dir, STORE_FILE_NAME)
        self.backup_file = os.path.join(backup_dir, STORE_FILE_NAME) if backup_dir else None

        self._storage_lock = threading.RLock()
        self._fernet: Optional[Fernet] = None

    def _paths(self) -> List[str]:
        return [p for p in (self.store_file, self.backup_file) if p]

    def _get_encryption_key(self) -> Fernet:
        """Derive the store key from the device fingerprint and app secret"""
        if self._fernet is None:
            password = f"{self.device_fingerprint}{self.app_secret_key}".encode()
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=b'licensing_engine_store_salt_v1',
                iterations=100000,
            )
            key = base64.urlsafe_b64encode(kdf.derive(password))
            self._fernet = Fernet(key)
        return self._fernet

    def _empty_document(self) -> Dict[str, Any]:
        return {'records': {}, 'trials': {}, 'store_version': STORE_VERSION}

    def _read_document(self) -> Dict[str, Any]:
        for path in self._paths():
            if not os.path.exists(path):
                continue
            try:
                with open(path, 'rb') as f:
                    encrypted_data = f.read()
                document = json.loads(self._get_encryption_key().decrypt(encrypted_data).decode())
            except (OSError, InvalidToken, ValueError) as e:
                self.logger.error(f"Error loading license store from {path}: {e}")
                continue

            if not isinstance(document.get('records'), dict):
                self.logger.warning(f"Invalid license store structure in {path}")
                continue
            document.setdefault('trials', {})
            return document
        return self._empty_document()

    def _write_document(self, document: Dict[str, Any]) -> None:
        encrypted_data = self._get_encryption_key().encrypt(json.dumps(document).encode())

        try:
            os.makedirs(self.data_dir, exist_ok=True)
            with open(self.store_file, 'wb') as f:
                f.write(encrypted_data)
        except OSError as e:
            raise LicenseStoreError(f"Failed to write license store: {e}", underlying=e) from e

        if self.backup_file:
            try:
                os.makedirs(self.backup_dir, exist_ok=True)
                with open(self.backup_file, 'wb') as f:
                    f.write(encrypted_data)
            except OSError as e:
                self.logger.warning(f"Failed to write license store backup to {self.backup_file}: {e}")

    def load(self, product_id: str) -> Optional[LicenseRecord]:
        """Load the non-abandoned record for this product on this device"""
        with self._storage_lock:
            document = self._read_document()
            data = document['records'].get(f"{product_id}:{self.device_fingerprint}")
            if not data:
                return None
            try:
                record = LicenseRecord.from_dict(data)
            except (KeyError, ValueError) as e:
                self.logger.error(f"Discarding malformed license record for {product_id}: {e}")
                return None
            if record.abandoned:
                return None
            return record

    def save(self, record: LicenseRecord) -> None:
        if record.device_fingerprint != self.device_fingerprint:
            raise LicenseStoreError("License record belongs to a different device")
        with self._storage_lock:
            document = self._read_document()
            document['records'][record.key] = record.to_dict()
            self._write_document(document)
        self.logger.info(f"License record saved for product {record.product_id}")

    def delete(self, product_id: str) -> bool:
        with self._storage_lock:
            document = self._read_document()
            removed = document['records'].pop(f"{product_id}:{self.device_fingerprint}", None)
            if removed is None:
                return False
            self._write_document(document)
        self.logger.info(f"License record removed for product {product_id}")
        return True

    def all_records(self) -> List[LicenseRecord]:
        """All usable records bound to this device"""
        with self._storage_lock:
            document = self._read_document()
        records = []
        for data in document['records'].values():
            try:
                record = LicenseRecord.from_dict(data)
            except (KeyError, ValueError) as e:
                self.logger.warning(f"Skipping malformed license record: {e}")
                continue
            if record.device_fingerprint == self.device_fingerprint and not record.abandoned:
                records.append(record)
        return records

    def trial_started_at(self, product_id: str, create: bool = True) -> Optional[datetime]:
        """First-run date of the product's trial, recorded on first query"""
        with self._storage_lock:
            document = self._read_document()
            started = document['trials'].get(product_id)
            if started:
                return datetime.fromisoformat(started)
            if not create:
                return None
            now = datetime.now()
            document['trials'][product_id] = now.isoformat()
            try:
                self._write_document(document)
            except LicenseStoreError as e:
                self.logger.warning(f"Could not persist trial start for {product_id}: {e}")
            else:
                self.logger.info(f"Started trial for product {product_id}")
            return now

    def clear(self) -> bool:
        """Remove every store file"""
        cleared = False
        with self._storage_lock:
            for path in self._paths():
                try:
                    if os.path.exists(path):
                        os.remove(path)
                        cleared = True
                except OSError as e:
                    self.logger.warning(f"Failed to clear license store at {path}: {e}")
        if cleared:
            self.logger.info("License store cleared")
        return cleared
