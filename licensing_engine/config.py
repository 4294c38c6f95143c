"""
Licensing Engine Configuration
Loads environment variables and provides defaults
"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# .env.local is optional; system environment variables always apply
load_dotenv('.env.local')


def _env_bool(name, default='false'):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    # Vendor account
    VENDOR_ID = os.environ.get('LICENSING_VENDOR_ID')
    API_KEY = os.environ.get('LICENSING_API_KEY')
    API_URL = os.environ.get('LICENSING_API_URL', 'https://licensing.example.com/api')
    CHECKOUT_URL = os.environ.get('LICENSING_CHECKOUT_URL', 'https://checkout.example.com')

    # Local storage
    DATA_DIR = os.environ.get('LICENSING_DATA_DIR') or os.path.join(os.path.expanduser('~'), '.licensing_engine')
    BACKUP_DIR = os.environ.get('LICENSING_BACKUP_DIR')
    SECRET_KEY = os.environ.get('LICENSING_SECRET_KEY') or 'dev-secret-key-change-in-production'

    # Behaviour
    DEBUG = _env_bool('LICENSING_DEBUG')
    FORCE_EXIT = _env_bool('LICENSING_FORCE_EXIT')
    MAX_INPUT_RETRIES = int(os.environ.get('LICENSING_MAX_INPUT_RETRIES', 3))
    CHECKOUT_LOAD_TIMEOUT = float(os.environ.get('LICENSING_CHECKOUT_LOAD_TIMEOUT', 30))
    ORDER_CONFIRMATION_TIMEOUT = float(os.environ.get('LICENSING_ORDER_CONFIRMATION_TIMEOUT', 60))
    ORDER_POLL_INTERVAL = float(os.environ.get('LICENSING_ORDER_POLL_INTERVAL', 2))
    OFFLINE_GRACE_DAYS = int(os.environ.get('LICENSING_OFFLINE_GRACE_DAYS', 10))
    API_TIMEOUT = float(os.environ.get('LICENSING_API_TIMEOUT', 15))

    @staticmethod
    def validate_config():
        """Validate that all required environment variables are set"""
        required_vars = ['VENDOR_ID', 'API_KEY']

        missing_vars = [var for var in required_vars if not getattr(Config, var)]
        if missing_vars:
            names = ', '.join(f'LICENSING_{var}' for var in missing_vars)
            raise ValueError(f"Missing required environment variables: {names}")

        return True


@dataclass(frozen=True)
class EngineSettings:
    """Typed settings consumed by the engine and its state machines"""
    vendor_id: str = ''
    api_key: str = ''
    api_url: str = 'https://licensing.example.com/api'
    checkout_url: str = 'https://checkout.example.com'
    data_dir: str = os.path.join(os.path.expanduser('~'), '.licensing_engine')
    backup_dir: Optional[str] = None
    secret_key: str = 'dev-secret-key-change-in-production'
    debug: bool = False
    can_force_exit: bool = False
    max_input_retries: int = 3
    checkout_load_timeout: float = 30
    order_confirmation_timeout: float = 60
    order_poll_interval: float = 2
    offline_grace_days: int = 10
    api_timeout: float = 15

    def __post_init__(self):
        if self.max_input_retries < 0:
            raise ValueError("max_input_retries cannot be negative")
        for name in ('checkout_load_timeout', 'order_confirmation_timeout', 'order_poll_interval', 'api_timeout'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @classmethod
    def from_config(cls, config=Config) -> 'EngineSettings':
        return cls(
            vendor_id=config.VENDOR_ID or '',
            api_key=config.API_KEY or '',
            api_url=config.API_URL,
            checkout_url=config.CHECKOUT_URL,
            data_dir=config.DATA_DIR,
            backup_dir=config.BACKUP_DIR,
            secret_key=config.SECRET_KEY,
            debug=config.DEBUG,
            can_force_exit=config.FORCE_EXIT,
            max_input_retries=config.MAX_INPUT_RETRIES,
            checkout_load_timeout=config.CHECKOUT_LOAD_TIMEOUT,
            order_confirmation_timeout=config.ORDER_CONFIRMATION_TIMEOUT,
            order_poll_interval=config.ORDER_POLL_INTERVAL,
            offline_grace_days=config.OFFLINE_GRACE_DAYS,
            api_timeout=config.API_TIMEOUT,
        )
