"""
Collection Settings

Loads the wallet collection configuration from (lowest to highest precedence):
1. Dataclass defaults
2. YAML file (collection_config.yaml)
3. Environment variables (a .env file is honoured via python-dotenv)

All required options must be present and non-empty; validate() fails fast
instead of letting the core derive wallets from an empty seed.
"""

import os
from dataclasses import dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger
from web3 import Web3

from .exceptions import ConfigurationError, InvalidSeed
from .units import to_decimal

DEFAULT_CONFIG_PATH = "collection_config.yaml"

# BSC mainnet USDT (BEP-20, 18 decimals)
DEFAULT_TOKEN_ADDRESS = "0x55d398326f99059fF775485246999027B3197955"

# Environment variable -> settings field
ENV_MAPPING = {
    'BSC_RPC_URL': 'rpc_url',
    'USDT_CONTRACT_ADDRESS': 'token_address',
    'BSC_PRIVATE_KEY': 'operational_private_key',
    'ADMIN_FEE_WALLET': 'admin_fee_wallet',
    'GLOBAL_ADMIN_WALLET': 'collection_wallet',
    'WALLET_SEED': 'wallet_seed',
    'MIN_DEPOSIT_USDT': 'minimum_deposit',
    'MAX_DEPOSIT_USDT': 'maximum_deposit',
    'MIN_COLLECTIBLE_USDT': 'minimum_collectible',
    'GAS_TOP_UP_BNB': 'gas_top_up_amount',
    'BSC_CHAIN_ID': 'chain_id',
    'SWEEP_DELAY_SECONDS': 'sweep_delay_seconds',
}

SECRET_FIELDS = ('operational_private_key', 'wallet_seed')


@dataclass
class CollectionSettings:
    """Wallet collection configuration"""
    # Required
    rpc_url: str = ""
    token_address: str = DEFAULT_TOKEN_ADDRESS
    operational_private_key: str = field(default="", repr=False)
    admin_fee_wallet: str = ""
    collection_wallet: str = ""
    wallet_seed: str = field(default="", repr=False)

    # Thresholds (display units)
    minimum_deposit: Decimal = Decimal("5")
    maximum_deposit: Decimal = Decimal("50000")
    minimum_collectible: Decimal = Decimal("0.01")
    gas_top_up_amount: Decimal = Decimal("0.002")
    gas_floor: Decimal = Decimal("0.001")
    distribution_gas_floor: Decimal = Decimal("0.002")
    native_sweep_reserve: Decimal = Decimal("0.0005")
    minimum_native_collectible: Decimal = Decimal("0")
    deposit_fee_rate: Decimal = Decimal("0.01")
    amount_tolerance: Decimal = Decimal("0.01")

    # Chain
    chain_id: int = 56
    token_decimals: int = 18
    native_decimals: int = 18
    rpc_timeout_seconds: float = 30.0

    # Timing
    sweep_delay_seconds: float = 1.0
    verify_max_attempts: int = 10
    verify_delay_seconds: float = 3.0
    receipt_max_attempts: int = 20
    receipt_delay_seconds: float = 3.0

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if f.type is Decimal and not isinstance(value, Decimal):
                setattr(self, f.name, to_decimal(value))
            elif f.type is int and not isinstance(value, int):
                setattr(self, f.name, int(value))
            elif f.type is float and not isinstance(value, float):
                setattr(self, f.name, float(value))
            elif f.type is str and value is None:
                setattr(self, f.name, "")

    def validate(self) -> 'CollectionSettings':
        """
        Validate settings, raising on the first unusable configuration

        Raises:
            InvalidSeed: wallet_seed is empty
            ConfigurationError: any other option is missing or invalid
        """
        if not self.wallet_seed or not self.wallet_seed.strip():
            raise InvalidSeed("WALLET_SEED is not configured; refusing to derive custodial wallets")

        problems: List[str] = []

        for name in ('rpc_url', 'token_address', 'operational_private_key',
                     'admin_fee_wallet', 'collection_wallet'):
            if not getattr(self, name).strip():
                problems.append(f"{name} is required")

        for name in ('token_address', 'admin_fee_wallet', 'collection_wallet'):
            value = getattr(self, name).strip()
            if value and not Web3.is_address(value):
                problems.append(f"{name} is not a valid address: {value}")

        for name in ('minimum_deposit', 'minimum_collectible', 'gas_top_up_amount',
                     'gas_floor', 'verify_max_attempts', 'receipt_max_attempts'):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be positive")

        if self.maximum_deposit < self.minimum_deposit:
            problems.append("maximum_deposit must not be below minimum_deposit")

        if not (0 <= self.deposit_fee_rate < 1):
            problems.append("deposit_fee_rate must be in [0, 1)")

        if problems:
            raise ConfigurationError("Invalid configuration: " + "; ".join(problems))

        return self

    def to_dict(self, mask_secrets: bool = True) -> Dict:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in SECRET_FIELDS and mask_secrets:
                value = "***" if value else ""
            elif isinstance(value, Decimal):
                value = str(value)
            data[f.name] = value
        return data


def _load_yaml(config_path: Path) -> Dict:
    """Load settings overrides from YAML; a missing file is not an error"""
    if not config_path.exists():
        logger.debug(f"No config file at {config_path}, using defaults and environment")
        return {}

    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")

    # Allow the options to live under a top-level 'collection' key
    if isinstance(data.get('collection'), dict):
        data = data['collection']

    logger.info(f"Loaded collection config from {config_path}")
    return data


def load_settings(
    config_path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
    validate: bool = True
) -> CollectionSettings:
    """
    Build settings from defaults, YAML file and environment

    Args:
        config_path: Path to YAML config (default: collection_config.yaml)
        env: Environment mapping (default: os.environ)
        use_dotenv: Load a .env file into the environment first
        validate: Run validate() before returning

    Returns:
        CollectionSettings
    """
    if use_dotenv and env is None:
        load_dotenv()
    env = os.environ if env is None else env

    known = {f.name for f in fields(CollectionSettings)}
    values: Dict = {}

    file_values = _load_yaml(Path(config_path or DEFAULT_CONFIG_PATH))
    unknown = set(file_values) - known
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
    values.update({k: v for k, v in file_values.items() if k in known})

    for env_name, field_name in ENV_MAPPING.items():
        value = env.get(env_name)
        if value is not None and value.strip() != "":
            values[field_name] = value.strip()

    try:
        settings = CollectionSettings(**values)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}")

    if validate:
        settings.validate()

    return settings
