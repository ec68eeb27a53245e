"""
Configuration management for the swap engine.

The engine receives a Config at construction and reads nothing from the
environment; switching networks means loading a different file.
"""
import json
import os
from dataclasses import dataclass, asdict

from cpswap.crypto import NULL_ADDRESS


def _address(value: str) -> bytes:
    if not value:
        return NULL_ADDRESS
    raw = bytes.fromhex(value)
    if len(raw) != len(NULL_ADDRESS):
        raise ValueError(f"Address must be 32 bytes, got {len(raw)}")
    return raw


@dataclass
class NetworkConfig:
    """Network configuration."""
    name: str = "localnet"
    native_mint: str = ""  # base value unit, pays pool creation fees
    admin: str = ""  # may create fee schedules and discount configs

    @property
    def native_mint_address(self) -> bytes:
        return _address(self.native_mint)

    @property
    def admin_address(self) -> bytes:
        return _address(self.admin)


@dataclass
class PricingConfig:
    """Reference assets for reserve-derived USD prices."""
    usd_mint: str = ""
    bridge_mint: str = ""
    reference_fee_schedule: int = 0  # pools under this index act as price references

    @property
    def usd_mint_address(self) -> bytes:
        return _address(self.usd_mint)

    @property
    def bridge_mint_address(self) -> bytes:
        return _address(self.bridge_mint)


@dataclass
class DatabaseConfig:
    """Database configuration."""
    path: str = "./cpswap_data"
    write_buffer_size: int = 64 * 1024 * 1024  # 64MB
    max_open_files: int = 1000
    compression: str = "snappy"


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


@dataclass
class Config:
    """Main configuration."""
    network: NetworkConfig
    pricing: PricingConfig
    database: DatabaseConfig
    monitoring: MonitoringConfig

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            network=NetworkConfig(),
            pricing=PricingConfig(),
            database=DatabaseConfig(),
            monitoring=MonitoringConfig()
        )

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        return cls(
            network=NetworkConfig(**data.get('network', {})),
            pricing=PricingConfig(**data.get('pricing', {})),
            database=DatabaseConfig(**data.get('database', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {}))
        )

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'network': asdict(self.network),
            'pricing': asdict(self.pricing),
            'database': asdict(self.database),
            'monitoring': asdict(self.monitoring)
        }
