import os
import yaml
from dataclasses import dataclass
from typing import Optional

@dataclass
class NodeConfig:
    host: str = "0.0.0.0"
    port: int = 4445

@dataclass
class TransferConfig:
    max_payload: int = 548
    receive_timeout_sec: Optional[float] = 5.0
    selection_timeout_sec: Optional[float] = 300.0
    max_restarts: Optional[int] = 10
    hash_algorithm: str = "md5"

    def __post_init__(self):
        if self.max_payload <= 0:
            raise ValueError(f"max_payload must be positive, got {self.max_payload}")

@dataclass
class ProviderConfig:
    data_dir: str = "data"
    max_workers: int = 25

@dataclass
class RequesterConfig:
    download_dir: str = "downloads"

@dataclass
class StorageConfig:
    db_path: Optional[str] = None

@dataclass
class FerryConfig:
    node: NodeConfig
    transfer: TransferConfig
    provider: ProviderConfig
    requester: RequesterConfig
    storage: StorageConfig

def load_config(config_path: Optional[str] = None) -> FerryConfig:
    """Load configuration from file or use defaults."""
    if config_path and os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        node_config = NodeConfig(**config_data.get('node', {}))
        transfer_config = TransferConfig(**config_data.get('transfer', {}))
        provider_config = ProviderConfig(**config_data.get('provider', {}))
        requester_config = RequesterConfig(**config_data.get('requester', {}))
        storage_config = StorageConfig(**config_data.get('storage', {}))
    else:
        node_config = NodeConfig()
        transfer_config = TransferConfig()
        provider_config = ProviderConfig()
        requester_config = RequesterConfig()
        storage_config = StorageConfig()

    return FerryConfig(
        node=node_config,
        transfer=transfer_config,
        provider=provider_config,
        requester=requester_config,
        storage=storage_config,
    )
