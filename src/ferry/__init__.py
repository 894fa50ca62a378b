"""
Ferry: catalog-driven reliable file transfer over UDP

A provider advertises a catalog of files; a requester picks one and receives
it with:
- a rendezvous address that hands every requester its own dedicated channel
- stop-and-wait acknowledgment of every packet
- a whole-file digest check, restarting the transfer on any failure
- SQLite history of finished transfers
"""

__version__ = "0.1.0"

from .listener import NegotiationListener, create_listener
from .requester import RequesterOrchestrator
from .provider import ProviderSession
from .config import FerryConfig, load_config

__all__ = [
    'NegotiationListener',
    'create_listener',
    'RequesterOrchestrator',
    'ProviderSession',
    'FerryConfig',
    'load_config',
]
