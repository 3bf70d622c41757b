"""
Transports to the TrueNAS middleware: WebSocket JSON-RPC and REST, plus the
connection cache and the retrying dispatcher that sit in front of them.
"""

from .connections import ConnectionCache, ConnectionKey
from .dispatcher import Dispatcher, RestRoute
from .rest import RestTransport
from .ws import WebSocketTransport

__all__ = [
    'ConnectionCache',
    'ConnectionKey',
    'Dispatcher',
    'RestRoute',
    'RestTransport',
    'WebSocketTransport',
]
