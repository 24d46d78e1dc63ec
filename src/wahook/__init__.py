"""wahook - multi-tenant WhatsApp webhook gateway.

Fans protocol events (received messages and session lifecycle changes) out
to per-tenant callback URLs, authenticated with each tenant's own scheme,
and optionally to a single process-wide legacy callback.

Quick Start:
    >>> from wahook import GatewayConfig, create_app
    >>> app = create_app(GatewayConfig(), client=MyWhatsAppClient())
"""

__version__ = "0.1.0"

from wahook.app import create_app
from wahook.config import GatewayConfig
from wahook.dispatcher import EventDispatcher
from wahook.protocol import WhatsAppClient

__all__ = [
    "EventDispatcher",
    "GatewayConfig",
    "WhatsAppClient",
    "__version__",
    "create_app",
]
