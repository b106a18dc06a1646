"""Engine: configuration, binary discovery, sessions and providers."""
from .config import BridgeConfig
from .context import RuntimeContext
from .errors import BridgeError
from .sessions import ActiveSessions, guarded_stream

__all__ = [
    "BridgeConfig",
    "RuntimeContext",
    "BridgeError",
    "ActiveSessions",
    "guarded_stream",
]
