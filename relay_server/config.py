"""
Relay configuration loaded from environment variables.

Environment Variables:
    RELAY_HOST: Bind address (default: 0.0.0.0)
    PORT: Bind port (default: 3000)
    RELAY_PING_INTERVAL: Seconds between heartbeat sweeps (default: 15)
    RELAY_SEND_QUEUE: Max queued outbound messages per connection (default: 256)
    RELAY_STATIC_DIR: Directory served under /static (default: unset)
    RELAY_LOG_LEVEL: Root log level (default: INFO)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass
class RelayConfig:
    """Runtime settings for the relay server."""
    host: str = "0.0.0.0"
    port: int = 3000
    ping_interval: float = 15.0
    send_queue_size: int = 256
    static_dir: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self):
        if self.ping_interval <= 0:
            raise ValueError(f"ping_interval must be positive, got {self.ping_interval}")
        if self.send_queue_size <= 0:
            raise ValueError(f"send_queue_size must be positive, got {self.send_queue_size}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'RelayConfig':
        """Build a config from ``environ`` (defaults to os.environ)."""
        env = os.environ if environ is None else environ
        return cls(
            host=env.get("RELAY_HOST", "0.0.0.0"),
            port=int(env.get("PORT", "3000")),
            ping_interval=float(env.get("RELAY_PING_INTERVAL", "15")),
            send_queue_size=int(env.get("RELAY_SEND_QUEUE", "256")),
            static_dir=env.get("RELAY_STATIC_DIR") or None,
            log_level=env.get("RELAY_LOG_LEVEL", "INFO").upper(),
        )
