from dataclasses import dataclass
from enum import Enum

from carelink.config import ClientSettings


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKING_OFF = "backing_off"


@dataclass
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reconnect_attempt: int = 0


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay: float = 1.0
    max_delay: float = 5.0
    max_attempts: int = 5

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "BackoffPolicy":
        return cls(
            base_delay=settings.reconnect_base_delay,
            max_delay=settings.reconnect_max_delay,
            max_attempts=settings.reconnect_max_attempts,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the `attempt`-th failure (1-based)."""
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))
