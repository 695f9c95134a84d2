"""Data classes describing the device link: endpoint, state, retry policy, readings."""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from constants import (
    BASE_DELAY,
    DEFAULT_HOST,
    DEFAULT_PORT,
    MAX_ATTEMPTS,
    SAMPLE_RE,
    WINDOW_SIZE,
)


class ConnectionState(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    FAILED = "Failed"


@dataclass(frozen=True)
class Endpoint:
    """Address of the moisture sensor's WebSocket server."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class RetryPolicy:
    """Bounded exponential backoff: base_delay * 2**attempt, max_attempts retries."""
    max_attempts: int = MAX_ATTEMPTS
    base_delay: float = BASE_DELAY
    attempt: int = 0   # Retries scheduled since the last successful open

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_delay(self) -> float:
        """Return the delay for the next retry and count it as used."""
        delay = self.base_delay * (2 ** self.attempt)
        self.attempt += 1
        return delay

    def reset(self):
        self.attempt = 0


@dataclass
class TelemetryWindow:
    """Most recent moisture samples in arrival order, oldest evicted first."""
    capacity: int = WINDOW_SIZE
    _samples: deque = field(init=False, repr=False)

    def __post_init__(self):
        self._samples = deque(maxlen=self.capacity)

    def append(self, value: int):
        self._samples.append(value)

    def values(self) -> list[int]:
        return list(self._samples)

    @property
    def latest(self) -> Optional[int]:
        return self._samples[-1] if self._samples else None

    def clear(self):
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)


def parse_sample(text: str) -> Optional[int]:
    """Parse an inbound frame into a moisture reading, or None if it has no integer."""
    match = SAMPLE_RE.match(text)
    if not match:
        return None
    try:
        return int(match.group(1))
    except ValueError:
        # Digit run longer than the interpreter's int conversion limit
        return None


def moisture_status(value: Optional[int], threshold: int) -> str:
    """Dashboard verdict for a reading: higher ADC counts mean drier soil."""
    if value is None:
        return "NO DATA"
    return "NEEDS WATER" if value > threshold else "HEALTHY"
