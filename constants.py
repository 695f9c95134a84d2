"""Shared constants for the PlantGuardian gateway."""

import re

# Default device endpoint (ESP32 WebSocket server, see firmware webSocket.begin())
DEFAULT_HOST = "192.168.0.111"
DEFAULT_PORT = 81
DEFAULT_THRESHOLD = 750

# Threshold is compared against raw ADC counts (12-bit on the ESP32)
THRESHOLD_MIN = 0
THRESHOLD_MAX = 4095

USER_AGENT = "PlantGuardian/1.0"

# Rolling chart window (samples)
WINDOW_SIZE = 60

# Reconnect policy: delay = BASE_DELAY * 2**attempt, at most MAX_ATTEMPTS retries
MAX_ATTEMPTS = 3
BASE_DELAY = 1.0       # seconds
CONNECT_TIMEOUT = 8.0  # seconds before a Connecting attempt is declared failed

# Inbound frames are bare decimal integers; trailing junk after the digits is ignored.
# ASCII digits only; Unicode digits such as Arabic-Indic are not readings
SAMPLE_RE = re.compile(r'\s*([+-]?\d+)', re.ASCII)
