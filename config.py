import os
import logging
from dataclasses import dataclass, fields
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

CAMPUS_MAP_PATH = os.getenv("CAMPUS_MAP_PATH")
MAP_SERVICE_URL = os.getenv("MAP_SERVICE_URL")
CLIENT_BROKER = os.getenv("CLIENT_BROKER", "localhost")
CLIENT_PORT = int(os.getenv("CLIENT_PORT", 1884))
MQTT_ENABLED = os.getenv("MQTT_ENABLED", "true").lower() in ("1", "true", "yes")


@dataclass
class NavConfig:
    # Step detection
    step_threshold: float = 12.0           # delta-magnitude between samples
    min_step_interval_ms: float = 300.0    # one footfall counts once
    stride_length_m: float = 0.75
    meters_per_lat_degree: float = 111320.0

    # Session behaviour
    arrival_threshold_m: float = 15.0      # auto-arrival radius around destination
    drift_warning_steps: int = 50          # steps since last scan before warning
    gps_fix_max_error_m: float = 20.0      # GPS fixes must be better than this

    # Session registry
    session_timeout_s: float = 1800.0
    heartbeat_timeout_s: float = 300.0

    @classmethod
    def from_env(cls, prefix: str = "") -> "NavConfig":
        """Build a config, overriding defaults from upper-case env variables."""
        overrides = {}
        for f in fields(cls):
            raw: Optional[str] = os.getenv(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            try:
                overrides[f.name] = type(f.default)(raw)
            except ValueError:
                logger.warning(f"[CONFIG] Ignoring invalid value for {f.name.upper()}: {raw!r}")
        return cls(**overrides)
