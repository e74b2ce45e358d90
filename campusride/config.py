# campusride/config.py
import os
from dataclasses import dataclass
from typing import List

# load .env first
from dotenv import load_dotenv
load_dotenv()


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./campusride.db"
    firebase_project_id: str = ""
    gateway_secret: str = ""
    match_radius_m: float = 5000.0
    max_notified_captains: int = 20
    offer_window_seconds: int = 300
    sweep_interval_seconds: float = 15.0
    average_speed_kmh: float = 25.0
    allowed_origins: str = "http://127.0.0.1:5173,http://localhost:5173"
    log_level: str = "INFO"

    @property
    def origins(self) -> List[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", "").strip() or cls.database_url,
            firebase_project_id=os.getenv("FIREBASE_PROJECT_ID", ""),
            gateway_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            match_radius_m=_float("MATCH_RADIUS_METERS", cls.match_radius_m),
            max_notified_captains=_int("MAX_NOTIFIED_CAPTAINS", cls.max_notified_captains),
            offer_window_seconds=_int("OFFER_WINDOW_SECONDS", cls.offer_window_seconds),
            sweep_interval_seconds=_float("SWEEP_INTERVAL_SECONDS", cls.sweep_interval_seconds),
            average_speed_kmh=_float("AVERAGE_SPEED_KMH", cls.average_speed_kmh),
            allowed_origins=os.getenv("ALLOWED_ORIGINS", cls.allowed_origins),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
