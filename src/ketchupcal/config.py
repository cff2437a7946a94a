from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List
import yaml

from .models import DEFAULT_EVENT_DURATION_SECONDS

ICLOUD_CALDAV_URL = "https://caldav.icloud.com/"
MANAGED_CALENDAR_NAME = "Ketchup Soon Events"

@dataclass
class LocalCalendarConfig:
    enabled: bool
    url: str
    calendar_name_allowlist: List[str]
    change_poll_seconds: float

@dataclass
class CloudCalendarConfig:
    enabled: bool
    calendar_ids: List[str]
    managed_calendar_name: str

@dataclass
class AppConfig:
    timezone: str
    cache_ttl_seconds: float
    default_duration_seconds: float
    preferences_path: str
    local: LocalCalendarConfig
    cloud: CloudCalendarConfig

def parse_config(data: Dict[str, Any]) -> AppConfig:
    calendars = data.get("calendars", {}) or {}
    local = calendars.get("local", {}) or {}
    cloud = calendars.get("cloud", {}) or {}

    return AppConfig(
        timezone=str(data.get("timezone", "America/Los_Angeles")),
        cache_ttl_seconds=float(data.get("cache_ttl_seconds", 300)),
        default_duration_seconds=float(data.get("default_duration_seconds", DEFAULT_EVENT_DURATION_SECONDS)),
        preferences_path=str(data.get("preferences_path", "~/.config/ketchupcal/preferences.json")),
        local=LocalCalendarConfig(
            enabled=bool(local.get("enabled", True)),
            url=str(local.get("url", ICLOUD_CALDAV_URL)),
            calendar_name_allowlist=list(local.get("calendar_name_allowlist", [])),
            change_poll_seconds=float(local.get("change_poll_seconds", 60)),
        ),
        cloud=CloudCalendarConfig(
            enabled=bool(cloud.get("enabled", True)),
            calendar_ids=list(cloud.get("calendar_ids", ["primary"])),
            # Empty string disables the managed calendar and writes go to "primary".
            managed_calendar_name=str(cloud.get("managed_calendar_name", MANAGED_CALENDAR_NAME)),
        ),
    )

def load_config(path: str) -> AppConfig:
    p = Path(path)
    data: Dict[str, Any] = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    return parse_config(data)
