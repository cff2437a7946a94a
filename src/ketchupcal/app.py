from __future__ import annotations

import os
from typing import List
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from .aggregator import CalendarAggregator
from .calendar_caldav import CalDAVCalendarAdapter
from .calendar_google import GoogleCalendarAdapter
from .config import AppConfig, load_config
from .preferences import PreferencesStore
from .providers import CalendarAdapter

CONFIG_PATH_DEFAULT = "~/.config/ketchupcal/config.yaml"


def build_adapters(cfg: AppConfig, tz: ZoneInfo) -> List[CalendarAdapter]:
    adapters: List[CalendarAdapter] = []
    if cfg.local.enabled:
        adapters.append(
            CalDAVCalendarAdapter(
                tz=tz,
                username=os.environ.get("ICLOUD_USERNAME", ""),
                app_password=os.environ.get("ICLOUD_APP_PASSWORD", ""),
                url=cfg.local.url,
                calendar_name_allowlist=cfg.local.calendar_name_allowlist,
            )
        )
    if cfg.cloud.enabled:
        adapters.append(
            GoogleCalendarAdapter(
                tz=tz,
                credentials_path=os.environ.get("GOOGLE_CREDENTIALS_JSON", ""),
                token_path=os.environ.get("GOOGLE_TOKEN_JSON", ""),
                calendar_ids=cfg.cloud.calendar_ids,
                managed_calendar_name=cfg.cloud.managed_calendar_name,
            )
        )
    return adapters


def build_aggregator(cfg: AppConfig) -> CalendarAggregator:
    tz = ZoneInfo(cfg.timezone)
    return CalendarAggregator(
        adapters=build_adapters(cfg, tz),
        tz=tz,
        preferences=PreferencesStore(cfg.preferences_path),
        cache_ttl_seconds=cfg.cache_ttl_seconds,
        default_duration_seconds=cfg.default_duration_seconds,
        change_poll_seconds=cfg.local.change_poll_seconds,
    )


async def open_calendars(config_path: str = CONFIG_PATH_DEFAULT) -> CalendarAggregator:
    """Build the aggregator from config, restore previous sign-ins and start change monitoring."""
    load_dotenv()
    cfg = load_config(os.path.expanduser(config_path))
    aggregator = build_aggregator(cfg)
    await aggregator.restore_sessions()
    aggregator.start()
    return aggregator
