from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict
import json

from .models import CalendarProvider

@dataclass
class Preferences:
    default_provider: CalendarProvider = CalendarProvider.LOCAL

def load_preferences(path: str) -> Preferences:
    p = Path(path).expanduser()
    if not p.exists():
        return Preferences()
    data: Dict[str, Any] = json.loads(p.read_text(encoding="utf-8"))
    return Preferences(
        default_provider=CalendarProvider.parse(
            data.get("default_calendar_provider"), default=CalendarProvider.LOCAL
        ),
    )

def save_preferences(path: str, prefs: Preferences) -> None:
    p = Path(path).expanduser()
    p.parent.mkdir(parents=True, exist_ok=True)
    payload = {"default_calendar_provider": prefs.default_provider.value}
    p.write_text(json.dumps(payload, indent=2), encoding="utf-8")


class PreferencesStore:
    """Persists the default calendar provider between runs."""

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> Preferences:
        return load_preferences(self.path)

    def save(self, prefs: Preferences) -> None:
        save_preferences(self.path, prefs)
