import json

from ketchupcal.models import CalendarProvider
from ketchupcal.preferences import Preferences, PreferencesStore, load_preferences, save_preferences


def test_missing_file_defaults_to_local(tmp_path):
    prefs = load_preferences(str(tmp_path / "missing.json"))

    assert prefs.default_provider is CalendarProvider.LOCAL


def test_save_then_load(tmp_path):
    path = str(tmp_path / "nested" / "prefs.json")

    save_preferences(path, Preferences(default_provider=CalendarProvider.CLOUD))

    assert load_preferences(path).default_provider is CalendarProvider.CLOUD


def test_legacy_provider_names_are_understood(tmp_path):
    path = tmp_path / "prefs.json"
    path.write_text(json.dumps({"default_calendar_provider": "google"}), encoding="utf-8")

    assert PreferencesStore(str(path)).load().default_provider is CalendarProvider.CLOUD


def test_unknown_provider_falls_back_to_local(tmp_path):
    path = tmp_path / "prefs.json"
    path.write_text(json.dumps({"default_calendar_provider": "outlook"}), encoding="utf-8")

    assert load_preferences(str(path)).default_provider is CalendarProvider.LOCAL
