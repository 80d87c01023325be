"""Demo guest apps for showcasing enclave behavior."""

from enclave.demo.settings_app import SettingsApp

__all__: list[str] = ["SettingsApp"]
