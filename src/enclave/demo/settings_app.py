"""Guest app that edits a small settings document on behalf of its host."""

import asyncio
from typing import ClassVar

from loguru import logger

from enclave.sandbox import GuestWindow
from enclave.sdk import GuestRuntime
from enclave.watch import PropChanges


class SettingsApp:
    """Settings editor that runs inside a sandboxed sub-document.

    The host passes ``theme`` and an ``on_save`` callable as props. The app
    registers ``get_settings``, ``update_setting`` and ``save`` so the host can
    drive it, follows ``navigate`` events, and mirrors ``theme`` changes.
    """

    DEFAULT_SETTINGS: ClassVar[dict[str, object]] = {"theme": "light", "notifications": True, "language": "en"}

    runtime: GuestRuntime | None
    settings: dict[str, object]
    routes: list[str]
    theme_changes: list[tuple[object, object]]
    started: asyncio.Event

    _expected_origin: str | None

    def __init__(self, expected_origin: str | None = None) -> None:
        """Initialize the app.

        :param expected_origin: Host origin to accept during the handshake.
        """
        self._expected_origin = expected_origin
        self.runtime = None
        self.settings = dict(self.DEFAULT_SETTINGS)
        self.routes = []
        self.theme_changes = []
        self.started = asyncio.Event()

    async def __call__(self, window: GuestWindow) -> None:
        """Guest entry: connect to the host and wire up the app.

        :param window: Guest window of the sub-document.
        """
        runtime: GuestRuntime = GuestRuntime(window)
        await runtime.initialize(expected_origin=self._expected_origin)
        self.runtime = runtime

        theme: object = runtime.props.get("theme")
        if isinstance(theme, str) is True:
            self.settings["theme"] = theme

        runtime.watch(["theme"], self._on_theme_change)
        runtime.on("navigate", self._on_navigate)
        runtime.register(
            {
                "get_settings": self.get_settings,
                "update_setting": self.update_setting,
                "save": self.save,
            }
        )
        self.started.set()

    def _on_theme_change(self, changes: PropChanges) -> None:
        new_theme: object
        old_theme: object
        new_theme, old_theme = changes["theme"]
        self.theme_changes.append((new_theme, old_theme))
        self.settings["theme"] = new_theme

    def _on_navigate(self, data: object) -> None:
        path: object = data.get("path") if isinstance(data, dict) is True else data
        if isinstance(path, str) is False:
            logger.warning(f"[settings-app] Ignoring navigate event without a path: {data!r}")
            return
        self.routes.append(path)
        if self.runtime is not None:
            self.runtime.emit("state:change", {"route": path})

    def get_settings(self) -> dict[str, object]:
        return dict(self.settings)

    def update_setting(self, key: str, value: object) -> dict[str, object]:
        """Change one setting.

        :param key: Setting name.
        :param value: New value.
        :returns: The full settings document.
        :raises KeyError: If ``key`` is not a known setting.
        """
        if key not in self.DEFAULT_SETTINGS:
            raise KeyError(f"Unknown setting: {key}")
        self.settings[key] = value
        return dict(self.settings)

    async def save(self) -> object:
        """Hand the settings to the host's ``on_save`` prop.

        :returns: Whatever ``on_save`` returned on the host.
        :raises RuntimeError: If the host did not pass ``on_save``.
        """
        if self.runtime is None:
            raise RuntimeError("SettingsApp is not connected")
        on_save: object = self.runtime.props.get("on_save")
        if callable(on_save) is False:
            raise RuntimeError("Host did not provide an on_save callback")
        return await on_save(dict(self.settings))
