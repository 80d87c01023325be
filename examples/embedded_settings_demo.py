"""Embed the demo settings app in a host page and drive it end to end."""

import argparse
import asyncio
import pathlib
import sys

SHELL_ORIGIN: str = "https://shell.example"
APP_SRC: str = "https://settings.example/app"


def _ensure_src_path(src_path: str) -> None:
    """Ensure ``src`` is importable in the current interpreter.

    :param src_path: Absolute path to the repository ``src`` directory.
    """
    exists: bool = src_path in sys.path
    if exists is False:
        sys.path.insert(0, src_path)


def _parse_args() -> argparse.Namespace:
    """Parse command-line arguments.

    :returns: Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="Run a host page that embeds the demo settings app in a sandboxed sub-document.",
    )
    parser.add_argument("--theme", default="dark", help="Initial theme passed to the guest.")
    parser.add_argument("--next-theme", default="light", help="Theme pushed to the guest after it is ready.")
    parser.add_argument("--route", default="/settings/profile", help="Route the host navigates the guest to.")
    parser.add_argument("--timeout", type=float, default=5.0, help="Seconds to wait for the guest to be ready.")
    return parser.parse_args()


async def _run(theme: str, next_theme: str, route: str, timeout: float) -> int:
    from enclave import SandboxHost
    from enclave import embed
    from enclave.demo import SettingsApp

    host: SandboxHost = SandboxHost(SHELL_ORIGIN)
    app: SettingsApp = SettingsApp(expected_origin=SHELL_ORIGIN)
    host.register_app(APP_SRC, app)

    saved: list[object] = []

    def on_save(settings: object) -> str:
        saved.append(settings)
        return "saved"

    frame = embed(host, "settings", APP_SRC, props={"theme": theme, "on_save": on_save})
    frame.on("state:change", lambda detail: print(f"  guest state change: {detail}"))
    try:
        await frame.wait_until_ready(timeout)
        print(f"ready: name={frame.name} base={frame.base} pathname={frame.pathname}")

        await asyncio.wait_for(app.started.wait(), timeout)
        print(f"registered functions: {sorted(frame.registered_functions)}")

        frame.props["theme"] = next_theme
        frame.emit("navigate", {"path": route})

        settings: object = await frame.invoke("update_setting", "language", "de")
        print(f"after update_setting: {settings}")

        result: object = await frame.invoke("save")
        print(f"save returned {result!r}; host received {saved}")
        print(f"guest theme changes: {app.theme_changes}")
        print(f"guest routes: {app.routes}")
    finally:
        frame.remove()
    return 0


def main() -> int:
    """Run the demo.

    :returns: Process exit code.
    """
    root_path: pathlib.Path = pathlib.Path(__file__).resolve().parents[1]
    _ensure_src_path(str(root_path / "src"))

    args: argparse.Namespace = _parse_args()
    if args.timeout <= 0:
        print("timeout must be > 0")
        return 2

    print("Enclave Settings Demo")
    print(f"python={sys.version.split()[0]}")
    print(f"host={SHELL_ORIGIN} guest={APP_SRC}")
    print("")
    return asyncio.run(_run(args.theme, args.next_theme, args.route, args.timeout))


if __name__ == "__main__":
    raise SystemExit(main())
