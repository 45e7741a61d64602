"""Configuration commands for the task-cache CLI."""

from cyclopts import App

from task_cache.config import DEFAULTS, get_config

config_app = App(name="config", help="Manage configuration")


def _parse_value(value: str) -> str | int:
    """Numbers are stored as ints so typed accessors read them back unchanged."""
    return int(value) if value.strip().lstrip("-").isdigit() else value


@config_app.command
def set(key: str, value: str, global_: bool = False) -> None:
    """Set a configuration setting.

    Args:
        key: Configuration key, e.g. backend, github.owner, debounce_ms
        value: Configuration value
        global_: If True, set in global config. If False, set in local config.
    """
    config = get_config(use_global=global_)
    config.set(key, _parse_value(value))
    scope = "global" if global_ else "local"
    print(f"Set {key} = {value} ({scope})")


@config_app.command
def unset(key: str, global_: bool = False) -> None:
    """Unset a configuration setting.

    Args:
        key: Configuration key
        global_: If True, unset from global config. If False, unset from local config.
    """
    get_config(use_global=global_).unset(key)
    scope = "global" if global_ else "local"
    print(f"Unset {key} ({scope})")


@config_app.command
def get(key: str, global_: bool = False) -> None:
    """Get the value of a configuration setting, falling back to the built-in default."""
    value = get_config(use_global=global_).get(key)
    if value is None:
        print(f"{key} is not set")
    else:
        print(f"{key} = {value}")


@config_app.command(name="list")
def list_config(global_: bool = False, defaults: bool = False) -> None:
    """List configuration settings.

    Args:
        global_: If True, list global config only. If False, list merged config.
        defaults: Also show built-in defaults that are not overridden.
    """
    settings = get_config(use_global=global_).list()
    if defaults:
        settings = {**DEFAULTS, **settings}

    if not settings:
        scope = "global" if global_ else "local"
        print(f"No {scope} configuration settings")
        return

    print("Settings:\n")
    for key, value in settings.items():
        print(f"{key} = {value}")
