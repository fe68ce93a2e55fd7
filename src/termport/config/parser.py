"""termport.yaml loading: locate, parse, pull in .env, validate."""

from __future__ import annotations

import os
import shutil
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from termport.config.models import TermportConfig
from termport.errors import TermportError

DEFAULT_CONFIG_NAME = "termport.yaml"

#: Environment variable that overrides ``helper.path``.
HELPER_ENV_VAR = "TERMPORT_HELPER"

#: Executable name searched on PATH when nothing else names the helper.
DEFAULT_HELPER_NAME = "termbox_port"

# pydantic error types reworded for people editing YAML by hand.
_FRIENDLY_ERRORS = {
    "missing": "This field is required",
    "extra_forbidden": "Unknown setting",
}


class ConfigError(TermportError):
    """Configuration problem worth showing to the user verbatim."""


def load_config(path: Path | None = None) -> TermportConfig:
    """Return the validated configuration.

    With an explicit *path* the file must exist.  Without one,
    ``./termport.yaml`` is used when present and the built-in defaults
    otherwise.  A ``.env`` beside the config file (or in the current
    directory when there is none) is loaded into the environment first.

    Raises:
        ConfigError: Missing explicit file, unreadable file, bad YAML, or
            settings that fail validation.
    """
    source = _locate(path)
    if source is None:
        _load_env(Path.cwd())
        return TermportConfig()

    document = _parse(source)
    _load_env(source.parent)
    try:
        return TermportConfig.model_validate(document)
    except ValidationError as exc:
        details = "\n".join(_describe(exc))
        raise ConfigError(f"Config validation failed:\n{details}") from exc


def resolve_helper_path(config: TermportConfig, override: str | None = None) -> Path:
    """Pick the helper executable: *override*, config, $TERMPORT_HELPER, then PATH."""
    for candidate in (override, config.helper.path, os.environ.get(HELPER_ENV_VAR)):
        if candidate:
            return Path(candidate).expanduser()

    on_path = shutil.which(DEFAULT_HELPER_NAME)
    if on_path is not None:
        return Path(on_path)
    raise ConfigError(
        f"No helper configured and '{DEFAULT_HELPER_NAME}' is not on PATH. "
        f"Set helper.path in {DEFAULT_CONFIG_NAME} or ${HELPER_ENV_VAR}."
    )


def _locate(path: Path | None) -> Path | None:
    if path is None:
        fallback = Path.cwd() / DEFAULT_CONFIG_NAME
        return fallback if fallback.is_file() else None
    explicit = Path(path)
    if not explicit.is_file():
        raise ConfigError(f"Config file not found: {explicit}")
    return explicit


def _parse(source: Path) -> dict[str, Any]:
    try:
        with source.open(encoding="utf-8") as fh:
            document = yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigError(f"Cannot read {source}: {exc}") from exc
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" at line {mark.line + 1}, column {mark.column + 1}" if mark else ""
        raise ConfigError(f"Invalid YAML in {source.name}{where}") from exc

    if document is None:
        return {}
    if isinstance(document, dict):
        return document
    raise ConfigError(
        f"{source.name} must contain a YAML mapping at the top level, "
        f"not a {type(document).__name__}"
    )


def _load_env(directory: Path) -> None:
    dotenv = directory / ".env"
    if dotenv.is_file():
        load_dotenv(dotenv)


def _describe(exc: ValidationError) -> Iterator[str]:
    for error in exc.errors():
        where = " → ".join(str(part) for part in error["loc"]) or "(top level)"
        yield f"  {where}: {_FRIENDLY_ERRORS.get(error['type'], error['msg'])}"
