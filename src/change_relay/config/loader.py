"""Listener configuration: packaged defaults, a YAML file, then overrides.

Layers are deep-merged in that order, so a file or an override only needs the
keys it changes.  Mappings merge key by key; lists and scalars replace.  String
values in the file may reference the environment as ``${VAR}`` or
``${VAR:-default}``.
"""

from __future__ import annotations

import importlib
import inspect
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from change_relay.config.models import ListenerConfig
from change_relay.registry import Handler

logger = structlog.get_logger()

DEFAULTS_FILE = Path(__file__).parent / "defaults" / "listener.yaml"

# ${VAR} or ${VAR:-default}; "\}" escapes a brace inside the default
_ENV_REF = re.compile(r"\$\{([^}:]+)(?::-((?:[^}\\]|\\.)*))?}")


def resolve_env_vars(data: Any, where: str = "") -> Any:
    """Substitute environment references in every string under *data*.

    *where* is the dotted key path of *data*; it prefixes the error raised
    for a variable that is unset and has no default.
    """
    if isinstance(data, dict):
        return {
            key: resolve_env_vars(value, f"{where}.{key}" if where else str(key))
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [
            resolve_env_vars(item, f"{where}[{i}]") for i, item in enumerate(data)
        ]
    if not isinstance(data, str):
        return data

    def substitute(ref: re.Match[str]) -> str:
        name, fallback = ref.group(1), ref.group(2)
        if name in os.environ:
            return os.environ[name]
        if fallback is None:
            msg = f"{where or 'value'}: environment variable '{name}' is not set"
            raise ValueError(msg)
        return fallback.replace("\\}", "}")

    return _ENV_REF.sub(substitute, data)


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Read a YAML mapping from *path* and resolve its env references."""
    p = Path(path)
    if not p.exists():
        msg = f"Config file not found: {p}"
        raise FileNotFoundError(msg)
    try:
        with p.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" at line {mark.line + 1}, column {mark.column + 1}" if mark else ""
        msg = f"Failed to parse YAML in {p}{where}: {exc}"
        raise ValueError(msg) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping at top level in {p}, got {type(data).__name__}"
        raise TypeError(msg)
    return resolve_env_vars(data)  # type: ignore[no-any-return]


def _layer(base: dict[str, Any], top: Mapping[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for key, value in top.items():
        below = out.get(key)
        if isinstance(below, dict) and isinstance(value, Mapping):
            out[key] = _layer(below, value)
        else:
            out[key] = value
    return out


def load_listener_config(
    path: str | Path | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
) -> ListenerConfig:
    """Build a validated :class:`ListenerConfig`.

    Starts from the packaged defaults, layers the YAML file at *path* (if
    any) over them, then *overrides*.  Validation failures are raised as
    ``ValueError`` naming the sources involved.
    """
    raw = load_yaml(DEFAULTS_FILE)
    sources = ["built-in defaults"]
    if path is not None:
        raw = _layer(raw, load_yaml(path))
        sources.append(str(path))
    if overrides:
        raw = _layer(raw, overrides)
        sources.append("overrides")
    try:
        return ListenerConfig.model_validate(raw)
    except ValidationError as exc:
        msg = f"Invalid listener config ({' + '.join(sources)}):\n{exc}"
        raise ValueError(msg) from exc


def import_attr(path: str) -> Any:
    """Import ``attr`` from ``package.module:attr``."""
    if ":" not in path:
        msg = f"Invalid import path '{path}', expected 'module:attr'"
        raise ValueError(msg)
    mod_name, attr = path.split(":", 1)
    try:
        module = importlib.import_module(mod_name)
    except ImportError as exc:
        msg = f"Cannot import module '{mod_name}'"
        raise ImportError(msg) from exc
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        msg = f"Module '{mod_name}' has no attribute '{attr}'"
        raise AttributeError(msg) from exc


def _accepts_table(factory: Any) -> bool:
    try:
        params = inspect.signature(factory).parameters
    except (TypeError, ValueError):
        return False
    return "table" in params


def build_handlers(config: ListenerConfig) -> dict[str, Handler]:
    """Instantiate every enabled handler declared in *config*.

    ``table`` is passed to the factory as a keyword argument when the factory
    accepts it and it is not already present in ``kwargs``.
    """
    handlers: dict[str, Handler] = {}
    for spec in config.handlers:
        if not spec.enabled:
            logger.info("config.handler_disabled", table=spec.table)
            continue
        factory = import_attr(spec.factory)
        kwargs = dict(spec.kwargs)
        if _accepts_table(factory):
            kwargs.setdefault("table", spec.table)
        handlers[spec.table] = factory(**kwargs)
        logger.debug("config.handler_built", table=spec.table, factory=spec.factory)
    return handlers
