"""Resolve portal collaborators from ``module:attribute`` import paths."""

from __future__ import annotations

import importlib
import inspect
from typing import Any, Mapping

from ..errors import ConfigurationError


def load_object(path: str) -> Any:
    """Import ``package.module:attribute`` and return the attribute."""

    module_name, sep, attr_path = path.partition(":")
    if not sep or not module_name or not attr_path:
        raise ConfigurationError(f"Invalid import path {path!r}; expected 'module:attribute'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import module {module_name!r}: {exc}") from exc
    target: Any = module
    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ConfigurationError(f"Module {module_name!r} has no attribute {attr_path!r}") from exc
    return target


def build_collaborator(path: str, options: Mapping[str, Any] | None = None, expected: type | None = None) -> Any:
    """Instantiate the class or call the factory found at ``path`` with ``options``.

    Objects that are neither classes nor callables are returned as-is, so a
    module-level instance can be referenced directly.
    """

    target = load_object(path)
    kwargs = dict(options or {})
    if inspect.isclass(target) or callable(target):
        try:
            instance = target(**kwargs)
        except TypeError as exc:
            raise ConfigurationError(f"Cannot build collaborator {path!r}: {exc}") from exc
    else:
        instance = target
    if expected is not None and not isinstance(instance, expected):
        raise ConfigurationError(f"Collaborator {path!r} is not a {expected.__name__}")
    return instance


__all__ = ["build_collaborator", "load_object"]
