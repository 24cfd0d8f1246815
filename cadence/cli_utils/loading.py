"""Helpers for turning CLI arguments into engine objects."""

from __future__ import annotations

import json
from importlib import import_module
from typing import Any, Iterable, Mapping

from ..capabilities import CapabilityResolver


def _import_target(reference: str) -> Any:
    """Import ``package.module:attribute``."""
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Expected 'module:attribute', got '{reference}'")
    target: Any = import_module(module_name)
    for part in attribute.split("."):
        target = getattr(target, part)
    return target


def load_capabilities(references: Iterable[str]) -> CapabilityResolver:
    """Build one resolver from ``module:attr`` references.

    Each target may be a ``CapabilityResolver``, a mapping of names to
    handlers, or a zero-argument factory returning either.
    """
    resolver = CapabilityResolver()
    for reference in references:
        target = _import_target(reference)
        if callable(target) and not isinstance(target, (CapabilityResolver, Mapping)):
            target = target()
        if isinstance(target, CapabilityResolver):
            for name in target.names():
                resolver.register(name, target.resolve(name))
        elif isinstance(target, Mapping):
            for name, handler in target.items():
                resolver.register(name, handler)
        else:
            raise TypeError(f"'{reference}' is neither a CapabilityResolver nor a mapping")
    return resolver


def parse_pairs(pairs: Iterable[str]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are JSON when they parse as JSON."""
    parsed: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected key=value, got '{pair}'")
        try:
            parsed[key] = json.loads(raw)
        except json.JSONDecodeError:
            parsed[key] = raw
    return parsed
