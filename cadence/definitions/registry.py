"""In-process registry of validated workflow definitions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from ..errors import DefinitionNotFound, ValidationError
from .models import TriggerBinding, WorkflowDefinition
from .validation import validate_definition

logger = logging.getLogger(__name__)

DefinitionSource = Union[str, Path, Mapping[str, Any]]


def _is_file(source: str) -> bool:
    if "\n" in source:
        return False
    try:
        return Path(source).is_file()
    except OSError:
        return False


def _read_source(source: DefinitionSource) -> Any:
    if isinstance(source, Mapping):
        return dict(source)
    if isinstance(source, Path) or _is_file(source):
        text = Path(source).read_text()
    else:
        text = source
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError("<unknown>", "document", f"invalid YAML: {exc}") from exc


class DefinitionRegistry:
    """Load, validate and look up workflow definitions.

    Lookups are side-effect free. A ``(name, version)`` pair is immutable once
    loaded: loading identical content again is a no-op, different content is
    rejected.
    """

    def __init__(self) -> None:
        self._definitions: dict[str, dict[int, WorkflowDefinition]] = {}

    def load(self, source: DefinitionSource) -> WorkflowDefinition:
        data = _read_source(source)
        if not isinstance(data, dict):
            raise ValidationError("<unknown>", "document", "definition must be a mapping")
        name = str(data.get("name", "<unknown>"))
        try:
            defn = WorkflowDefinition.model_validate(data)
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(p) for p in first["loc"]) or "document"
            raise ValidationError(name, location, first["msg"]) from exc
        validate_definition(defn)

        versions = self._definitions.setdefault(defn.name, {})
        existing = versions.get(defn.version)
        if existing is not None:
            if existing.model_dump(mode="json") != defn.model_dump(mode="json"):
                raise ValidationError(
                    defn.name,
                    "version",
                    f"version {defn.version} is already loaded with different content",
                )
            return existing
        versions[defn.version] = defn
        logger.info(f"Loaded workflow definition {defn.name} v{defn.version}")
        return defn

    def load_directory(self, path: str | Path) -> list[WorkflowDefinition]:
        """Load every ``*.yaml`` / ``*.yml`` file below ``path``."""
        root = Path(path)
        files = sorted(list(root.rglob("*.yaml")) + list(root.rglob("*.yml")))
        return [self.load(f) for f in files]

    def get(self, name: str, version: Optional[int] = None) -> WorkflowDefinition:
        versions = self._definitions.get(name)
        if not versions:
            raise DefinitionNotFound(f"Workflow definition '{name}' is not registered")
        if version is None:
            return versions[max(versions)]
        if version not in versions:
            raise DefinitionNotFound(f"Workflow definition '{name}' has no version {version}")
        return versions[version]

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def triggers_for(self, event: str) -> list[tuple[WorkflowDefinition, TriggerBinding]]:
        """Trigger bindings of the latest definitions that react to ``event``."""
        matches = []
        for name in self.names():
            defn = self.get(name)
            for trigger in defn.triggers:
                if trigger.event == event:
                    matches.append((defn, trigger))
        return matches

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
