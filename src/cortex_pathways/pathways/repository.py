"""Pathway definition loading from YAML files."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from cortex_pathways.utils.errors import ConfigurationError

from .models import PathwayDefinition

logger = structlog.get_logger(__name__)


class PathwayRepository:
    """Loads and caches pathway definitions.

    Definitions come from ``<name>.yaml`` files in ``directory`` or from
    :meth:`register`. Registered definitions shadow files of the same name.
    """

    def __init__(
        self,
        directory: Path | None = None,
        *,
        definitions: Iterable[PathwayDefinition] = (),
    ) -> None:
        self._directory = directory
        self._cache: dict[str, PathwayDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: PathwayDefinition) -> PathwayDefinition:
        if not definition.name:
            raise ConfigurationError("Registered pathways need a name")
        self._cache[definition.name] = definition
        return definition

    def get(self, name: str) -> PathwayDefinition:
        if name in self._cache:
            return self._cache[name]
        path = self._resolve_path(name)
        if path is None or not path.exists():
            raise ConfigurationError(f"Pathway '{name}' not found", extra={"pathway": name})
        data = yaml.safe_load(path.read_text()) or {}
        data.setdefault("name", name)
        try:
            definition = PathwayDefinition.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Pathway '{name}' is invalid", detail=str(exc), extra={"pathway": name}
            ) from exc
        logger.debug("pathway.repository.loaded", pathway=name, path=str(path))
        self._cache[name] = definition
        return definition

    def names(self) -> list[str]:
        found = set(self._cache)
        if self._directory is not None and self._directory.is_dir():
            found.update(path.stem for path in self._directory.glob("*.yaml"))
        return sorted(found)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self.names()

    def _resolve_path(self, name: str) -> Path | None:
        if self._directory is None:
            return None
        return self._directory / f"{name}.yaml"


__all__ = ["PathwayRepository"]
