"""Run-scoped configuration store with node-path scoping."""

from __future__ import annotations

from typing import Any, Dict, Optional

from .models import NodePath

GLOBAL_SCOPE = ""

TRUE_VALUES = {"1", "true", "yes", "on"}


class RuntimeProperties:
    """Properties looked up from the most specific node-path scope up to the global scope.

    A property set for ``App`` applies to ``App/web`` unless ``App/web`` overrides it.
    """

    def __init__(self, scopes: Optional[Dict[str, Dict[str, str]]] = None):
        self._scopes: Dict[str, Dict[str, str]] = {}
        for scope, values in (scopes or {}).items():
            self._scopes[scope] = {str(k): str(v) for k, v in values.items()}

    @classmethod
    def from_config(cls, data: Dict[str, Any]) -> "RuntimeProperties":
        """Build from a config mapping with ``properties`` and ``modules`` tables."""
        scopes: Dict[str, Dict[str, str]] = {GLOBAL_SCOPE: dict(data.get("properties", {}))}
        for node_path, values in data.get("modules", {}).items():
            scopes[str(NodePath.parse(node_path))] = dict(values)
        return cls(scopes)

    def get(self, name: str, node_path: Optional[NodePath] = None) -> Optional[str]:
        if node_path is not None:
            for scope in node_path.ancestors():
                values = self._scopes.get(str(scope))
                if values and name in values:
                    return values[name]
        return self._scopes.get(GLOBAL_SCOPE, {}).get(name)

    def get_bool(self, name: str, node_path: Optional[NodePath] = None, default: bool = False) -> bool:
        value = self.get(name, node_path)
        if value is None:
            return default
        return value.strip().lower() in TRUE_VALUES

    def set(self, name: str, value: Optional[str], node_path: Optional[NodePath] = None) -> None:
        """Set (or with ``None`` remove) a property in one scope."""
        scope = GLOBAL_SCOPE if node_path is None else str(node_path)
        values = self._scopes.setdefault(scope, {})
        if value is None:
            values.pop(name, None)
        else:
            values[name] = str(value)

    def to_config(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"properties": dict(self._scopes.get(GLOBAL_SCOPE, {}))}
        modules = {scope: dict(values) for scope, values in self._scopes.items() if scope and values}
        if modules:
            data["modules"] = modules
        return data
