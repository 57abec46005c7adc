"""Layered variable context for one deployment run.

Scopes, highest precedence first:
    overrides  - environment variables forwarded by the CLI
    globals    - rendered manifest globals
    metadata   - stack_name, stack_env
    exports    - values exported by already-processed resources

Renders never see the live context. They get a ContextView, an immutable
snapshot taken when the view is created, optionally topped with a
resource's own props.
"""

import datetime
import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Optional

from common import mask
from reconcile.errors import RenderError

logger = logging.getLogger(__name__)


class _Missing:
    """Sentinel for absent variables (distinct from any real value)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return 'MISSING'

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


def normalize_value(value: Any, name: str = '') -> Any:
    """Coerce a raw value into the closed variable type set.

    Allowed: str, int, float, bool, list, dict (recursively). Dates from
    YAML become ISO strings and tuples become lists.

    Raises:
        RenderError: For None or any other type
    """
    if isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [normalize_value(v, name) for v in value]
    if isinstance(value, dict):
        return {str(k): normalize_value(v, f'{name}.{k}' if name else str(k)) for k, v in value.items()}
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if value is None:
        raise RenderError(f"Variable '{name}' has no value" if name else "Null values are not supported")
    raise RenderError(f"Unsupported value type {type(value).__name__} for '{name}'")


class ContextView(Mapping):
    """Read-only, flattened snapshot of a VariableContext."""

    def __init__(self, layers: Iterable[Mapping[str, Any]]):
        """Build a view from layers ordered lowest to highest precedence."""
        merged: dict[str, Any] = {}
        for layer in layers:
            merged.update(layer)
        self._data = MappingProxyType(merged)

    def __getitem__(self, name: str) -> Any:
        return self._data[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def lookup(self, name: str) -> Any:
        """Get a variable or MISSING."""
        return self._data.get(name, MISSING)

    def with_locals(self, local: Mapping[str, Any]) -> 'ContextView':
        """Return a new view with local values on top of this one."""
        return ContextView([self._data, local])

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)


class VariableContext:
    """Mutable, run-scoped variable store.

    Only global rendering writes the globals scope; only the orchestrator
    writes exports, between resources.
    """

    def __init__(
        self,
        overrides: Optional[Mapping[str, Any]] = None,
        stack_name: str = '',
        stack_env: str = '',
    ):
        self._overrides: dict[str, Any] = dict(overrides or {})
        self._globals: dict[str, Any] = {}
        self._metadata: dict[str, Any] = {
            'stack_name': stack_name,
            'stack_env': stack_env,
        }
        self._exports: dict[str, Any] = {}

    @property
    def stack_name(self) -> str:
        return self._metadata['stack_name']

    @property
    def stack_env(self) -> str:
        return self._metadata['stack_env']

    def _scopes(self) -> tuple[dict, ...]:
        """Scopes ordered highest precedence first."""
        return (self._overrides, self._globals, self._metadata, self._exports)

    def get(self, name: str) -> Any:
        """Get a variable from the highest-precedence scope defining it, else MISSING."""
        for scope in self._scopes():
            if name in scope:
                return scope[name]
        return MISSING

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not MISSING

    def set(self, name: str, value: Any) -> None:
        """Set a variable in the exports scope."""
        self._exports[name] = normalize_value(value, name)

    def set_global(self, name: str, value: Any) -> None:
        """Set a rendered global variable."""
        self._globals[name] = normalize_value(value, name)

    def export(self, resource: str, values: Mapping[str, Any], protected: Iterable[str] = ()) -> None:
        """Record a resource's exports, flat and under the resource's namespace."""
        protected = set(protected)
        existing = self._exports.get(resource)
        namespace = dict(existing) if isinstance(existing, dict) else {}
        for name, value in values.items():
            shown = mask(value) if name in protected else value
            logger.info(f"set [{name}] to [{shown}] in exports")
            self.set(name, value)
            namespace[name] = self._exports[name]
        if namespace:
            self._exports[resource] = namespace

    def child_view(self, local: Optional[Mapping[str, Any]] = None) -> ContextView:
        """Snapshot the context; local values (resource props) take precedence over all scopes."""
        layers = list(reversed(self._scopes()))
        if local:
            layers.append(local)
        return ContextView(layers)

    def names(self) -> 'set[str]':
        names: set[str] = set()
        for scope in self._scopes():
            names.update(scope)
        return names
