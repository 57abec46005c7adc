"""Stack manifest loading and validation.

A stack directory holds stack_manifest.yml and a resources/ directory with
one query file per resource:

    my-stack/
        stack_manifest.yml
        resources/
            rg.iql
            vnet.iql

The manifest declares providers, globals (rendered once per run) and an
ordered list of resources. Declaration order is the build order; teardown
runs it in reverse.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError
from reconcile.context import ContextView, VariableContext
from reconcile.errors import RenderError
from reconcile.templating import TemplateRenderer

logger = logging.getLogger(__name__)

MANIFEST_FILE = 'stack_manifest.yml'

RESOURCES_DIR = 'resources'

RESOURCE_TYPES = ('resource', 'multi', 'query', 'command', 'script')


class ManifestParseError(ConfigError):
    """Malformed stack manifest."""


def _list_field(data: dict, key: str, where: str) -> list:
    """A list-valued field, [] when absent."""
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ManifestParseError(f"{where}: '{key}' must be a list, got {type(value).__name__}")
    return value


@dataclass
class GlobalVar:
    """A global variable, rendered once before any resource runs."""
    name: str
    value: Any
    description: str = ''

    @classmethod
    def from_dict(cls, data: dict) -> 'GlobalVar':
        if not isinstance(data, dict):
            raise ManifestParseError(f"Global entries must be mappings, got {data!r}")
        if 'name' not in data:
            raise ManifestParseError(f"Global missing required field: name ({data})")
        if data.get('value') is None:
            raise ManifestParseError(f"Global '{data['name']}' has no value")
        return cls(
            name=str(data['name']),
            value=data['value'],
            description=data.get('description', ''),
        )


@dataclass
class ResourceProp:
    """A resource property.

    Exactly one source is used: value, or values[stack_env]['value']. merge
    names context variables whose lists or mappings are merged on top.
    """
    name: str
    value: Any = None
    values: Optional[dict[str, Any]] = None
    merge: Optional[list[str]] = None
    description: str = ''

    @classmethod
    def from_dict(cls, data: dict, resource: str) -> 'ResourceProp':
        if not isinstance(data, dict):
            raise ManifestParseError(f"Property in resource '{resource}' must be a mapping, got {data!r}")
        if 'name' not in data:
            raise ManifestParseError(f"Property in resource '{resource}' missing required field: name")
        name = str(data['name'])
        if data.get('value') is None and data.get('values') is None and data.get('merge') is None:
            raise ManifestParseError(
                f"Property '{name}' in resource '{resource}' has no value, values, or merge"
            )
        values = data.get('values')
        if values is not None and not isinstance(values, dict):
            raise ManifestParseError(f"Property '{name}' in resource '{resource}': values must be a mapping")
        merge = data.get('merge')
        if merge is not None and not isinstance(merge, list):
            raise ManifestParseError(f"Property '{name}' in resource '{resource}': merge must be a list")
        return cls(
            name=name,
            value=data.get('value'),
            values=values,
            merge=[str(m) for m in merge] if merge is not None else None,
            description=data.get('description', ''),
        )


@dataclass
class ResourceDecl:
    """A resource declaration.

    Attributes:
        name: Unique resource name (also the default query file stem)
        type: resource, multi, query, command or script
        file: Query file name under resources/ (default: {name}.iql)
        sql: Inline query for query/command resources
        run: Shell command for script resources
        props: Ordered properties, rendered per resource
        exports: Export names, or {column: alias} mappings
        protected: Export names masked in logs
        condition: Optional 'if' expression; false skips the resource
        skip_validation: Skip the desired-state check
    """
    name: str
    type: str = 'resource'
    file: Optional[str] = None
    sql: Optional[str] = None
    run: Optional[str] = None
    props: list[ResourceProp] = field(default_factory=list)
    exports: list[Any] = field(default_factory=list)
    protected: list[str] = field(default_factory=list)
    condition: Optional[str] = None
    skip_validation: bool = False
    description: str = ''

    def export_columns(self) -> list[tuple[str, str]]:
        """(column, context name) pairs for each declared export."""
        pairs = []
        for item in self.exports:
            if isinstance(item, dict):
                for column, alias in item.items():
                    pairs.append((str(column), str(alias)))
            else:
                pairs.append((str(item), str(item)))
        return pairs

    def export_names(self) -> list[str]:
        """Names this resource contributes to the context."""
        return [alias for _, alias in self.export_columns()]

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceDecl':
        if not isinstance(data, dict):
            raise ManifestParseError(f"Resource entries must be mappings, got {data!r}")
        if 'name' not in data:
            raise ManifestParseError(f"Resource missing required field: name ({data})")
        name = str(data['name'])
        rtype = data.get('type', 'resource')
        if rtype not in RESOURCE_TYPES:
            raise ManifestParseError(
                f"Resource '{name}' has unsupported type '{rtype}'. "
                f"Supported: {', '.join(RESOURCE_TYPES)}"
            )
        if rtype == 'script' and not data.get('run'):
            raise ManifestParseError(f"Script resource '{name}' requires a 'run' command")

        exports = _list_field(data, 'exports', f"Resource '{name}'")
        for item in exports:
            if isinstance(item, dict) and len(item) != 1:
                raise ManifestParseError(
                    f"Resource '{name}': export mappings must have exactly one key, got {item}"
                )

        return cls(
            name=name,
            type=rtype,
            file=data.get('file'),
            sql=data.get('sql'),
            run=data.get('run'),
            props=[ResourceProp.from_dict(p, name) for p in _list_field(data, 'props', f"Resource '{name}'")],
            exports=list(exports),
            protected=[str(p) for p in _list_field(data, 'protected', f"Resource '{name}'")],
            condition=data.get('if'),
            skip_validation=bool(data.get('skip_validation', False)),
            description=data.get('description', ''),
        )


@dataclass
class StackManifest:
    """Stack definition loaded from stack_manifest.yml."""
    name: str
    providers: list[str]
    version: int = 1
    description: str = ''
    globals: list[GlobalVar] = field(default_factory=list)
    resources: list[ResourceDecl] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)
    source_path: Optional[Path] = None

    @property
    def stack_dir(self) -> Path:
        if self.source_path is None:
            return Path.cwd()
        return self.source_path.parent

    def get_resource(self, name: str) -> ResourceDecl:
        """Get a resource by name.

        Raises:
            KeyError: If no resource has that name
        """
        for resource in self.resources:
            if resource.name == name:
                return resource
        raise KeyError(name)

    def query_path(self, resource: ResourceDecl) -> Path:
        """Path of the resource's query file."""
        return self.stack_dir / RESOURCES_DIR / (resource.file or f'{resource.name}.iql')

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'StackManifest':
        """Create StackManifest from a parsed YAML document.

        Raises:
            ManifestParseError: If required fields are missing or invalid
        """
        if not data.get('name'):
            raise ManifestParseError("Manifest missing required field: name")
        providers = data.get('providers')
        if not providers or not isinstance(providers, list):
            raise ManifestParseError("Manifest must declare a non-empty providers list")

        resources = [ResourceDecl.from_dict(r) for r in _list_field(data, 'resources', 'Manifest')]
        seen: set[str] = set()
        for resource in resources:
            if resource.name in seen:
                raise ManifestParseError(f"Duplicate resource name: '{resource.name}'")
            seen.add(resource.name)

        return cls(
            name=str(data['name']),
            providers=[str(p) for p in providers],
            version=data.get('version', 1),
            description=data.get('description', ''),
            globals=[GlobalVar.from_dict(g) for g in _list_field(data, 'globals', 'Manifest')],
            resources=resources,
            exports=[str(e) for e in _list_field(data, 'exports', 'Manifest')],
            source_path=source_path,
        )


def load_manifest(path: Path) -> StackManifest:
    """Load a manifest from a stack directory or a manifest file.

    Raises:
        ManifestParseError: If the file is missing or invalid
    """
    path = Path(path)
    if path.is_dir():
        path = path / MANIFEST_FILE
    if not path.exists():
        raise ManifestParseError(f"Manifest file not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ManifestParseError(f"Invalid YAML in manifest {path}: {e}")

    if not isinstance(data, dict):
        raise ManifestParseError(f"Manifest {path} must be a YAML object (dict)")

    logger.debug(f"Loaded manifest from {path}")
    return StackManifest.from_dict(data, source_path=path.resolve())


def render_globals(manifest: StackManifest, context: VariableContext, renderer: TemplateRenderer) -> None:
    """Render globals in declared order into the context's globals scope.

    Each global sees overrides, stack metadata and the globals before it.

    Raises:
        RenderError: If a global fails to render or renders empty
    """
    logger.debug("Rendering globals...")
    for glob in manifest.globals:
        view = context.child_view()
        value = renderer.render_value(glob.value, view, name=glob.name)
        if value == '' or value == [] or value == {}:
            raise RenderError(f"Global variable '{glob.name}' cannot be empty")
        logger.debug(f"Setting global [{glob.name}]")
        context.set_global(glob.name, value)


def _merge_prop(name: str, base: Any, items: list[str], scope: dict[str, Any], resource: str) -> Any:
    for item in items:
        if item not in scope:
            raise RenderError(f"Merge item '{item}' not found in context", resource=resource)
        other = scope[item]
        if base is None:
            base = other
        elif isinstance(base, list) and isinstance(other, list):
            base = base + [v for v in other if v not in base]
        elif isinstance(base, dict) and isinstance(other, dict):
            base = {**base, **other}
        else:
            raise RenderError(
                f"Cannot merge {type(other).__name__} into {type(base).__name__} for property '{name}'",
                resource=resource,
            )
    return base


def render_props(
    resource: ResourceDecl,
    view: ContextView,
    renderer: TemplateRenderer,
    stack_env: str,
) -> dict[str, Any]:
    """Render a resource's props in order; each prop sees the ones before it.

    Args:
        resource: Resource whose props to render
        view: ContextView of the run context
        renderer: Template renderer
        stack_env: Environment used to select from per-environment values

    Returns:
        Prop name -> rendered value

    Raises:
        RenderError: If a prop fails to render or has no value for stack_env
    """
    props: dict[str, Any] = {}
    for prop in resource.props:
        scope = view.with_locals(props)
        value = None
        if prop.value is not None:
            value = renderer.render_value(prop.value, scope, name=prop.name, resource=resource.name)
        elif prop.values is not None:
            selected = prop.values.get(stack_env)
            if selected is None:
                raise RenderError(
                    f"No value specified for property '{prop.name}' in stack_env '{stack_env}'",
                    resource=resource.name,
                )
            if isinstance(selected, dict) and 'value' in selected:
                selected = selected['value']
            value = renderer.render_value(selected, scope, name=prop.name, resource=resource.name)

        if prop.merge:
            value = _merge_prop(prop.name, value, prop.merge, dict(scope), resource.name)

        if value is None:
            raise RenderError(f"Property '{prop.name}' rendered no value", resource=resource.name)

        logger.debug(f"Setting property [{prop.name}] for [{resource.name}]")
        props[prop.name] = value
    return props
