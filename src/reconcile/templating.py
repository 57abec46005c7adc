"""Template rendering for manifest values and resource queries.

Templates use Jinja2 syntax ({{ name }}, {{ tags.env }}, {{ subnets[0] }},
{{ region | default('us-east-1') }}) in a sandboxed environment with
StrictUndefined: an unresolved name is always an error, never an empty
string.

Interpolated values are formatted per type by format_value():
    str         -> verbatim
    bool        -> true / false
    int, float  -> str()
    list, dict  -> compact JSON
"""

import base64
import json
import logging
import re
from collections.abc import Mapping
from typing import Any, Optional

from jinja2 import StrictUndefined, Template, TemplateError, Undefined, UndefinedError
from jinja2.sandbox import SandboxedEnvironment

from reconcile.context import normalize_value
from reconcile.errors import MissingVariable, RenderError

logger = logging.getLogger(__name__)

# A template that is exactly one {{ expression }} renders to the native value
_SINGLE_EXPRESSION = re.compile(r'^\s*\{\{(?P<expr>(?:(?!\{\{|\}\}).)*)\}\}\s*$', re.DOTALL)

_UNDEFINED_NAME = re.compile(r"^'(?P<name>[^']+)' is undefined$")


def to_json(value: Any) -> str:
    """Serialize to compact JSON."""
    return json.dumps(value, separators=(',', ':'))


def format_value(value: Any) -> Any:
    """Format an interpolated value (Jinja finalize hook)."""
    if isinstance(value, Undefined):
        return value
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (list, dict)):
        return to_json(value)
    if value is None:
        return ''
    return value


def _from_json(value: str) -> Any:
    if not isinstance(value, str):
        raise TypeError("from_json: expected a string")
    return json.loads(value)


def _base64_encode(value: str) -> str:
    if not isinstance(value, str):
        raise TypeError("base64_encode: expected a string")
    return base64.b64encode(value.encode('utf-8')).decode('ascii')


def _merge_lists(value: list, other: list) -> list:
    if not isinstance(value, list) or not isinstance(other, list):
        raise TypeError("merge_lists: expected two lists")
    seen: set[str] = set()
    merged = []
    for item in value + other:
        key = json.dumps(item, sort_keys=True)
        if key not in seen:
            seen.add(key)
            merged.append(item)
    return merged


def _merge_objects(value: dict, other: dict) -> dict:
    if not isinstance(value, dict) or not isinstance(other, dict):
        raise TypeError("merge_objects: expected two mappings")
    merged = dict(value)
    merged.update(other)
    return merged


def _generate_patch_document(value: Any) -> str:
    """Build a JSON Patch 'add' document from a mapping (or its JSON text)."""
    if isinstance(value, str):
        value = json.loads(value)
    if not isinstance(value, dict):
        raise TypeError("generate_patch_document: expected a mapping or JSON object string")
    ops = []
    for key, val in value.items():
        if isinstance(val, str):
            try:
                val = json.loads(val)
            except ValueError:
                pass
        ops.append({'op': 'add', 'path': f'/{key}', 'value': val})
    return to_json(ops)


def _sql_list(value: Any) -> str:
    """Render a list as a SQL IN list: ('a','b'). Empty lists render as (NULL)."""
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            parsed = [value]
        value = parsed if isinstance(parsed, list) else [value]
    if not isinstance(value, list):
        return '(NULL)'
    if not value:
        return '(NULL)'
    items = [v if isinstance(v, str) else to_json(v) for v in value]
    return '(' + ','.join(f"'{item}'" for item in items) + ')'


def _sql_escape(value: str) -> str:
    if not isinstance(value, str):
        raise TypeError("sql_escape: expected a string")
    return value.replace("'", "''")


FILTERS = {
    'from_json': _from_json,
    'base64_encode': _base64_encode,
    'merge_lists': _merge_lists,
    'merge_objects': _merge_objects,
    'generate_patch_document': _generate_patch_document,
    'sql_list': _sql_list,
    'sql_escape': _sql_escape,
}


def _missing(error: UndefinedError, resource: Optional[str], anchor: Optional[str]) -> MissingVariable:
    message = str(error)
    match = _UNDEFINED_NAME.match(message)
    name = match.group('name') if match else message
    return MissingVariable(name, resource=resource, anchor=anchor)


class TemplateRenderer:
    """Renders templates against a read-only variable view.

    Rendering is pure: the same template and view always give the same
    output. Compiled templates are cached by source text.
    """

    def __init__(self):
        self._env = SandboxedEnvironment(
            undefined=StrictUndefined,
            finalize=format_value,
            keep_trailing_newline=True,
            autoescape=False,
        )
        self._env.filters.update(FILTERS)
        self._cache: dict[str, Template] = {}

    def _compile(self, template: str) -> Template:
        compiled = self._cache.get(template)
        if compiled is None:
            compiled = self._env.from_string(template)
            self._cache[template] = compiled
        return compiled

    def render(
        self,
        template: str,
        view: Mapping[str, Any],
        resource: Optional[str] = None,
        anchor: Optional[str] = None,
    ) -> str:
        """Render template text.

        Raises:
            MissingVariable: If the template references an undefined name
            RenderError: On syntax errors or failing filters
        """
        try:
            return self._compile(template).render(dict(view))
        except UndefinedError as e:
            raise _missing(e, resource, anchor) from e
        except TemplateError as e:
            raise RenderError(f"Template error: {e}", resource=resource, anchor=anchor) from e
        except (TypeError, ValueError) as e:
            raise RenderError(f"Render failed: {e}", resource=resource, anchor=anchor) from e

    def evaluate(
        self,
        expression: str,
        view: Mapping[str, Any],
        resource: Optional[str] = None,
    ) -> Any:
        """Evaluate a bare expression (no braces) to its native value."""
        try:
            compiled = self._env.compile_expression(expression, undefined_to_none=False)
            result = compiled(**dict(view))
        except UndefinedError as e:
            raise _missing(e, resource, None) from e
        except TemplateError as e:
            raise RenderError(f"Template error: {e}", resource=resource) from e
        except (TypeError, ValueError) as e:
            raise RenderError(f"Render failed: {e}", resource=resource) from e
        if isinstance(result, Undefined):
            raise MissingVariable(result._undefined_name or expression.strip(), resource=resource)
        return result

    def evaluate_condition(
        self,
        condition: str,
        view: Mapping[str, Any],
        resource: Optional[str] = None,
    ) -> bool:
        """Render a resource 'if' condition, then evaluate the result.

        Supports literals true/false and comparisons such as
        'prod' == 'prod', 'a' != 'b', 'x' in ['x', 'y'] and not in.

        Raises:
            RenderError: If the rendered condition is not a boolean expression
        """
        rendered = self.render(condition, view, resource=resource)
        try:
            compiled = self._env.compile_expression(rendered)
            result = compiled()
        except TemplateError as e:
            raise RenderError(f"Invalid condition '{rendered}': {e}", resource=resource) from e
        if not isinstance(result, bool):
            raise RenderError(f"Condition '{rendered}' did not evaluate to true or false", resource=resource)
        logger.debug(f"Condition '{rendered}' evaluated to {result}")
        return result

    def render_value(
        self,
        value: Any,
        view: Mapping[str, Any],
        name: str = '',
        resource: Optional[str] = None,
    ) -> Any:
        """Render a template-bearing value, preserving its structure.

        A string that is exactly one {{ expression }} yields the expression's
        native value; other strings render to text; lists and mappings are
        rendered element-wise.
        """
        if isinstance(value, str):
            match = _SINGLE_EXPRESSION.match(value)
            if match:
                return normalize_value(self.evaluate(match.group('expr'), view, resource), name)
            return self.render(value, view, resource=resource)
        if isinstance(value, list):
            return [self.render_value(v, view, name, resource) for v in value]
        if isinstance(value, dict):
            return {
                str(k): self.render_value(v, view, f'{name}.{k}' if name else str(k), resource)
                for k, v in value.items()
            }
        return normalize_value(value, name)
