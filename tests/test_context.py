#!/usr/bin/env python3
"""Tests for reconcile/context.py - layered variable context."""

import datetime
import sys
import typing
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest

from reconcile.context import MISSING, ContextView, VariableContext, normalize_value
from reconcile.errors import RenderError


class TestNormalizeValue:
    """Test the closed value type set."""

    def test_scalars_pass_through(self):
        assert normalize_value('a') == 'a'
        assert normalize_value(3) == 3
        assert normalize_value(1.5) == 1.5
        assert normalize_value(True) is True

    def test_nested_structures(self):
        value = {'tags': {'env': 'prod'}, 'subnets': ('a', 'b')}
        assert normalize_value(value) == {'tags': {'env': 'prod'}, 'subnets': ['a', 'b']}

    def test_dates_become_iso_strings(self):
        assert normalize_value(datetime.date(2024, 1, 2)) == '2024-01-02'

    def test_none_rejected(self):
        with pytest.raises(RenderError, match="'region'"):
            normalize_value(None, 'region')

    def test_unsupported_type_rejected(self):
        with pytest.raises(RenderError, match='Unsupported value type'):
            normalize_value(object(), 'x')


class TestVariableContext:
    """Test scope precedence and lookups."""

    def test_get_missing_returns_sentinel(self):
        ctx = VariableContext()
        assert ctx.get('nope') is MISSING
        assert 'nope' not in ctx
        assert not MISSING

    def test_metadata_scope(self):
        ctx = VariableContext(stack_name='app', stack_env='prod')
        assert ctx.get('stack_name') == 'app'
        assert ctx.stack_env == 'prod'

    def test_precedence_overrides_globals_metadata_exports(self):
        ctx = VariableContext(overrides={'a': 'override'}, stack_env='dev')
        ctx.set('a', 'export')
        ctx.set_global('a', 'global')
        ctx.set('b', 'export')
        ctx.set_global('b', 'global')
        ctx.set('stack_env', 'export')

        assert ctx.get('a') == 'override'
        assert ctx.get('b') == 'global'
        assert ctx.get('stack_env') == 'dev'

    def test_export_flat_and_namespaced(self):
        ctx = VariableContext()
        ctx.export('vnet', {'vnet_id': 'v-1', 'cidr': '10.0.0.0/16'})

        assert ctx.get('vnet_id') == 'v-1'
        assert ctx.get('vnet') == {'vnet_id': 'v-1', 'cidr': '10.0.0.0/16'}

    def test_export_masks_protected_values_in_logs(self, caplog):
        ctx = VariableContext()
        with caplog.at_level('INFO'):
            ctx.export('kv', {'secret': 'hunter2', 'kv_id': 'k-1'}, protected=['secret'])

        assert 'hunter2' not in caplog.text
        assert '*******' in caplog.text
        assert 'k-1' in caplog.text
        assert ctx.get('secret') == 'hunter2'

    def test_names(self):
        ctx = VariableContext(overrides={'x': '1'}, stack_name='s')
        ctx.set('y', 2)
        assert {'x', 'y', 'stack_name', 'stack_env'} <= ctx.names()

    def test_names_annotation_is_builtin_set(self):
        """The set() method must not shadow the builtin in names()' return type."""
        assert isinstance(VariableContext().names(), set)
        assert typing.get_type_hints(VariableContext.names)['return'] == set[str]


class TestContextView:
    """Test read-only snapshots."""

    def test_view_is_snapshot(self):
        ctx = VariableContext()
        ctx.set('a', 1)
        view = ctx.child_view()
        ctx.set('b', 2)

        assert view['a'] == 1
        assert view.lookup('b') is MISSING
        assert 'b' not in view

    def test_view_is_read_only(self):
        view = VariableContext().child_view()
        with pytest.raises(TypeError):
            view['a'] = 1  # type: ignore[index]

    def test_local_values_take_precedence(self):
        ctx = VariableContext(overrides={'location': 'eastus'})
        view = ctx.child_view({'location': 'westus'})
        assert view['location'] == 'westus'

    def test_with_locals(self):
        view = ContextView([{'a': 1}])
        layered = view.with_locals({'b': 2, 'a': 3})
        assert layered.to_dict() == {'a': 3, 'b': 2}
        assert view.to_dict() == {'a': 1}
