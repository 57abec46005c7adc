#!/usr/bin/env python3
"""Tests for reconcile/orchestrator.py - stack runs across resources.

Tests verify:
1. Exports flow forward only
2. Build/teardown ordering and fail-fast behavior
3. End-to-end create / no-op / drift / delete against an in-memory cloud
4. run_stack() entry point and stack export files
"""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest

from manifest import load_manifest
from reconcile.context import VariableContext
from reconcile.engine import ReconciliationEngine
from reconcile.errors import ExecutionError
from reconcile.orchestrator import Mode, StackOrchestrator, run_stack
from reconcile.state import CREATED, DELETED, FAILED, SKIPPED, UPDATED


def _manifest(resources, **extra):
    data = {'version': 1, 'name': 'app', 'providers': ['azure'], 'resources': resources}
    data.update(extra)
    return data


def _run(make_stack, executor, no_sleep, manifest, queries=None, mode=Mode.BUILD, stack_env='dev'):
    manifest = load_manifest(make_stack(manifest, queries))
    context = VariableContext(stack_name=manifest.name, stack_env=stack_env)
    engine = ReconciliationEngine(executor, sleep=no_sleep)
    return StackOrchestrator(engine).run(manifest, context, mode), context


class TestExportFlow:
    """Test export visibility between resources."""

    def test_later_resource_sees_earlier_exports(self, make_stack, fake_executor, no_sleep):
        fake_executor.on('^A_EXPORTS', [{'a_val': 'a1'}])
        fake_executor.on('^B_EXPORTS', [{'b_val': 'b1'}])
        manifest = _manifest([
            {'name': 'a', 'type': 'query', 'sql': "A_EXPORTS SELECT 'a1' as a_val", 'exports': ['a_val']},
            {'name': 'b', 'type': 'query', 'sql': "B_EXPORTS SELECT '{{ a_val }}/{{ a.a_val }}' as b_val",
             'exports': ['b_val']},
        ])

        result, context = _run(make_stack, fake_executor, no_sleep, manifest)

        assert result.success
        assert fake_executor.queries[1] == "B_EXPORTS SELECT 'a1/a1' as b_val"
        assert context.get('b_val') == 'b1'
        assert context.get('a') == {'a_val': 'a1'}
        assert result.get('a').exports == {'a_val': 'a1'}

    def test_earlier_resource_never_sees_later_exports(self, make_stack, fake_executor, no_sleep):
        fake_executor.on('^B_EXPORTS', [{'b_val': 'b1'}])
        manifest = _manifest([
            {'name': 'a', 'type': 'query', 'sql': "A_EXPORTS SELECT '{{ b_val }}' as a_val", 'exports': ['a_val']},
            {'name': 'b', 'type': 'query', 'sql': "B_EXPORTS SELECT 1 as b_val", 'exports': ['b_val']},
        ])

        result, _ = _run(make_stack, fake_executor, no_sleep, manifest)

        assert not result.success
        assert result.first_failure.resource == 'a'
        assert result.first_failure.error_kind == 'MissingVariable'
        assert [o.name for o in result.outcomes] == ['a']
        assert fake_executor.queries == []

    def test_exports_hidden_from_failed_resource_successors(self, make_stack, fake_executor, no_sleep):
        fake_executor.on('^A_EXPORTS', [])
        manifest = _manifest([
            {'name': 'a', 'type': 'query', 'sql': 'A_EXPORTS SELECT 1', 'exports': ['a_val']},
            {'name': 'b', 'type': 'query', 'sql': "B_EXPORTS SELECT '{{ a_val }}'"},
        ])

        result, context = _run(make_stack, fake_executor, no_sleep, manifest)

        assert result.get('a').status == FAILED
        assert 'a_val' not in context


class TestOrdering:
    """Test traversal order and fail-fast."""

    def test_teardown_runs_in_reverse(self, make_stack, fake_executor, no_sleep):
        resources = [{'name': n} for n in ('a', 'b', 'c')]
        queries = {f'{n}.iql': f"/*+ delete */\nDELETE_{n.upper()} FROM t\n" for n in ('a', 'b', 'c')}

        result, _ = _run(make_stack, fake_executor, no_sleep, _manifest(resources), queries, mode=Mode.TEARDOWN)

        assert result.success
        assert [o.name for o in result.outcomes] == ['c', 'b', 'a']
        assert [q.split()[0] for q in fake_executor.queries] == ['DELETE_C', 'DELETE_B', 'DELETE_A']
        assert all(o.status == DELETED for o in result.outcomes)

    def test_fail_fast_keeps_prior_outcomes(self, make_stack, fake_executor, no_sleep):
        fake_executor.on('^A_EXPORTS', [{'v': 1}])
        fake_executor.on('^B_EXPORTS', ExecutionError('provider error: 403'))
        manifest = _manifest([
            {'name': 'a', 'type': 'query', 'sql': 'A_EXPORTS SELECT 1 as v', 'exports': ['v']},
            {'name': 'b', 'type': 'query', 'sql': 'B_EXPORTS SELECT 2 as w', 'exports': ['w']},
            {'name': 'c', 'type': 'query', 'sql': 'C_EXPORTS SELECT 3 as x', 'exports': ['x']},
        ])

        result, _ = _run(make_stack, fake_executor, no_sleep, manifest)

        assert not result.success
        assert [(o.name, o.status) for o in result.outcomes] == [('a', SKIPPED), ('b', FAILED)]
        failure = result.first_failure
        assert failure.resource == 'b'
        assert failure.anchor == 'exports'
        assert failure.error_kind == 'ExecutionError'
        assert 'provider error: 403' in failure.message
        assert fake_executor.count('^C_EXPORTS') == 0

    def test_teardown_collects_exports_forward(self, make_stack, fake_executor, no_sleep):
        fake_executor.on('^A_EXPORTS', [{'a_id': 'id-a'}])
        resources = [{'name': 'a', 'exports': ['a_id']}, {'name': 'b'}]
        queries = {
            'a.iql': "/*+ exports */\nA_EXPORTS SELECT id as a_id FROM t\n/*+ delete */\nDELETE_A FROM t\n",
            'b.iql': "/*+ delete */\nDELETE_B FROM t WHERE parent = '{{ a_id }}'\n",
        }

        result, _ = _run(make_stack, fake_executor, no_sleep, _manifest(resources), queries, mode=Mode.TEARDOWN)

        assert result.success
        assert "DELETE_B FROM t WHERE parent = 'id-a'" in fake_executor.queries

    def test_teardown_continues_when_export_collection_fails(self, make_stack, fake_executor, no_sleep):
        fake_executor.on('^A_EXPORTS', ExecutionError('http response status code: 404, response body: {}'))
        resources = [{'name': 'a', 'exports': ['a_id']}]
        queries = {'a.iql': "/*+ exports */\nA_EXPORTS SELECT id as a_id FROM t\n/*+ delete */\nDELETE_A FROM t\n"}

        result, _ = _run(make_stack, fake_executor, no_sleep, _manifest(resources), queries, mode=Mode.TEARDOWN)

        assert result.success
        assert result.get('a').status == DELETED
        assert fake_executor.count('^DELETE_A') == 1

    def test_unknown_mode(self, make_stack, fake_executor):
        manifest = load_manifest(make_stack(_manifest([])))
        orchestrator = StackOrchestrator(ReconciliationEngine(fake_executor))
        with pytest.raises(ValueError):
            orchestrator.run(manifest, VariableContext(), 'deploy')


class TestResourceGroupLifecycle:
    """End-to-end runs of the resource group stack against ResourceWorld."""

    def test_build_test_teardown(self, rg_stack, world, no_sleep):
        first = run_stack(rg_stack, 'prod', Mode.BUILD, executor=world, sleep=no_sleep)
        assert first.success
        assert first.get('rg').status == CREATED
        assert first.get('rg').exports == {'resource_group_id': '/groups/app-prod-rg'}
        assert world.resources == {'app-prod-rg': {'location': 'eastus'}}

        mutations = len(world.mutations())
        second = run_stack(rg_stack, 'prod', Mode.BUILD, executor=world, sleep=no_sleep)
        assert second.get('rg').status == SKIPPED
        assert len(world.mutations()) == mutations

        tested = run_stack(rg_stack, 'prod', Mode.TEST, executor=world, sleep=no_sleep)
        assert tested.success
        assert tested.drifted == []

        removed = run_stack(rg_stack, 'prod', Mode.TEARDOWN, executor=world, sleep=no_sleep)
        assert removed.success
        assert removed.get('rg').status == DELETED
        assert world.resources == {}

        after = run_stack(rg_stack, 'prod', Mode.TEST, executor=world, sleep=no_sleep)
        assert after.success
        assert after.get('rg').drift == 'absent'
        assert after.drifted == ['rg']

    def test_drift_then_repair(self, rg_stack, world, no_sleep):
        world.resources['app-prod-rg'] = {'location': 'westus'}

        tested = run_stack(rg_stack, 'prod', Mode.TEST, executor=world, sleep=no_sleep)
        assert tested.get('rg').drift == 'not_desired'
        assert world.mutations() == []
        assert no_sleep.delays == [1, 1]

        repaired = run_stack(rg_stack, 'prod', Mode.BUILD, executor=world, sleep=no_sleep)
        assert repaired.get('rg').status == UPDATED
        assert world.resources['app-prod-rg'] == {'location': 'eastus'}

    def test_teardown_of_absent_stack(self, rg_stack, world, no_sleep):

        result = run_stack(rg_stack, 'dev', Mode.TEARDOWN, executor=world, sleep=no_sleep)

        assert result.success
        assert result.get('rg').status == SKIPPED
        assert world.mutations() == []


class TestRunStack:
    """Test the run_stack entry point."""

    def test_missing_manifest(self, tmp_path):
        result = run_stack(tmp_path, 'dev', Mode.BUILD)

        assert not result.success
        assert result.outcomes == []
        assert result.first_failure.error_kind == 'ManifestParseError'

    def test_malformed_resource_entry(self, make_stack, fake_executor):
        stack_dir = make_stack(_manifest([42]))

        result = run_stack(stack_dir, 'dev', Mode.BUILD, executor=fake_executor)

        assert not result.success
        assert result.first_failure.error_kind == 'ManifestParseError'
        assert fake_executor.queries == []

    def test_global_render_failure(self, make_stack, fake_executor):
        stack_dir = make_stack(_manifest([], globals=[{'name': 'region', 'value': '{{ REGION }}'}]))

        result = run_stack(stack_dir, 'dev', Mode.BUILD, executor=fake_executor)

        assert not result.success
        assert result.first_failure.error_kind == 'MissingVariable'
        assert fake_executor.queries == []

    def test_overrides_feed_globals(self, make_stack, fake_executor, no_sleep):
        fake_executor.on('^Q', [{'r': 'x'}])
        stack_dir = make_stack(_manifest(
            [{'name': 'q', 'type': 'query', 'sql': "Q SELECT '{{ region }}' as r", 'exports': ['r']}],
            globals=[{'name': 'region', 'value': '{{ REGION }}'}],
        ))

        result = run_stack(stack_dir, 'dev', Mode.BUILD, variable_overrides={'REGION': 'eu-west-1'},
                           executor=fake_executor, sleep=no_sleep)

        assert result.success
        assert fake_executor.queries == ["Q SELECT 'eu-west-1' as r"]

    def test_dry_run_needs_no_executor(self, rg_stack):
        result = run_stack(rg_stack, 'dev', Mode.BUILD, dry_run=True)

        assert result.success
        assert result.get('rg').status == SKIPPED

    def test_pulls_providers(self, rg_stack, world, no_sleep):
        pulled = []
        world.pull_providers = pulled.extend

        run_stack(rg_stack, 'dev', Mode.TEST, executor=world, sleep=no_sleep)
        assert pulled == ['azure']

        pulled.clear()
        run_stack(rg_stack, 'dev', Mode.BUILD, executor=world, dry_run=True)
        assert pulled == []

    def test_output_file(self, make_stack, fake_executor, no_sleep, tmp_path):
        fake_executor.on('^Q', [{'vpc_id': 'vpc-1'}])
        stack_dir = make_stack(_manifest(
            [{'name': 'vpc', 'type': 'query', 'sql': 'Q SELECT 1', 'exports': ['vpc_id']}],
            exports=['vpc_id'],
        ))
        out = tmp_path / 'out' / 'exports.json'

        result = run_stack(stack_dir, 'dev', Mode.BUILD, executor=fake_executor, sleep=no_sleep, output_file=out)

        assert result.success
        data = json.loads(out.read_text())
        assert data['stack_name'] == 'app'
        assert data['stack_env'] == 'dev'
        assert data['vpc_id'] == 'vpc-1'
        assert 'elapsed_time' in data

    def test_output_file_missing_export(self, make_stack, fake_executor, no_sleep, tmp_path):
        stack_dir = make_stack(_manifest([], exports=['vpc_id']))
        out = tmp_path / 'exports.json'

        result = run_stack(stack_dir, 'dev', Mode.BUILD, executor=fake_executor, sleep=no_sleep, output_file=out)

        assert not result.success
        assert result.first_failure.error_kind == 'ConfigError'
        assert not out.exists()

    def test_result_to_dict(self, rg_stack, world, no_sleep):
        result = run_stack(rg_stack, 'prod', Mode.BUILD, executor=world, sleep=no_sleep)

        data = result.to_dict()
        assert data['success'] is True
        assert data['mode'] == 'build'
        assert data['resources'][0]['name'] == 'rg'
        assert data['resources'][0]['status'] == CREATED
        assert data['first_failure'] is None
