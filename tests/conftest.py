"""Shared pytest fixtures for iql-deploy tests."""

import re
import sys
from pathlib import Path

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from reconcile.errors import ExecutionError  # noqa: E402


class FakeExecutor:
    """Query executor driven by (pattern, response) rules.

    A rule's pattern is a regex searched in the rendered query. The
    response is a list of rows, an exception to raise, or a callable
    taking the query. Rules are tried in order; queries matching no rule
    return no rows. Every query is recorded in self.queries.
    """

    def __init__(self, rules=None):
        self.rules = list(rules or [])
        self.queries: list[str] = []

    def on(self, pattern, response):
        self.rules.append((pattern, response))
        return self

    def execute(self, query):
        self.queries.append(query)
        for pattern, response in self.rules:
            if re.search(pattern, query):
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(query)
                return [dict(row) for row in response]
        return []

    def count(self, pattern):
        """Number of executed queries matching pattern."""
        return sum(1 for q in self.queries if re.search(pattern, q))


class ResourceWorld:
    """In-memory cloud for one kind of resource, answering .iql queries.

    Queries are classified by the leading keyword written in the test
    query files: EXISTS, STATECHECK, EXPORTS, CREATE, UPDATE, DELETE.
    """

    def __init__(self):
        self.resources: dict[str, dict] = {}
        self.queries: list[str] = []

    def _name(self, query):
        match = re.search(r"name\s*=\s*'([^']*)'", query)
        return match.group(1) if match else None

    def execute(self, query):
        self.queries.append(query)
        keyword = query.split()[0].upper()
        name = self._name(query)
        location = re.search(r"location\s*=\s*'([^']*)'", query)
        if keyword == 'EXISTS':
            return [{'count': 1 if name in self.resources else 0}]
        if keyword == 'STATECHECK':
            res = self.resources.get(name)
            ok = res is not None and location is not None and res['location'] == location.group(1)
            return [{'count': 1 if ok else 0}]
        if keyword == 'EXPORTS':
            res = self.resources.get(name)
            return [{'resource_group_id': f'/groups/{name}'}] if res else []
        if keyword in ('CREATE', 'UPDATE'):
            self.resources[name] = {'location': location.group(1) if location else ''}
            return []
        if keyword == 'DELETE':
            self.resources.pop(name, None)
            return []
        raise ExecutionError(f"unexpected query: {query}")

    def mutations(self):
        return [q for q in self.queries if q.split()[0].upper() in ('CREATE', 'UPDATE', 'DELETE')]


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def no_sleep():
    """Sleep replacement recording requested delays."""
    delays: list[float] = []

    def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


@pytest.fixture
def make_stack(tmp_path):
    """Create a stack directory from a manifest dict and {file: query text}."""

    def _make(manifest: dict, queries: dict = None, name: str = 'stack'):
        stack_dir = tmp_path / name
        (stack_dir / 'resources').mkdir(parents=True, exist_ok=True)
        (stack_dir / 'stack_manifest.yml').write_text(yaml.safe_dump(manifest, sort_keys=False))
        for filename, text in (queries or {}).items():
            (stack_dir / 'resources' / filename).write_text(text)
        return stack_dir

    return _make


RG_QUERIES = """\
/*+ exists */
EXISTS SELECT COUNT(*) as count FROM resource_groups
WHERE name = '{{ resource_group_name }}'

/*+ create */
CREATE INSERT INTO resource_groups (name, location)
SELECT name = '{{ resource_group_name }}', location = '{{ location }}'

/*+ update */
UPDATE resource_groups SET location = '{{ location }}'
WHERE name = '{{ resource_group_name }}'

/*+ statecheck, retries=3, retry_delay=1 */
STATECHECK SELECT COUNT(*) as count FROM resource_groups
WHERE name = '{{ resource_group_name }}' AND location = '{{ location }}'

/*+ exports */
EXPORTS SELECT id as resource_group_id FROM resource_groups
WHERE name = '{{ resource_group_name }}'

/*+ delete */
DELETE FROM resource_groups WHERE name = '{{ resource_group_name }}'
"""


@pytest.fixture
def rg_stack(make_stack):
    """Stack with one resource group 'rg' rendering to app-prod-rg."""
    manifest = {
        'version': 1,
        'name': 'app',
        'description': 'resource group stack',
        'providers': ['azure'],
        'globals': [
            {'name': 'location', 'value': 'eastus'},
        ],
        'resources': [
            {
                'name': 'rg',
                'props': [
                    {'name': 'resource_group_name', 'value': '{{ stack_name }}-{{ stack_env }}-rg'},
                ],
                'exports': ['resource_group_id'],
            },
        ],
    }
    return make_stack(manifest, {'rg.iql': RG_QUERIES})


@pytest.fixture
def world():
    return ResourceWorld()
