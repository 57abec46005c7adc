"""Per-resource reconciliation.

Build (forward) path for a 'resource' or 'multi':

    rendering -> fast_path                       (createorupdate defined)
              -> checking_existence -> creating  (no data)
                                    -> updating  (data, not in desired state)
                                    -> skipped   (data in desired state)
              -> verifying_state -> exporting -> succeeded

Teardown path:

    rendering -> checking_existence -> deleting -> verifying_absence -> succeeded

Any phase can end in failed: the engine raises a ReconcileError subclass
and the orchestrator records it. A 'multi' resource is the exception for
mutations: a failed create, update or delete is logged and the engine moves
on to verification. Query execution errors are never retried;
only an unsatisfied state predicate is polled again, up to the anchor's
retries, sleeping retry_delay seconds between attempts.

The engine never writes to the VariableContext. It renders against
snapshots and returns the exports for the orchestrator to record.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from common import run_shell
from config import Settings
from manifest import ResourceDecl, StackManifest, render_props
from reconcile.anchors import AnchorDef, AnchorSet, load_anchors
from reconcile.context import ContextView, VariableContext
from reconcile.errors import (
    ExecutionError,
    MissingAnchor,
    MissingVariable,
    ReconcileError,
    RunCancelled,
    StateVerificationExhausted,
)
from reconcile.executor import QueryExecutor, Row
from reconcile.state import (
    CREATED,
    DELETED,
    DRIFT_ABSENT,
    DRIFT_NOT_DESIRED,
    SKIPPED,
    UPDATED,
    ResourceOutcome,
)
from reconcile.templating import TemplateRenderer

logger = logging.getLogger(__name__)

# Probe classifications
NO_DATA = 'no_data'
DATA_NOT_DESIRED = 'data_not_desired'
DATA_DESIRED = 'data_desired'

# Types reconciled through exists/create/update/delete anchors
MANAGED_TYPES = ('resource', 'multi')

# Placeholder for exports in dry runs
DRY_RUN_VALUE = '<evaluated>'

# Anchors rendered (but not executed) in dry runs, per mode
DRY_RUN_ANCHORS = {
    'build': ('createorupdate', 'exists', 'create', 'update', 'statecheck', 'exports', 'command'),
    'test': ('exists', 'statecheck', 'exports'),
    'teardown': ('exists', 'statecheck', 'delete'),
}


@dataclass
class _ResourceRun:
    """Working state for one resource in one pass."""
    resource: ResourceDecl
    outcome: ResourceOutcome
    view: ContextView
    anchors: AnchorSet
    stack_dir: Optional[Path] = None
    proxy_rows: Optional[list[Row]] = None

    @property
    def name(self) -> str:
        return self.resource.name


class ReconciliationEngine:
    """Drives one resource at a time through build, test or teardown.

    Args:
        executor: Runs rendered queries (not needed for dry runs)
        renderer: Template renderer
        settings: Retry defaults and duplicate-anchor policy
        sleep: Called with retry_delay seconds between polls
        dry_run: Render and log queries without executing them
        show_queries: Log rendered queries at info level
        cancel: Event checked before every query
    """

    def __init__(
        self,
        executor: Optional[QueryExecutor],
        renderer: Optional[TemplateRenderer] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
        dry_run: bool = False,
        show_queries: bool = False,
        cancel: Optional[threading.Event] = None,
    ):
        self.executor = executor
        self.renderer = renderer or TemplateRenderer()
        self.settings = settings or Settings()
        self.sleep = sleep
        self.dry_run = dry_run
        self.show_queries = show_queries
        self.cancel = cancel

    def _prepare(
        self,
        resource: ResourceDecl,
        manifest: StackManifest,
        context: VariableContext,
        outcome: ResourceOutcome,
    ) -> Optional[_ResourceRun]:
        """Render props and condition, load anchors. None if the condition is false."""
        outcome.enter('rendering')
        base = context.child_view()

        if resource.condition is not None:
            if not self.renderer.evaluate_condition(resource.condition, base, resource=resource.name):
                logger.info(f"Skipping resource [{resource.name}] due to condition: {resource.condition}")
                return None

        props = render_props(resource, base, self.renderer, context.stack_env)
        view = context.child_view(props)
        anchors = self._load_anchors(resource, manifest)
        return _ResourceRun(
            resource=resource,
            outcome=outcome,
            view=view,
            anchors=anchors,
            stack_dir=manifest.stack_dir,
        )

    def _load_anchors(self, resource: ResourceDecl, manifest: StackManifest) -> AnchorSet:
        if resource.type == 'script':
            return AnchorSet()
        if resource.sql:
            kind = 'command' if resource.type == 'command' else 'exports'
            return AnchorSet({kind: AnchorDef(kind=kind, template=resource.sql.strip())})
        try:
            return load_anchors(manifest.query_path(resource), duplicates=self.settings.duplicate_anchors)
        except ReconcileError as e:
            e.resource = resource.name
            raise

    def _check_cancel(self, run: _ResourceRun, kind: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise RunCancelled("Run cancelled", resource=run.name, anchor=kind)

    def _render(self, run: _ResourceRun, kind: str) -> str:
        anchor = run.anchors[kind]
        query = self.renderer.render(anchor.template, run.view, resource=run.name, anchor=kind)
        if self.show_queries:
            logger.info(f"[{run.name}] {kind} query:\n{query}")
        else:
            logger.debug(f"[{run.name}] {kind} query:\n{query}")
        return query

    def _execute(self, run: _ResourceRun, kind: str) -> list[Row]:
        """Render and run one anchor. Rendering happens on every call."""
        self._check_cancel(run, kind)
        query = self._render(run, kind)
        if self.executor is None:
            raise ExecutionError("No query executor configured", resource=run.name, anchor=kind)
        try:
            rows = self.executor.execute(query)
        except ExecutionError as e:
            e.resource = e.resource or run.name
            e.anchor = e.anchor or kind
            raise
        logger.debug(f"[{run.name}] {kind} returned {len(rows)} row(s)")
        return rows

    def _require(self, run: _ResourceRun, kind: str) -> AnchorDef:
        if kind not in run.anchors:
            raise MissingAnchor(
                f"Resource '{run.name}' requires a '{kind}' anchor",
                resource=run.name,
                anchor=kind,
            )
        return run.anchors[kind]

    def _count(self, rows: list[Row], run: _ResourceRun, kind: str) -> Optional[int]:
        """Value of a count column, if the result has one."""
        if not rows or 'count' not in rows[0]:
            return None
        value = rows[0]['count']
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ExecutionError(
                f"Non-numeric count {value!r} from {kind} query",
                resource=run.name, anchor=kind, observed=rows,
            )

    def _matches(self, rows: list[Row], run: _ResourceRun, kind: str) -> bool:
        """A result satisfies a probe if count == 1, or if it has any row."""
        count = self._count(rows, run, kind)
        if count is None:
            return bool(rows)
        if count > 1:
            raise ExecutionError(
                f"{kind} query matched {count} resources, expected at most one",
                resource=run.name, anchor=kind, observed=rows,
            )
        return count == 1

    def _absent(self, rows: list[Row], run: _ResourceRun, kind: str) -> bool:
        count = self._count(rows, run, kind)
        if count is None:
            return not rows
        return count == 0

    def _has_rows(self, rows: list[Row], run: _ResourceRun, kind: str) -> bool:
        return bool(rows)

    def _mutate(self, run: _ResourceRun, kind: str) -> None:
        """Run a create, update, createorupdate or delete anchor.

        Execution errors are fatal except for multi resources, where they are
        logged and left for verification to judge.
        """
        try:
            self._execute(run, kind)
        except ExecutionError as e:
            if run.resource.type != 'multi':
                raise
            logger.warning(f"[{run.name}] ignoring {kind} error for multi resource: {e}")

    def _poll(
        self,
        run: _ResourceRun,
        kind: str,
        retries: int,
        delay: float,
        predicate: Callable[[list[Row], _ResourceRun, str], bool],
    ) -> tuple[bool, list[Row], int]:
        """Run an anchor up to retries times until predicate holds.

        Returns:
            (satisfied, last rows, attempts used)
        """
        rows: list[Row] = []
        for attempt in range(1, retries + 1):
            rows = self._execute(run, kind)
            if predicate(rows, run, kind):
                return True, rows, attempt
            if attempt < retries:
                logger.info(
                    f"[{run.name}] {kind} not satisfied (attempt {attempt}/{retries}), "
                    f"retrying in {delay}s..."
                )
                self.sleep(delay)
        return False, rows, retries

    def _desired_kind(self, run: _ResourceRun) -> Optional[str]:
        """Anchor that asserts desired state: statecheck, else exports as proxy."""
        if 'statecheck' in run.anchors:
            return 'statecheck'
        if 'exports' in run.anchors:
            return 'exports'
        return None

    def _check_desired(self, run: _ResourceRun, retries: int = 1) -> bool:
        kind = self._desired_kind(run)
        if kind is None:
            return True
        anchor = run.anchors[kind]
        delay = anchor.option('retry_delay', self.settings.default_retry_delay)
        satisfied, rows, _ = self._poll(run, kind, retries, delay, self._matches)
        if satisfied and kind == 'exports':
            run.proxy_rows = rows
        return satisfied

    def _classify(self, run: _ResourceRun, desired_retries: int = 1) -> str:
        """Classify current reality as NO_DATA, DATA_NOT_DESIRED or DATA_DESIRED."""
        run.outcome.enter('checking_existence')
        if 'exists' in run.anchors:
            anchor = run.anchors['exists']
            retries = anchor.option('retries', self.settings.default_retries)
            delay = anchor.option('retry_delay', self.settings.default_retry_delay)
            present, _, _ = self._poll(run, 'exists', retries, delay, self._matches)
            if not present:
                return NO_DATA
            return DATA_DESIRED if self._check_desired(run, desired_retries) else DATA_NOT_DESIRED

        if self._desired_kind(run) is None:
            raise MissingAnchor(
                f"Resource '{run.name}' needs an exists, statecheck or exports anchor "
                "to determine its state",
                resource=run.name,
            )
        return DATA_DESIRED if self._check_desired(run, desired_retries) else NO_DATA

    def _verify(self, run: _ResourceRun) -> None:
        """Poll the desired-state predicate until it holds or retries run out.

        Raises:
            StateVerificationExhausted: With the last observed rows
        """
        if run.resource.skip_validation:
            logger.info(f"Skipping validation for [{run.name}]")
            return

        kind = self._desired_kind(run) or ('exists' if 'exists' in run.anchors else None)
        if kind is None:
            logger.debug(f"[{run.name}] no statecheck, exports or exists anchor, nothing to verify")
            return

        run.outcome.enter('verifying_state')
        anchor = run.anchors[kind]
        retries = anchor.option('retries', self.settings.default_retries)
        delay = anchor.option('retry_delay', self.settings.default_retry_delay)
        satisfied, rows, attempts = self._poll(run, kind, retries, delay, self._matches)
        run.outcome.attempts = attempts
        if not satisfied:
            raise StateVerificationExhausted(
                f"Resource '{run.name}' did not reach desired state after {attempts} attempt(s)",
                attempts=attempts,
                resource=run.name,
                anchor=kind,
                observed=rows,
            )
        if kind == 'exports':
            run.proxy_rows = rows
        logger.info(f"[{run.name}] verified in desired state (attempt {attempts}/{retries})")

    def _exports_from_row(self, run: _ResourceRun, row: Row, strict: bool = True) -> dict[str, Any]:
        exports: dict[str, Any] = {}
        for column, name in run.resource.export_columns():
            if column not in row:
                if strict:
                    raise ExecutionError(
                        f"Export '{column}' not returned by exports query",
                        resource=run.name, anchor='exports', observed=[row],
                    )
                continue
            value = row[column]
            exports[name] = '' if value is None else value
        return exports

    def _exports(self, run: _ResourceRun) -> dict[str, Any]:
        """Run the exports anchor (or reuse proxy rows) and map declared columns.

        An empty result is polled again up to the anchor's retries.
        """
        if not run.resource.exports:
            return {}
        run.outcome.enter('exporting')
        self._require(run, 'exports')
        rows = run.proxy_rows
        if rows is None:
            anchor = run.anchors['exports']
            retries = anchor.option('retries', self.settings.default_retries)
            delay = anchor.option('retry_delay', self.settings.default_retry_delay)
            _, rows, _ = self._poll(run, 'exports', retries, delay, self._has_rows)
        if len(rows) != 1:
            raise ExecutionError(
                f"Exports query for '{run.name}' returned {len(rows)} rows, expected 1",
                resource=run.name, anchor='exports', observed=rows,
            )
        return self._exports_from_row(run, rows[0])

    def _script_exports(self, run: _ResourceRun) -> dict[str, Any]:
        """Run a script resource and read a JSON object of exports from stdout."""
        self._check_cancel(run, 'run')
        script = self.renderer.render(run.resource.run, run.view, resource=run.name, anchor='run')
        logger.info(f"Running script for [{run.name}]")
        logger.debug(f"[{run.name}] script:\n{script}")
        rc, out, err = run_shell(script, cwd=run.stack_dir)
        if rc != 0:
            raise ExecutionError(
                f"Script for '{run.name}' failed (rc={rc}): {err.strip()}",
                resource=run.name, anchor='run', observed=err,
            )
        if not run.resource.exports:
            return {}
        try:
            data = json.loads(out)
        except ValueError as e:
            raise ExecutionError(
                f"Script for '{run.name}' did not print a JSON object: {e}",
                resource=run.name, anchor='run', observed=out,
            )
        if not isinstance(data, dict):
            raise ExecutionError(
                f"Script for '{run.name}' printed {type(data).__name__}, expected a JSON object",
                resource=run.name, anchor='run', observed=out,
            )
        return self._exports_from_row(run, data)

    def _dry_run(self, run: _ResourceRun, mode: str) -> dict[str, Any]:
        """Render every anchor the mode would use, log them, execute nothing."""
        for kind in DRY_RUN_ANCHORS[mode]:
            if kind in run.anchors:
                query = self.renderer.render(run.anchors[kind].template, run.view, resource=run.name, anchor=kind)
                logger.info(f"[dry run] [{run.name}] {kind} query:\n{query}")
        if run.resource.type == 'script':
            script = self.renderer.render(run.resource.run, run.view, resource=run.name, anchor='run')
            logger.info(f"[dry run] [{run.name}] script:\n{script}")
        run.outcome.finish(SKIPPED)
        if mode == 'teardown':
            return {}
        return {name: DRY_RUN_VALUE for name in run.resource.export_names()}

    def build(
        self,
        resource: ResourceDecl,
        manifest: StackManifest,
        context: VariableContext,
        outcome: ResourceOutcome,
    ) -> dict[str, Any]:
        """Bring one resource to its desired state.

        Returns:
            Exported values for the orchestrator to record
        """
        run = self._prepare(resource, manifest, context, outcome)
        if run is None:
            outcome.finish(SKIPPED)
            return {}
        if self.dry_run:
            return self._dry_run(run, 'build')

        if resource.type == 'query':
            exports = self._exports(run)
            outcome.finish(SKIPPED)
            return exports

        if resource.type == 'script':
            exports = self._script_exports(run)
            outcome.finish(UPDATED)
            return exports

        if resource.type == 'command':
            self._require(run, 'command')
            outcome.enter('updating')
            self._execute(run, 'command')
            exports = self._exports(run)
            outcome.finish(UPDATED)
            return exports

        if 'createorupdate' in run.anchors:
            outcome.enter('fast_path')
            logger.info(f"Creating or updating [{run.name}]...")
            self._mutate(run, 'createorupdate')
            status = CREATED
        else:
            state = self._classify(run)
            if state == NO_DATA:
                self._require(run, 'create')
                outcome.enter('creating')
                logger.info(f"Creating [{run.name}]...")
                self._mutate(run, 'create')
                status = CREATED
            elif state == DATA_NOT_DESIRED:
                self._require(run, 'update')
                outcome.enter('updating')
                logger.info(f"Updating [{run.name}]...")
                self._mutate(run, 'update')
                status = UPDATED
            else:
                outcome.enter('skipped')
                logger.info(f"[{run.name}] exists and is in the desired state")
                status = SKIPPED

        if status != SKIPPED:
            run.proxy_rows = None
        self._verify(run)
        exports = self._exports(run)
        outcome.finish(status)
        return exports

    def test(
        self,
        resource: ResourceDecl,
        manifest: StackManifest,
        context: VariableContext,
        outcome: ResourceOutcome,
    ) -> dict[str, Any]:
        """Check one resource against its desired state without changing it.

        Drift is recorded on the outcome ('absent' or 'not_desired');
        exports are returned whenever the resource exists.
        """
        run = self._prepare(resource, manifest, context, outcome)
        if run is None:
            outcome.finish(SKIPPED)
            return {}
        if self.dry_run:
            return self._dry_run(run, 'test')

        if resource.type == 'query':
            exports = self._exports(run)
            outcome.finish(SKIPPED)
            return exports
        if resource.type == 'script':
            exports = self._script_exports(run)
            outcome.finish(SKIPPED)
            return exports
        if resource.type == 'command':
            logger.info(f"Skipping command [{run.name}] in test mode")
            outcome.finish(SKIPPED)
            return {}

        retries = 1
        kind = self._desired_kind(run)
        if kind is not None and not resource.skip_validation:
            retries = run.anchors[kind].option('retries', self.settings.default_retries)
        state = self._classify(run, desired_retries=retries)

        if state == NO_DATA:
            logger.warning(f"[{run.name}] does not exist")
            outcome.drift = DRIFT_ABSENT
            outcome.finish(SKIPPED)
            return {}
        if state == DATA_NOT_DESIRED:
            logger.warning(f"[{run.name}] exists but is not in the desired state")
            outcome.drift = DRIFT_NOT_DESIRED
            run.proxy_rows = None
        else:
            logger.info(f"[{run.name}] exists and is in the desired state")

        exports = self._exports(run)
        outcome.finish(SKIPPED)
        return exports

    def teardown(
        self,
        resource: ResourceDecl,
        manifest: StackManifest,
        context: VariableContext,
        outcome: ResourceOutcome,
    ) -> None:
        """Delete one resource and confirm it is gone."""
        if resource.type not in MANAGED_TYPES:
            logger.info(f"Skipping {resource.type} [{resource.name}] in teardown")
            outcome.finish(SKIPPED)
            return

        run = self._prepare(resource, manifest, context, outcome)
        if run is None:
            outcome.finish(SKIPPED)
            return
        if self.dry_run:
            self._dry_run(run, 'teardown')
            return
        if 'delete' not in run.anchors:
            logger.info(f"No delete anchor for [{run.name}], skipping")
            outcome.finish(SKIPPED)
            return

        probe = 'exists' if 'exists' in run.anchors else ('statecheck' if 'statecheck' in run.anchors else None)
        if resource.type == 'multi':
            logger.info(f"Pre-delete check not supported for multi resource [{run.name}], deleting")
        elif probe is not None:
            outcome.enter('checking_existence')
            present, _, _ = self._poll(run, probe, 1, 0, self._matches)
            if not present:
                logger.info(f"[{run.name}] does not exist, nothing to delete")
                outcome.finish(SKIPPED)
                return

        outcome.enter('deleting')
        logger.info(f"Deleting [{run.name}]...")
        self._mutate(run, 'delete')

        if probe is not None:
            outcome.enter('verifying_absence')
            anchor = run.anchors[probe]
            retries = anchor.option('postdelete_retries', self.settings.postdelete_retries)
            delay = anchor.option('postdelete_retry_delay', self.settings.postdelete_retry_delay)
            gone, rows, attempts = self._poll(run, probe, max(retries, 1), delay, self._absent)
            outcome.attempts = attempts
            if not gone:
                raise StateVerificationExhausted(
                    f"Resource '{run.name}' still exists after {attempts} check(s)",
                    attempts=attempts,
                    resource=run.name,
                    anchor=probe,
                    observed=rows,
                )
            logger.info(f"[{run.name}] deleted")
        outcome.finish(DELETED)

    def collect_exports(
        self,
        resource: ResourceDecl,
        manifest: StackManifest,
        context: VariableContext,
    ) -> dict[str, Any]:
        """Read a resource's exports ahead of teardown.

        Only read-only queries and scripts run. A resource that is gone, whose
        exports depend on values no longer available, or whose exports query
        fails, exports nothing.
        """
        if not resource.exports or resource.type == 'command':
            return {}
        outcome = ResourceOutcome(name=resource.name, type=resource.type)
        try:
            run = self._prepare(resource, manifest, context, outcome)
        except MissingVariable as e:
            logger.info(f"Not collecting exports for [{resource.name}]: {e}")
            return {}
        if run is None:
            return {}
        if self.dry_run:
            return {name: DRY_RUN_VALUE for name in resource.export_names()}
        try:
            if resource.type == 'script':
                return self._script_exports(run)
            if 'exports' not in run.anchors:
                return {}
            rows = self._execute(run, 'exports')
        except MissingVariable as e:
            logger.info(f"Not collecting exports for [{resource.name}]: {e}")
            return {}
        except ExecutionError as e:
            logger.warning(f"Not collecting exports for [{resource.name}]: {e}")
            return {}
        if len(rows) != 1:
            logger.debug(f"[{resource.name}] exports returned {len(rows)} rows, not collecting")
            return {}
        return self._exports_from_row(run, rows[0], strict=False)
