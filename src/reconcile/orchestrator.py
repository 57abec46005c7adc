"""Stack orchestration.

Walks a manifest's resources in build order (build, test) or teardown
order, driving the ReconciliationEngine per resource. Processing is
sequential and fail-fast: the first failed resource stops the run, and
outcomes of the resources before it are kept in the RunResult.

Exports of a succeeded resource are recorded in the VariableContext
between resources, never during one.
"""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from common import format_duration
from config import ConfigError, Settings
from manifest import StackManifest, load_manifest, render_globals
from reconcile.context import MISSING, VariableContext
from reconcile.engine import ReconciliationEngine
from reconcile.errors import ReconcileError
from reconcile.executor import ProviderInstaller, QueryExecutor
from reconcile.graph import ResourceGraph, ResourceNode
from reconcile.state import FailureDetail, ResourceOutcome, RunResult
from reconcile.templating import TemplateRenderer

logger = logging.getLogger(__name__)


class Mode:
    """Run modes."""
    BUILD = 'build'
    TEST = 'test'
    TEARDOWN = 'teardown'

    ALL = (BUILD, TEST, TEARDOWN)


class StackOrchestrator:
    """Runs every resource of a stack through the engine, in order."""

    def __init__(self, engine: ReconciliationEngine):
        self.engine = engine

    def run(self, manifest: StackManifest, context: VariableContext, mode: str) -> RunResult:
        """Run a stack in the given mode.

        Args:
            manifest: Loaded stack manifest
            context: Run context with overrides and rendered globals
            mode: Mode.BUILD, Mode.TEST or Mode.TEARDOWN

        Returns:
            RunResult with one outcome per resource processed
        """
        if mode not in Mode.ALL:
            raise ValueError(f"Unknown mode: {mode}")

        result = RunResult(stack_name=manifest.name, stack_env=context.stack_env, mode=mode)
        result.start()
        graph = ResourceGraph(manifest)

        if mode == Mode.TEARDOWN:
            if self._collect_exports(graph, manifest, context, result):
                self._run_nodes(graph.teardown_order(), manifest, context, mode, result)
        else:
            self._run_nodes(graph.build_order(), manifest, context, mode, result)

        result.finish()
        self._log_summary(result)
        return result

    def _collect_exports(
        self,
        graph: ResourceGraph,
        manifest: StackManifest,
        context: VariableContext,
        result: RunResult,
    ) -> bool:
        """Read exports in build order so delete templates can use them."""
        logger.info("Collecting exports before teardown...")
        for node in graph.build_order():
            try:
                exports = self.engine.collect_exports(node.resource, manifest, context)
            except (ReconcileError, ConfigError) as e:
                logger.error(f"Collecting exports for [{node.name}] failed: {e}")
                outcome = ResourceOutcome(name=node.name, type=node.type)
                outcome.fail(e)
                result.outcomes.append(outcome)
                result.first_failure = FailureDetail.from_error(e, resource=node.name)
                return False
            if exports:
                context.export(node.name, exports, protected=node.resource.protected)
        return True

    def _run_nodes(
        self,
        nodes: list[ResourceNode],
        manifest: StackManifest,
        context: VariableContext,
        mode: str,
        result: RunResult,
    ) -> None:
        for node in nodes:
            resource = node.resource
            outcome = ResourceOutcome(name=node.name, type=node.type)
            result.outcomes.append(outcome)
            outcome.start()
            logger.info(f"Processing [{node.name}] ({mode})...")

            try:
                if mode == Mode.BUILD:
                    exports = self.engine.build(resource, manifest, context, outcome)
                elif mode == Mode.TEST:
                    exports = self.engine.test(resource, manifest, context, outcome)
                else:
                    self.engine.teardown(resource, manifest, context, outcome)
                    exports = {}
            except (ReconcileError, ConfigError) as e:
                phase = outcome.phase
                outcome.fail(e)
                result.first_failure = FailureDetail.from_error(e, resource=node.name)
                logger.error(f"[{node.name}] failed while {phase}: {e}")
                return

            if exports:
                outcome.exports = dict(exports)
                context.export(node.name, exports, protected=resource.protected)
            logger.info(f"[{node.name}] {outcome.status} in {format_duration(outcome.duration or 0.0)}")

    def _log_summary(self, result: RunResult) -> None:
        counts: dict[str, int] = {}
        for outcome in result.outcomes:
            counts[outcome.status] = counts.get(outcome.status, 0) + 1
        summary = ', '.join(f"{count} {status}" for status, count in sorted(counts.items())) or 'no resources'
        elapsed = format_duration(result.duration)
        if result.success:
            logger.info(f"{result.mode} of {result.stack_name} ({result.stack_env}) complete: {summary} [{elapsed}]")
        else:
            failure = result.first_failure
            logger.error(
                f"{result.mode} of {result.stack_name} ({result.stack_env}) failed at "
                f"[{failure.resource}]: {failure.error_kind}: {failure.message} [{elapsed}]"
            )
        if result.drifted:
            logger.warning(f"Drift detected in: {', '.join(result.drifted)}")


def _failed_before_start(stack_name: str, stack_env: str, mode: str, error: Exception) -> RunResult:
    result = RunResult(stack_name=stack_name, stack_env=stack_env, mode=mode)
    result.start()
    result.first_failure = FailureDetail.from_error(error)
    result.finish()
    logger.error(f"{mode} of {stack_name} ({stack_env}) failed: {error}")
    return result


def run_stack(
    manifest_path: Path,
    stack_env: str,
    mode: str,
    variable_overrides: Optional[dict[str, str]] = None,
    executor: Optional[QueryExecutor] = None,
    settings: Optional[Settings] = None,
    dry_run: bool = False,
    show_queries: bool = False,
    cancel: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
    output_file: Optional[Path] = None,
) -> RunResult:
    """Load a stack and run it.

    Manifest and global rendering errors come back as a failed RunResult
    with no outcomes; nothing here exits the process.

    Args:
        manifest_path: Stack directory or manifest file
        stack_env: Target environment name (e.g. dev, prod)
        mode: Mode.BUILD, Mode.TEST or Mode.TEARDOWN
        variable_overrides: Values for the outermost context scope
        executor: Query executor (may be None for dry runs)
        settings: Retry defaults and duplicate-anchor policy
        dry_run: Render and log queries without executing them
        show_queries: Log rendered queries at info level
        cancel: Event that stops the run at the next query
        sleep: Delay function between polls
        output_file: Where to write stack exports after a successful build

    Returns:
        RunResult
    """
    try:
        manifest = load_manifest(Path(manifest_path))
    except ConfigError as e:
        return _failed_before_start(Path(manifest_path).name, stack_env, mode, e)

    renderer = TemplateRenderer()
    context = VariableContext(overrides=variable_overrides, stack_name=manifest.name, stack_env=stack_env)

    try:
        render_globals(manifest, context, renderer)
    except ReconcileError as e:
        return _failed_before_start(manifest.name, stack_env, mode, e)

    if not dry_run and isinstance(executor, ProviderInstaller):
        try:
            executor.pull_providers(manifest.providers)
        except ReconcileError as e:
            return _failed_before_start(manifest.name, stack_env, mode, e)

    logger.info(f"Running {mode} for stack [{manifest.name}] in [{stack_env}]")
    engine = ReconciliationEngine(
        executor,
        renderer=renderer,
        settings=settings,
        sleep=sleep,
        dry_run=dry_run,
        show_queries=show_queries,
        cancel=cancel,
    )
    result = StackOrchestrator(engine).run(manifest, context, mode)

    if output_file and mode == Mode.BUILD and result.success and not dry_run:
        try:
            write_stack_exports(result, context, manifest, output_file)
        except ConfigError as e:
            logger.error(f"Writing stack exports failed: {e}")
            result.first_failure = FailureDetail.from_error(e)
    return result


def write_stack_exports(result: RunResult, context: VariableContext, manifest: StackManifest, path: Path) -> Path:
    """Write the manifest's stack-level exports as JSON.

    Raises:
        ConfigError: If a declared export is not in the context
    """
    data: dict = {
        'stack_name': manifest.name,
        'stack_env': context.stack_env,
    }
    for name in manifest.exports:
        value = context.get(name)
        if value is MISSING:
            raise ConfigError(f"Stack export '{name}' is not defined in the run context")
        data[name] = value
    data['elapsed_time'] = format_duration(result.duration)

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)
    logger.info(f"Exported {len(manifest.exports)} variable(s) to {path}")
    return path
