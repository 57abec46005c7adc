"""Reconciliation engine for manifest-based stack deployment.

Renders per-resource query templates, executes them through a query
executor, and walks the manifest's resources in declared order (build,
test) or reverse order (teardown), carrying exported values forward.
"""
