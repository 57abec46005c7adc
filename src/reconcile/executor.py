"""Query executor contract.

The engine only sees rendered query text going in and rows coming out.
A row is a mapping of column name to value. Transport or engine errors
are raised as ExecutionError; a valid but non-matching result is just
rows.
"""

from typing import Any, Protocol, runtime_checkable

Row = dict[str, Any]


@runtime_checkable
class QueryExecutor(Protocol):
    """Protocol for anything that can run a rendered query."""

    def execute(self, query: str) -> list[Row]:
        """Run a query and return its rows.

        Raises:
            ExecutionError: If the engine reported an error
        """


@runtime_checkable
class ProviderInstaller(Protocol):
    """Executors that can install provider packages before a run."""

    def pull_providers(self, providers: list[str]) -> None:
        """Make sure every listed provider is installed."""
