"""Query executor for a StackQL server over the PostgreSQL wire protocol.

The server must already be running (stackql srv); connection parameters
come from Settings (server_host, server_port, server_user, server_dbname).

The server reports many provider errors as notices rather than SQL
errors, so notices are inspected after every query.
"""

import logging
from typing import Any, Optional

import psycopg
from psycopg.errors import Diagnostic
from psycopg.rows import dict_row

from config import Settings
from reconcile.errors import ExecutionError

logger = logging.getLogger(__name__)

# Notices with these prefixes are errors, not informational messages
ERROR_NOTICE_PREFIXES = (
    'http response status code: 4',
    'http response status code: 5',
    'error:',
    'disparity in fields to insert',
    'cannot find matching operation',
)


def is_error_notice(message: str) -> bool:
    return message.strip().startswith(ERROR_NOTICE_PREFIXES)


def _version_number(version: str) -> int:
    """'v24.11.00274' -> 241100274, for ordering provider versions."""
    digits = version.replace('v', '').replace('.', '')
    return int(digits) if digits.isdigit() else 0


class StackQLExecutor:
    """Runs rendered queries against a StackQL server.

    Usable as a context manager; the connection is opened on first use.
    """

    def __init__(
        self,
        host: str = 'localhost',
        port: int = 5444,
        user: str = 'stackql',
        dbname: str = 'stackql',
        connect_timeout: int = 10,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.dbname = dbname
        self.connect_timeout = connect_timeout
        self._conn: Optional[psycopg.Connection] = None
        self._notices: list[str] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> 'StackQLExecutor':
        return cls(
            host=settings.server_host,
            port=settings.server_port,
            user=settings.server_user,
            dbname=settings.server_dbname,
        )

    def __enter__(self) -> 'StackQLExecutor':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _on_notice(self, diag: Diagnostic) -> None:
        if diag.message_primary:
            self._notices.append(diag.message_primary)

    def _connection(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed:
            logger.debug(f"Connecting to query server at {self.host}:{self.port}")
            try:
                self._conn = psycopg.connect(
                    host=self.host,
                    port=self.port,
                    user=self.user,
                    dbname=self.dbname,
                    connect_timeout=self.connect_timeout,
                    autocommit=True,
                    row_factory=dict_row,
                    cursor_factory=psycopg.ClientCursor,
                )
            except psycopg.OperationalError as e:
                raise ExecutionError(
                    f"Cannot connect to query server at {self.host}:{self.port}: {e}"
                ) from e
            self._conn.add_notice_handler(self._on_notice)
        return self._conn

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None

    def execute(self, query: str) -> list[dict[str, Any]]:
        """Run a query and return its rows as dicts.

        Raises:
            ExecutionError: On connection or SQL errors, error notices, or
                a result row carrying an 'error' column
        """
        conn = self._connection()
        self._notices = []
        try:
            with conn.cursor() as cur:
                cur.execute(query)
                rows = cur.fetchall() if cur.description else []
        except psycopg.Error as e:
            raise ExecutionError(f"Query failed: {e}") from e

        for notice in self._notices:
            if is_error_notice(notice):
                raise ExecutionError(f"Query returned an error: {notice}", observed=list(self._notices))
            logger.debug(f"Notice: {notice}")

        if rows and 'error' in rows[0]:
            raise ExecutionError(f"Query returned an error: {rows[0]['error']}", observed=rows)
        return [dict(row) for row in rows]

    def installed_providers(self) -> dict[str, str]:
        """Installed provider name -> version."""
        return {
            str(row.get('name')): str(row.get('version', ''))
            for row in self.execute('SHOW PROVIDERS')
        }

    def pull_providers(self, providers: list[str]) -> None:
        """Install any listed provider that is missing.

        Providers may pin a version as name::version; a newer installed
        version satisfies the pin.
        """
        installed = self.installed_providers()
        for provider in providers:
            name, _, version = provider.partition('::')
            current = installed.get(name)
            if current is not None and (not version or _version_number(current) >= _version_number(version)):
                logger.info(f"Provider '{provider}' is already installed ({current})")
                continue
            logger.info(f"Pulling provider '{provider}'...")
            self.execute(f'REGISTRY PULL {name} {version}' if version else f'REGISTRY PULL {name}')
