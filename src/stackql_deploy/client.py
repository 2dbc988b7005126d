"""Execution engine interface and the StackQL server client."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import psycopg

logger = logging.getLogger(__name__)

DEFAULT_SERVER_HOST = "localhost"
DEFAULT_SERVER_PORT = 5444


@dataclass
class Rows:
    """A result set, possibly accompanied by server notices."""

    columns: list[str]
    rows: list[dict[str, str]]
    notices: list[str] = field(default_factory=list)


@dataclass
class CommandResult:
    """A statement that completed without returning rows."""

    message: str


@dataclass
class Empty:
    """A statement that produced neither rows, notices, nor a status."""


@dataclass
class EngineError:
    """A statement the engine rejected."""

    message: str


Result = Rows | CommandResult | Empty | EngineError


class Engine(Protocol):
    """Anything that can run a statement and return a tagged result."""

    def execute(self, statement: str) -> Result: ...


def _to_text(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _format_notice(diag: psycopg.errors.Diagnostic) -> str:
    text = diag.message_primary or "Unknown notice"
    if diag.message_detail:
        text += f"\nDETAIL: {diag.message_detail}"
    if diag.message_hint:
        text += f"\nHINT: {diag.message_hint}"
    return text


class StackQLClient:
    """Single long-lived session to a StackQL server over the Postgres wire protocol.

    The connection is opened on first use, so a run that never dispatches a
    statement never connects.
    """

    def __init__(self, host: str = DEFAULT_SERVER_HOST, port: int = DEFAULT_SERVER_PORT) -> None:
        self.host = host
        self.port = port
        self._conn: psycopg.Connection | None = None
        self._notices: list[str] = []

    def _connect(self) -> psycopg.Connection:
        if self._conn is None:
            logger.debug("Connecting to stackql server at %s:%d", self.host, self.port)
            self._conn = psycopg.connect(
                host=self.host,
                port=self.port,
                user="stackql",
                dbname="stackql",
                autocommit=True,
                cursor_factory=psycopg.ClientCursor,
            )
            self._conn.add_notice_handler(lambda diag: self._notices.append(_format_notice(diag)))
            logger.info("Connected to stackql server at %s:%d", self.host, self.port)
        return self._conn

    def execute(self, statement: str) -> Result:
        self._notices = []
        try:
            conn = self._connect()
            with conn.cursor() as cur:
                cur.execute(statement)
                if cur.description is not None:
                    columns = [col.name for col in cur.description]
                    rows = [
                        {name: _to_text(value) for name, value in zip(columns, row, strict=False)}
                        for row in cur.fetchall()
                    ]
                    if rows or self._notices:
                        return Rows(columns=columns, rows=rows, notices=list(self._notices))
                    return Empty()
                if self._notices:
                    return Rows(columns=[], rows=[], notices=list(self._notices))
                if cur.rowcount > 0:
                    return CommandResult(f"Command completed successfully (affected {cur.rowcount} rows)")
                if cur.statusmessage:
                    return CommandResult(cur.statusmessage)
                return Empty()
        except psycopg.Error as exc:
            return EngineError(f"Query execution failed: {exc}")

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
