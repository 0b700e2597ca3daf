"""
Default query port backed by sqlite3.
"""
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from gel.gel_ports import QueryPort

logger = logging.getLogger(__name__)


class SqliteQueryExecutor(QueryPort):
    """
    Runs `query!` statements against named sqlite databases.

    `datasources` maps the name used in scripts to a database path (or
    ":memory:"). Each thread gets its own connection per datasource, opened
    on first use and kept until close(). SELECT statements give a list of
    dicts in column order; the other kinds are committed and give the
    affected row count.
    """

    def __init__(self, datasources: Optional[Dict[str, Union[str, Path]]] = None):
        self.datasources = {name: str(path) for name, path in (datasources or {}).items()}
        self._local = threading.local()
        self._lock = threading.Lock()
        self._opened: List[sqlite3.Connection] = []

    def _connect(self, datasource: str) -> sqlite3.Connection:
        conns = getattr(self._local, 'conns', None)
        if conns is None:
            conns = self._local.conns = {}
        conn = conns.get(datasource)
        if conn is None:
            if datasource not in self.datasources:
                raise ValueError(f"unknown datasource '{datasource}'")
            # close() may run on another thread than the one that opened it.
            conn = sqlite3.connect(self.datasources[datasource], check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conns[datasource] = conn
            with self._lock:
                self._opened.append(conn)
        return conn

    def execute(self, datasource: str, kind: str, sql_text: str, params: List[Any]) -> Any:
        conn = self._connect(datasource)
        logger.debug("query %s (%s): %s %r", datasource, kind, sql_text.strip(), params)
        cursor = conn.execute(sql_text, tuple(params))
        if kind == "SELECT":
            return [dict(row) for row in cursor.fetchall()]
        conn.commit()
        return cursor.rowcount

    def close(self):
        with self._lock:
            opened, self._opened = self._opened, []
            self._local = threading.local()
        for conn in opened:
            conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
