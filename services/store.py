"""Record store for chat transcripts, instructions, knowledge, questions, profiles and intake sessions.

Two backends share one interface:

* ``SqliteRecordStore`` keeps every table in a local SQLite file. It is the
  default for development, single-box deploys and the test-suite.
* ``RestRecordStore`` talks to a hosted PostgREST-style backend (the same
  API a Supabase project exposes under ``/rest/v1``) using the project URL
  and key from the environment.

Rows travel as plain dicts. Ids are UUID strings on both backends and
timestamps are ISO-8601 strings in UTC.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import requests

from services.errors import ConfigurationError, StoreError

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r'^[a-z_][a-z0-9_]*$')

BOOLEAN_COLUMNS = {'is_active', 'collecting', 'flushed'}

Row = Dict[str, Any]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse timestamps written by either backend into aware datetimes."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip().replace('Z', '+00:00')
        if 'T' not in text and ' ' in text:
            text = text.replace(' ', 'T', 1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _ident(name: str) -> str:
    if not _IDENTIFIER.match(name or ''):
        raise ValueError(f'Invalid identifier: {name!r}')
    return name


def _split_order(order: Optional[str]):
    if not order:
        return None, False
    if order.startswith('-'):
        return _ident(order[1:]), True
    return _ident(order), False


class RecordStore:
    """Interface implemented by both backends."""

    def select(self, table: str, *, filters: Optional[Row] = None, order: Optional[str] = None,
               limit: Optional[int] = None) -> List[Row]:
        raise NotImplementedError

    def insert(self, table: str, values: Row) -> Row:
        raise NotImplementedError

    def update(self, table: str, values: Row, filters: Row) -> int:
        raise NotImplementedError

    def delete(self, table: str, filters: Row) -> int:
        raise NotImplementedError

    def search(self, table: str, term: str, columns: Iterable[str], *, order: Optional[str] = None,
               limit: Optional[int] = None) -> List[Row]:
        raise NotImplementedError

    def first(self, table: str, filters: Row) -> Optional[Row]:
        rows = self.select(table, filters=filters, limit=1)
        return rows[0] if rows else None

    def upsert(self, table: str, match: Row, values: Row) -> str:
        """Update the row matching ``match`` or insert a new one.

        Returns ``'updated'`` or ``'inserted'``.
        """
        if self.first(table, match):
            self.update(table, values, match)
            return 'updated'
        row = dict(match)
        row.update(values)
        self.insert(table, row)
        return 'inserted'


# ===== SQLITE BACKEND =====

SCHEMA = (
    '''
    CREATE TABLE IF NOT EXISTS chatbot_instructions (
        id TEXT PRIMARY KEY,
        instruction_text TEXT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 1,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
        updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS knowledge_base (
        id TEXT PRIMARY KEY,
        filename TEXT NOT NULL,
        file_type TEXT NOT NULL,
        content TEXT NOT NULL,
        file_size INTEGER,
        status TEXT NOT NULL DEFAULT 'active',
        upload_date TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS chat_analytics (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        user_message TEXT NOT NULL,
        ai_response TEXT NOT NULL,
        response_time_ms INTEGER,
        tokens_used INTEGER,
        user_email TEXT,
        timestamp TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
        created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS popular_questions (
        id TEXT PRIMARY KEY,
        question_text TEXT NOT NULL,
        frequency INTEGER NOT NULL DEFAULT 1,
        category TEXT DEFAULT 'general',
        last_asked TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
        created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        name TEXT,
        email TEXT NOT NULL,
        phone TEXT,
        law_firm_name TEXT,
        practice_type TEXT,
        source TEXT,
        created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
        updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS chat_sessions (
        id TEXT PRIMARY KEY,
        session_id TEXT UNIQUE NOT NULL,
        source TEXT,
        user_turns INTEGER NOT NULL DEFAULT 0,
        collecting INTEGER NOT NULL DEFAULT 0,
        step TEXT NOT NULL DEFAULT 'full_name',
        contact TEXT NOT NULL DEFAULT '{}',
        flushed INTEGER NOT NULL DEFAULT 0,
        reporting_email TEXT,
        created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
        updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
    )
    ''',
    # Performance indexes
    'CREATE INDEX IF NOT EXISTS idx_instructions_priority ON chatbot_instructions(priority)',
    'CREATE INDEX IF NOT EXISTS idx_knowledge_status ON knowledge_base(status)',
    'CREATE INDEX IF NOT EXISTS idx_chat_analytics_session ON chat_analytics(session_id)',
    'CREATE INDEX IF NOT EXISTS idx_chat_analytics_timestamp ON chat_analytics(timestamp)',
    'CREATE INDEX IF NOT EXISTS idx_questions_text ON popular_questions(question_text)',
    'CREATE INDEX IF NOT EXISTS idx_profiles_email ON profiles(email)',
)


class SqliteRecordStore(RecordStore):
    def __init__(self, path: str):
        self.path = path

    def connect(self):
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        return conn

    def init_schema(self):
        """Create tables and indexes if they do not exist yet."""
        conn = self.connect()
        c = conn.cursor()
        for statement in SCHEMA:
            c.execute(statement)
        conn.commit()
        conn.close()

    def _run(self, sql: str, params: Iterable[Any] = (), *, fetch: bool = False):
        try:
            conn = self.connect()
            try:
                c = conn.cursor()
                c.execute(sql, tuple(params))
                result = c.fetchall() if fetch else c.rowcount
                conn.commit()
                return result
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.error('SQLite statement failed: %s (%s)', exc, sql.split()[0])
            raise StoreError('Record store query failed') from exc

    @staticmethod
    def _where(filters: Optional[Row]):
        if not filters:
            return '', []
        clauses, params = [], []
        for column, value in filters.items():
            if value is None:
                clauses.append(f'{_ident(column)} IS NULL')
            else:
                clauses.append(f'{_ident(column)} = ?')
                params.append(value)
        return ' WHERE ' + ' AND '.join(clauses), params

    @staticmethod
    def _decode(row) -> Row:
        data = dict(row)
        for column in BOOLEAN_COLUMNS & data.keys():
            data[column] = bool(data[column])
        return data

    @staticmethod
    def _tail(order: Optional[str], limit: Optional[int]):
        column, descending = _split_order(order)
        sql = ''
        if column:
            sql += f' ORDER BY {column} {"DESC" if descending else "ASC"}'
        if limit:
            sql += f' LIMIT {int(limit)}'
        return sql

    def select(self, table, *, filters=None, order=None, limit=None):
        where, params = self._where(filters)
        sql = f'SELECT * FROM {_ident(table)}{where}{self._tail(order, limit)}'
        return [self._decode(row) for row in self._run(sql, params, fetch=True)]

    def insert(self, table, values):
        row = dict(values)
        row.setdefault('id', str(uuid.uuid4()))
        columns = [_ident(column) for column in row]
        placeholders = ', '.join('?' for _ in columns)
        self._run(
            f'INSERT INTO {_ident(table)} ({", ".join(columns)}) VALUES ({placeholders})',
            list(row.values()),
        )
        return self.first(table, {'id': row['id']}) or row

    def update(self, table, values, filters):
        if not values:
            return 0
        assignments = ', '.join(f'{_ident(column)} = ?' for column in values)
        where, params = self._where(filters)
        return self._run(f'UPDATE {_ident(table)} SET {assignments}{where}', list(values.values()) + params)

    def delete(self, table, filters):
        where, params = self._where(filters)
        return self._run(f'DELETE FROM {_ident(table)}{where}', params)

    def search(self, table, term, columns, *, order=None, limit=None):
        if not term:
            return self.select(table, order=order, limit=limit)
        escaped = term.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
        columns = [_ident(column) for column in columns]
        where = ' OR '.join(f"{column} LIKE ? ESCAPE '\\'" for column in columns)
        sql = f'SELECT * FROM {_ident(table)} WHERE ({where}){self._tail(order, limit)}'
        params = [f'%{escaped}%'] * len(columns)
        return [self._decode(row) for row in self._run(sql, params, fetch=True)]


# ===== HOSTED REST BACKEND =====

def _literal(value: Any) -> str:
    if value is None:
        return 'is.null'
    if isinstance(value, bool):
        return f'eq.{"true" if value else "false"}'
    return f'eq.{value}'


class RestRecordStore(RecordStore):
    def __init__(self, base_url: str, api_key: str, *, timeout: float = 15.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/') + '/rest/v1'
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'apikey': api_key,
            'Authorization': f'Bearer {api_key}',
            'Content-Type': 'application/json',
        })

    def _request(self, method: str, table: str, *, params=None, json=None, prefer=None):
        headers = {'Prefer': prefer} if prefer else None
        url = f'{self.base_url}/{_ident(table)}'
        try:
            response = self.session.request(method, url, params=params, json=json, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            logger.error('Record store request failed: %s %s: %s', method, table, exc)
            raise StoreError(f'Record store request failed for {table}') from exc

        if response.status_code >= 400:
            logger.error('Record store error: %s %s -> %s %s', method, table, response.status_code, response.text)
            raise StoreError(
                f'Record store rejected {method} on {table}',
                upstream_status=response.status_code,
                upstream_body=response.text,
            )
        if not response.content:
            return []
        return response.json()

    @staticmethod
    def _params(filters=None, order=None, limit=None):
        params = {'select': '*'}
        for column, value in (filters or {}).items():
            params[_ident(column)] = _literal(value)
        column, descending = _split_order(order)
        if column:
            params['order'] = f'{column}.{"desc" if descending else "asc"}'
        if limit:
            params['limit'] = str(int(limit))
        return params

    def select(self, table, *, filters=None, order=None, limit=None):
        return self._request('GET', table, params=self._params(filters, order, limit))

    def insert(self, table, values):
        rows = self._request('POST', table, json=values, prefer='return=representation')
        return rows[0] if rows else dict(values)

    def update(self, table, values, filters):
        params = {column: value for column, value in self._params(filters).items() if column != 'select'}
        rows = self._request('PATCH', table, params=params, json=values, prefer='return=representation')
        return len(rows)

    def delete(self, table, filters):
        params = {column: value for column, value in self._params(filters).items() if column != 'select'}
        rows = self._request('DELETE', table, params=params, prefer='return=representation')
        return len(rows)

    def search(self, table, term, columns, *, order=None, limit=None):
        params = self._params(order=order, limit=limit)
        if term:
            quoted = term.replace('\\', '\\\\').replace('"', '\\"')
            params['or'] = '(' + ','.join(f'{_ident(column)}.ilike."*{quoted}*"' for column in columns) + ')'
        return self._request('GET', table, params=params)


def build_store(config) -> RecordStore:
    """Create the configured backend, raising ConfigurationError when settings are missing."""
    backend = (config.get('STORE_BACKEND') or 'sqlite').lower()
    if backend == 'rest':
        missing = [name for name in ('BACKEND_URL', 'BACKEND_KEY') if not config.get(name)]
        if missing:
            raise ConfigurationError(
                details='Missing required environment variables: ' + ', '.join(missing),
                reason='missing_backend_config',
            )
        return RestRecordStore(
            config['BACKEND_URL'],
            config['BACKEND_KEY'],
            timeout=config.get('OUTBOUND_TIMEOUT_SECONDS', 15.0),
        )
    if backend == 'sqlite':
        if not config.get('DATABASE_PATH'):
            raise ConfigurationError(details='DATABASE_PATH must be set for the sqlite store', reason='missing_database_path')
        return SqliteRecordStore(config['DATABASE_PATH'])
    raise ConfigurationError(details=f'Unknown STORE_BACKEND {backend!r}', reason='invalid_store_backend')
