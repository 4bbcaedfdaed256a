#!/usr/bin/env python3
"""Admin maintenance CLI for the record store."""

from __future__ import annotations

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from services.intake_sessions import IntakeSessionRepository
from services.knowledge_service import create_instruction
from services.store import SqliteRecordStore, build_store


def load_settings():
    return {name: getattr(Config, name) for name in dir(Config) if name.isupper()}


def open_store():
    return build_store(load_settings())


def init_db():
    store = open_store()
    if not isinstance(store, SqliteRecordStore):
        print("skipped=hosted_backend")
        return
    store.init_schema()
    print(f"initialized={store.path}")


def add_instruction(text: str, priority: int):
    row = create_instruction(open_store(), text, priority)
    print(f"created_id={row.get('id')}")


def list_questions(limit: int):
    rows = open_store().select('popular_questions', order='-frequency', limit=limit)
    for row in rows:
        print(f"{row.get('frequency', 0):>5}  {row.get('question_text')}")
    print(f"rows={len(rows)}")


def purge_sessions():
    settings = load_settings()
    repository = IntakeSessionRepository(open_store(), settings.get('INTAKE_SESSION_TTL_HOURS', 12))
    print(f"purged_sessions={repository.purge_expired()}")


def main():
    parser = argparse.ArgumentParser(description='AI Masterclass admin utility')
    sub = parser.add_subparsers(dest='cmd', required=True)

    sub.add_parser('init-db')

    p1 = sub.add_parser('add-instruction')
    p1.add_argument('--text', required=True)
    p1.add_argument('--priority', type=int, default=1)

    p2 = sub.add_parser('list-questions')
    p2.add_argument('--limit', type=int, default=20)

    sub.add_parser('purge-sessions')

    args = parser.parse_args()

    if args.cmd == 'init-db':
        init_db()
    elif args.cmd == 'add-instruction':
        add_instruction(args.text, args.priority)
    elif args.cmd == 'list-questions':
        list_questions(args.limit)
    elif args.cmd == 'purge-sessions':
        purge_sessions()


if __name__ == '__main__':
    main()
