"""Create the SQLite schema and seed an admin account.

Usage: python init_db.py [--db database.db] [--admin-user admin] [--admin-password admin123]
"""
import argparse
import os

from campus_vote import accounts
from campus_vote.errors import Conflict
from campus_vote.sqlite_store import SqliteStore, connect, init_schema


def main(argv=None):
    p = argparse.ArgumentParser()
    p.add_argument('--db', default=os.environ.get('DATABASE', 'database.db'))
    p.add_argument('--admin-user', default='admin')
    p.add_argument('--admin-password', default=os.environ.get('ADMIN_PASSWORD', 'admin123'))
    args = p.parse_args(argv)

    db = connect(args.db)
    init_schema(db)
    store = SqliteStore(db)
    try:
        accounts.create_admin(store, args.admin_user, args.admin_password)
        print(f'Created admin user {args.admin_user}')
    except Conflict:
        print(f'Admin user {args.admin_user} already exists')
    store.add_audit('init', 'system', 'database initialized')
    db.close()


if __name__ == '__main__':
    main()
