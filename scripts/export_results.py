"""Export tallied results for one election to CSV or JSON.

Usage examples:
  python scripts/export_results.py --election 1 --format csv --out results.csv
  python scripts/export_results.py --election 1 --format json

Defaults: reads `database.db` in the working directory and writes a timestamped file if --out is omitted.
"""
import argparse
import csv
import json
from datetime import datetime, timezone

from campus_vote.sqlite_store import SqliteStore, connect
from campus_vote.tally import compute_results

FIELDS = ['position', 'rank', 'candidate_id', 'name', 'student_id', 'votes', 'percent', 'winner']


def read_rows(db_path, election_id):
    conn = connect(db_path)
    try:
        results = compute_results(SqliteStore(conn), election_id)
    finally:
        conn.close()
    return results.rows()


def write_csv(rows, out_path):
    with open(out_path, 'w', newline='', encoding='utf-8') as f:
        w = csv.DictWriter(f, fieldnames=FIELDS)
        w.writeheader()
        w.writerows(rows)


def write_json(rows, out_path):
    with open(out_path, 'w', encoding='utf-8') as f:
        json.dump(rows, f, indent=2)


def main(argv=None):
    p = argparse.ArgumentParser()
    p.add_argument('--db', default='database.db')
    p.add_argument('--election', type=int, required=True)
    p.add_argument('--format', choices=['csv', 'json'], default='csv')
    p.add_argument('--out', help='Output file path (optional)')
    args = p.parse_args(argv)

    rows = read_rows(args.db, args.election)
    ts = datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')
    out = args.out or f'results_{args.election}_{ts}.{args.format}'

    if args.format == 'csv':
        write_csv(rows, out)
    else:
        write_json(rows, out)

    print(f'Wrote {len(rows)} rows to {out}')


if __name__ == '__main__':
    main()
