import csv
import io
import logging

from campus_vote.errors import ElectionNotFound, InvalidInput
from campus_vote.store import Store

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ('studentId', 'name')


def parse_roster(csv_text: str) -> list[dict[str, str]]:
    """Valid rows from roster CSV text. Rows missing a student id or name are dropped."""
    reader = csv.DictReader(io.StringIO(csv_text))
    if not reader.fieldnames:
        raise InvalidInput('CSV data is empty')
    header = [h.strip() for h in reader.fieldnames]
    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise InvalidInput(f'CSV is missing columns: {", ".join(missing)}')
    reader.fieldnames = header

    rows = []
    skipped = 0
    for record in reader:
        student_id = (record.get('studentId') or '').strip()
        name = (record.get('name') or '').strip()
        if not student_id or not name:
            skipped += 1
            continue
        rows.append({'student_id': student_id, 'name': name, 'department': (record.get('department') or '').strip()})
    if skipped:
        logger.debug('Skipped %d invalid roster rows', skipped)
    return rows


def import_roster(store: Store, election_id: int, csv_text: str) -> int:
    """Add the CSV's voters to the election roster; returns how many were created."""
    if not isinstance(csv_text, str):
        raise InvalidInput('CSV data must be text')
    if store.get_election(election_id) is None:
        raise ElectionNotFound(election_id)
    rows = parse_roster(csv_text)
    if not rows:
        raise InvalidInput('No valid voter records found in CSV')
    created = store.bulk_create_eligible_voters(election_id, rows)
    logger.info('Imported %d of %d roster rows into election_id=%s', len(created), len(rows), election_id)
    return len(created)
