import contextlib
import datetime
import logging
import sqlite3

from campus_vote.errors import AlreadyVoted, Conflict
from campus_vote.models import (
    AuditEntry,
    Candidate,
    CandidateStatus,
    Election,
    ElectionStatus,
    EligibleVoter,
    Position,
    Role,
    User,
    Vote,
    utcnow,
)
from campus_vote.store import ELECTION_FIELDS, Store, check_distinct_positions

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    password TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('admin', 'candidate', 'voter')),
    student_id TEXT UNIQUE,
    department TEXT,
    name TEXT
);

CREATE TABLE IF NOT EXISTS elections(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT,
    start_date TEXT,
    end_date TEXT,
    status TEXT NOT NULL DEFAULT 'draft' CHECK (status IN ('draft', 'active', 'completed')),
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS positions(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT,
    election_id INTEGER NOT NULL REFERENCES elections(id)
);

CREATE TABLE IF NOT EXISTS candidates(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    position_id INTEGER NOT NULL REFERENCES positions(id),
    manifesto TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'approved', 'rejected')),
    election_id INTEGER NOT NULL REFERENCES elections(id),
    UNIQUE(user_id, position_id)
);

-- one row per (voter, election): the "has voted" marker
CREATE TABLE IF NOT EXISTS ballots(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    election_id INTEGER NOT NULL REFERENCES elections(id),
    cast_at TEXT,
    UNIQUE(user_id, election_id)
);

CREATE TABLE IF NOT EXISTS votes(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    candidate_id INTEGER NOT NULL REFERENCES candidates(id),
    position_id INTEGER NOT NULL REFERENCES positions(id),
    election_id INTEGER NOT NULL REFERENCES elections(id),
    timestamp TEXT,
    UNIQUE(user_id, position_id, election_id)
);

CREATE TABLE IF NOT EXISTS eligible_voters(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL,
    name TEXT,
    department TEXT,
    election_id INTEGER NOT NULL REFERENCES elections(id),
    UNIQUE(student_id, election_id)
);

CREATE TABLE IF NOT EXISTS audit(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    user TEXT,
    details TEXT,
    timestamp TEXT
);
"""


def connect(path: str) -> sqlite3.Connection:
    # autocommit mode; multi-statement writes open their own transactions
    conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA)


def _dt(value):
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    return str(value)


def _parse_dt(value):
    return datetime.datetime.fromisoformat(value) if value else None


def _user(row):
    return User(
        id=row['id'],
        username=row['username'],
        password=row['password'],
        role=Role(row['role']),
        student_id=row['student_id'],
        department=row['department'],
        name=row['name'],
    )


def _election(row):
    return Election(
        id=row['id'],
        title=row['title'],
        description=row['description'],
        start_date=_parse_dt(row['start_date']),
        end_date=_parse_dt(row['end_date']),
        status=ElectionStatus(row['status']),
        created_at=_parse_dt(row['created_at']),
    )


def _position(row):
    return Position(id=row['id'], title=row['title'], description=row['description'], election_id=row['election_id'])


def _candidate(row):
    return Candidate(
        id=row['id'],
        user_id=row['user_id'],
        position_id=row['position_id'],
        election_id=row['election_id'],
        manifesto=row['manifesto'],
        status=CandidateStatus(row['status']),
    )


def _vote(row):
    return Vote(
        id=row['id'],
        user_id=row['user_id'],
        candidate_id=row['candidate_id'],
        position_id=row['position_id'],
        election_id=row['election_id'],
        timestamp=_parse_dt(row['timestamp']),
    )


def _eligible(row):
    return EligibleVoter(
        id=row['id'],
        student_id=row['student_id'],
        name=row['name'],
        department=row['department'],
        election_id=row['election_id'],
    )


def _audit(row):
    return AuditEntry(
        id=row['id'],
        action=row['action'],
        user=row['user'],
        details=row['details'] or '',
        timestamp=_parse_dt(row['timestamp']),
    )


class SqliteStore(Store):
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    @contextlib.contextmanager
    def _transaction(self, mode='DEFERRED'):
        self.conn.execute(f'BEGIN {mode}')
        try:
            yield self.conn
        except BaseException:
            self.conn.execute('ROLLBACK')
            raise
        else:
            self.conn.execute('COMMIT')

    def _one(self, sql, params=()):
        return self.conn.execute(sql, params).fetchone()

    def _all(self, sql, params=()):
        return self.conn.execute(sql, params).fetchall()

    # Users
    def get_user(self, user_id):
        row = self._one('SELECT * FROM users WHERE id = ?', (user_id,))
        return _user(row) if row else None

    def get_user_by_username(self, username):
        row = self._one('SELECT * FROM users WHERE username = ?', (username,))
        return _user(row) if row else None

    def get_user_by_student_id(self, student_id):
        if not student_id:
            return None
        row = self._one('SELECT * FROM users WHERE student_id = ?', (student_id,))
        return _user(row) if row else None

    def create_user(self, *, username, password, role, student_id=None, name=None, department=None):
        try:
            cur = self.conn.execute(
                'INSERT INTO users(username, password, role, student_id, name, department) VALUES (?,?,?,?,?,?)',
                (username, password, Role(role).value, student_id, name, department),
            )
        except sqlite3.IntegrityError as exc:
            if 'student_id' in str(exc):
                raise Conflict('A user with this student ID already exists') from exc
            raise Conflict('Username already taken') from exc
        return self.get_user(cur.lastrowid)

    def set_user_role(self, user_id, role):
        self.conn.execute('UPDATE users SET role = ? WHERE id = ?', (Role(role).value, user_id))
        return self.get_user(user_id)

    def set_has_voted(self, user_id, election_id):
        self.conn.execute(
            'INSERT OR IGNORE INTO ballots(user_id, election_id, cast_at) VALUES (?,?,?)',
            (user_id, election_id, _dt(utcnow())),
        )

    # Elections
    def list_elections(self):
        return [_election(r) for r in self._all('SELECT * FROM elections ORDER BY id')]

    def get_election(self, election_id):
        row = self._one('SELECT * FROM elections WHERE id = ?', (election_id,))
        return _election(row) if row else None

    def create_election(self, *, title, description=None, start_date=None, end_date=None, status=ElectionStatus.draft):
        cur = self.conn.execute(
            'INSERT INTO elections(title, description, start_date, end_date, status, created_at) VALUES (?,?,?,?,?,?)',
            (title, description, _dt(start_date), _dt(end_date), ElectionStatus(status).value, _dt(utcnow())),
        )
        return self.get_election(cur.lastrowid)

    def update_election(self, election_id, **changes):
        unknown = set(changes) - set(ELECTION_FIELDS)
        if unknown:
            raise TypeError(f'Unknown election fields: {sorted(unknown)}')
        if self.get_election(election_id) is None:
            return None
        if changes:
            values = []
            for key in changes:
                value = changes[key]
                if key == 'status':
                    value = ElectionStatus(value).value
                elif key in ('start_date', 'end_date'):
                    value = _dt(value)
                values.append(value)
            assignments = ', '.join(f'{key} = ?' for key in changes)
            self.conn.execute(f'UPDATE elections SET {assignments} WHERE id = ?', (*values, election_id))
        return self.get_election(election_id)

    # Positions
    def list_positions(self, election_id):
        return [_position(r) for r in self._all('SELECT * FROM positions WHERE election_id = ? ORDER BY id', (election_id,))]

    def get_position(self, position_id):
        row = self._one('SELECT * FROM positions WHERE id = ?', (position_id,))
        return _position(row) if row else None

    def create_position(self, *, election_id, title, description=None):
        cur = self.conn.execute(
            'INSERT INTO positions(title, description, election_id) VALUES (?,?,?)', (title, description, election_id)
        )
        return self.get_position(cur.lastrowid)

    # Candidates
    def list_candidates(self, election_id):
        return [_candidate(r) for r in self._all('SELECT * FROM candidates WHERE election_id = ? ORDER BY id', (election_id,))]

    def get_candidate(self, candidate_id):
        row = self._one('SELECT * FROM candidates WHERE id = ?', (candidate_id,))
        return _candidate(row) if row else None

    def list_candidates_by_position(self, position_id):
        return [_candidate(r) for r in self._all('SELECT * FROM candidates WHERE position_id = ? ORDER BY id', (position_id,))]

    def list_candidates_by_user(self, user_id):
        return [_candidate(r) for r in self._all('SELECT * FROM candidates WHERE user_id = ? ORDER BY id', (user_id,))]

    def create_candidate(self, *, user_id, election_id, position_id, manifesto=None, status=CandidateStatus.pending):
        try:
            cur = self.conn.execute(
                'INSERT INTO candidates(user_id, position_id, manifesto, status, election_id) VALUES (?,?,?,?,?)',
                (user_id, position_id, manifesto, CandidateStatus(status).value, election_id),
            )
        except sqlite3.IntegrityError as exc:
            raise Conflict('You have already applied for this position') from exc
        return self.get_candidate(cur.lastrowid)

    def update_candidate_status(self, candidate_id, status):
        self.conn.execute('UPDATE candidates SET status = ? WHERE id = ?', (CandidateStatus(status).value, candidate_id))
        return self.get_candidate(candidate_id)

    # Votes
    def _insert_vote(self, user_id, election_id, position_id, candidate_id):
        cur = self.conn.execute(
            'INSERT INTO votes(user_id, candidate_id, position_id, election_id, timestamp) VALUES (?,?,?,?,?)',
            (user_id, candidate_id, position_id, election_id, _dt(utcnow())),
        )
        return _vote(self._one('SELECT * FROM votes WHERE id = ?', (cur.lastrowid,)))

    def create_vote(self, *, user_id, election_id, position_id, candidate_id):
        try:
            return self._insert_vote(user_id, election_id, position_id, candidate_id)
        except sqlite3.IntegrityError as exc:
            raise Conflict('Vote already recorded for this position') from exc

    def list_votes(self, election_id):
        return [_vote(r) for r in self._all('SELECT * FROM votes WHERE election_id = ? ORDER BY id', (election_id,))]

    def has_voted(self, user_id, election_id):
        row = self._one(
            'SELECT EXISTS(SELECT 1 FROM ballots WHERE user_id = ? AND election_id = ?)'
            ' OR EXISTS(SELECT 1 FROM votes WHERE user_id = ? AND election_id = ?)',
            (user_id, election_id, user_id, election_id),
        )
        return bool(row[0])

    def record_ballot(self, user_id, election_id, selections):
        check_distinct_positions(selections)
        # IMMEDIATE takes the write lock up front so a racing submission waits here
        try:
            with self._transaction('IMMEDIATE'):
                if self.has_voted(user_id, election_id):
                    raise AlreadyVoted()
                self.conn.execute(
                    'INSERT INTO ballots(user_id, election_id, cast_at) VALUES (?,?,?)',
                    (user_id, election_id, _dt(utcnow())),
                )
                return [self._insert_vote(user_id, election_id, p, c) for p, c in selections]
        except sqlite3.IntegrityError as exc:
            logger.warning('Ballot write rejected for user_id=%s election_id=%s: %s', user_id, election_id, exc)
            if 'UNIQUE' in str(exc):
                raise AlreadyVoted() from exc
            raise Conflict('Ballot could not be recorded') from exc

    # Eligible voters
    def list_eligible_voters(self, election_id):
        return [_eligible(r) for r in self._all('SELECT * FROM eligible_voters WHERE election_id = ? ORDER BY id', (election_id,))]

    def get_eligible_voter_by_student_id(self, student_id, election_id=None):
        if election_id is None:
            row = self._one('SELECT * FROM eligible_voters WHERE student_id = ? ORDER BY id LIMIT 1', (student_id,))
        else:
            row = self._one(
                'SELECT * FROM eligible_voters WHERE student_id = ? AND election_id = ?', (student_id, election_id)
            )
        return _eligible(row) if row else None

    def create_eligible_voter(self, *, election_id, student_id, name=None, department=None):
        try:
            cur = self.conn.execute(
                'INSERT INTO eligible_voters(student_id, name, department, election_id) VALUES (?,?,?,?)',
                (student_id, name, department, election_id),
            )
        except sqlite3.IntegrityError as exc:
            raise Conflict('Student is already eligible for this election') from exc
        return _eligible(self._one('SELECT * FROM eligible_voters WHERE id = ?', (cur.lastrowid,)))

    def bulk_create_eligible_voters(self, election_id, rows):
        created_ids = []
        with self._transaction():
            for row in rows:
                cur = self.conn.execute(
                    'INSERT OR IGNORE INTO eligible_voters(student_id, name, department, election_id) VALUES (?,?,?,?)',
                    (row['student_id'], row.get('name'), row.get('department'), election_id),
                )
                if cur.rowcount:
                    created_ids.append(cur.lastrowid)
        return [_eligible(self._one('SELECT * FROM eligible_voters WHERE id = ?', (i,))) for i in created_ids]

    # Audit
    def add_audit(self, action, user, details):
        cur = self.conn.execute(
            'INSERT INTO audit(action, user, details, timestamp) VALUES (?,?,?,?)',
            (action, user, details, _dt(utcnow())),
        )
        return _audit(self._one('SELECT * FROM audit WHERE id = ?', (cur.lastrowid,)))

    def list_audit(self, limit=500):
        return [_audit(r) for r in self._all('SELECT * FROM audit ORDER BY id DESC LIMIT ?', (limit,))]
