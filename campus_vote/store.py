"""Persistence interface for the voting core, plus an in-memory implementation.

Every service in this package talks to storage through :class:`Store`.
:class:`MemoryStore` keeps everything in dicts and is used by the tests and
by single-process tooling; :class:`campus_vote.sqlite_store.SqliteStore`
is the durable implementation used by the web app.
"""

import abc
import itertools
import threading
from collections.abc import Iterable, Sequence
from dataclasses import replace

from campus_vote.errors import AlreadyVoted, Conflict, DuplicatePositionSelection
from campus_vote.models import (
    AuditEntry,
    Candidate,
    CandidateDetails,
    CandidateStatus,
    Election,
    ElectionDetails,
    ElectionStatus,
    EligibleVoter,
    Position,
    Role,
    User,
    Vote,
    utcnow,
)

ELECTION_FIELDS = ('title', 'description', 'start_date', 'end_date', 'status')


def check_distinct_positions(selections: Sequence[tuple[int, int]]) -> None:
    seen = set()
    for position_id, _ in selections:
        if position_id in seen:
            raise DuplicatePositionSelection(position_id)
        seen.add(position_id)


class Store(abc.ABC):
    # Users
    @abc.abstractmethod
    def get_user(self, user_id: int) -> User | None: ...

    @abc.abstractmethod
    def get_user_by_username(self, username: str) -> User | None: ...

    @abc.abstractmethod
    def get_user_by_student_id(self, student_id: str) -> User | None: ...

    @abc.abstractmethod
    def create_user(
        self,
        *,
        username: str,
        password: str,
        role: Role,
        student_id: str | None = None,
        name: str | None = None,
        department: str | None = None,
    ) -> User: ...

    @abc.abstractmethod
    def set_user_role(self, user_id: int, role: Role) -> User | None: ...

    @abc.abstractmethod
    def set_has_voted(self, user_id: int, election_id: int) -> None:
        """Write the per-election "has voted" marker for ``user_id``."""

    # Elections
    @abc.abstractmethod
    def list_elections(self) -> list[Election]: ...

    @abc.abstractmethod
    def get_election(self, election_id: int) -> Election | None: ...

    @abc.abstractmethod
    def create_election(
        self,
        *,
        title: str,
        description: str | None = None,
        start_date=None,
        end_date=None,
        status: ElectionStatus = ElectionStatus.draft,
    ) -> Election: ...

    @abc.abstractmethod
    def update_election(self, election_id: int, **changes) -> Election | None: ...

    def get_election_with_details(self, election_id: int) -> ElectionDetails | None:
        election = self.get_election(election_id)
        if election is None:
            return None
        details = []
        for candidate in self.list_candidates(election_id):
            joined = self.get_candidate_with_details(candidate.id)
            if joined is None:
                raise RuntimeError(f'Data inconsistency: unable to load candidate {candidate.id} details')
            details.append(joined)
        return ElectionDetails(election=election, positions=self.list_positions(election_id), candidates=details)

    # Positions
    @abc.abstractmethod
    def list_positions(self, election_id: int) -> list[Position]: ...

    @abc.abstractmethod
    def get_position(self, position_id: int) -> Position | None: ...

    @abc.abstractmethod
    def create_position(self, *, election_id: int, title: str, description: str | None = None) -> Position: ...

    # Candidates
    @abc.abstractmethod
    def list_candidates(self, election_id: int) -> list[Candidate]: ...

    @abc.abstractmethod
    def get_candidate(self, candidate_id: int) -> Candidate | None: ...

    @abc.abstractmethod
    def list_candidates_by_position(self, position_id: int) -> list[Candidate]: ...

    @abc.abstractmethod
    def list_candidates_by_user(self, user_id: int) -> list[Candidate]: ...

    def get_candidate_with_details(self, candidate_id: int) -> CandidateDetails | None:
        candidate = self.get_candidate(candidate_id)
        if candidate is None:
            return None
        user = self.get_user(candidate.user_id)
        position = self.get_position(candidate.position_id)
        if user is None or position is None:
            return None
        return CandidateDetails(candidate=candidate, user=user, position=position)

    @abc.abstractmethod
    def create_candidate(
        self,
        *,
        user_id: int,
        election_id: int,
        position_id: int,
        manifesto: str | None = None,
        status: CandidateStatus = CandidateStatus.pending,
    ) -> Candidate: ...

    @abc.abstractmethod
    def update_candidate_status(self, candidate_id: int, status: CandidateStatus) -> Candidate | None: ...

    # Votes
    @abc.abstractmethod
    def create_vote(self, *, user_id: int, election_id: int, position_id: int, candidate_id: int) -> Vote: ...

    @abc.abstractmethod
    def list_votes(self, election_id: int) -> list[Vote]: ...

    @abc.abstractmethod
    def has_voted(self, user_id: int, election_id: int) -> bool:
        """True if any vote or ballot marker exists for (user, election)."""

    @abc.abstractmethod
    def record_ballot(self, user_id: int, election_id: int, selections: Sequence[tuple[int, int]]) -> list[Vote]:
        """Atomically claim the ballot marker and write one vote per selection.

        Raises :class:`AlreadyVoted` with nothing written when the voter
        already holds a marker or any vote for the election, and
        :class:`DuplicatePositionSelection` when a position repeats.
        """

    # Eligible voters
    @abc.abstractmethod
    def list_eligible_voters(self, election_id: int) -> list[EligibleVoter]: ...

    @abc.abstractmethod
    def get_eligible_voter_by_student_id(
        self, student_id: str, election_id: int | None = None
    ) -> EligibleVoter | None: ...

    @abc.abstractmethod
    def create_eligible_voter(
        self, *, election_id: int, student_id: str, name: str | None = None, department: str | None = None
    ) -> EligibleVoter: ...

    @abc.abstractmethod
    def bulk_create_eligible_voters(self, election_id: int, rows: Iterable[dict[str, str]]) -> list[EligibleVoter]:
        """Create roster entries, skipping student ids already on the roster."""

    # Audit
    @abc.abstractmethod
    def add_audit(self, action: str, user: str | None, details: str) -> AuditEntry: ...

    @abc.abstractmethod
    def list_audit(self, limit: int = 500) -> list[AuditEntry]: ...


class MemoryStore(Store):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = {name: itertools.count(1) for name in ('users', 'elections', 'positions', 'candidates', 'votes', 'eligible', 'audit')}
        self._users: dict[int, User] = {}
        self._elections: dict[int, Election] = {}
        self._positions: dict[int, Position] = {}
        self._candidates: dict[int, Candidate] = {}
        self._votes: dict[int, Vote] = {}
        self._eligible: dict[int, EligibleVoter] = {}
        self._audit: dict[int, AuditEntry] = {}
        self._ballots: set[tuple[int, int]] = set()

    def _next_id(self, table: str) -> int:
        return next(self._ids[table])

    def _select(self, rows: dict, predicate) -> list:
        with self._lock:
            return [row for row in rows.values() if predicate(row)]

    def _first(self, rows: dict, predicate):
        found = self._select(rows, predicate)
        return found[0] if found else None

    # Users
    def get_user(self, user_id):
        return self._users.get(user_id)

    def get_user_by_username(self, username):
        return self._first(self._users, lambda u: u.username == username)

    def get_user_by_student_id(self, student_id):
        if not student_id:
            return None
        return self._first(self._users, lambda u: u.student_id == student_id)

    def create_user(self, *, username, password, role, student_id=None, name=None, department=None):
        with self._lock:
            if self.get_user_by_username(username) is not None:
                raise Conflict('Username already taken')
            if student_id and self.get_user_by_student_id(student_id) is not None:
                raise Conflict('A user with this student ID already exists')
            user = User(
                id=self._next_id('users'),
                username=username,
                password=password,
                role=Role(role),
                student_id=student_id,
                name=name,
                department=department,
            )
            self._users[user.id] = user
            return user

    def set_user_role(self, user_id, role):
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            user = replace(user, role=Role(role))
            self._users[user_id] = user
            return user

    def set_has_voted(self, user_id, election_id):
        with self._lock:
            self._ballots.add((user_id, election_id))

    # Elections
    def list_elections(self):
        return self._select(self._elections, lambda e: True)

    def get_election(self, election_id):
        return self._elections.get(election_id)

    def create_election(self, *, title, description=None, start_date=None, end_date=None, status=ElectionStatus.draft):
        with self._lock:
            election = Election(
                id=self._next_id('elections'),
                title=title,
                description=description,
                start_date=start_date,
                end_date=end_date,
                status=ElectionStatus(status),
                created_at=utcnow(),
            )
            self._elections[election.id] = election
            return election

    def update_election(self, election_id, **changes):
        unknown = set(changes) - set(ELECTION_FIELDS)
        if unknown:
            raise TypeError(f'Unknown election fields: {sorted(unknown)}')
        with self._lock:
            election = self._elections.get(election_id)
            if election is None:
                return None
            if 'status' in changes:
                changes['status'] = ElectionStatus(changes['status'])
            election = replace(election, **changes)
            self._elections[election_id] = election
            return election

    # Positions
    def list_positions(self, election_id):
        return self._select(self._positions, lambda p: p.election_id == election_id)

    def get_position(self, position_id):
        return self._positions.get(position_id)

    def create_position(self, *, election_id, title, description=None):
        with self._lock:
            position = Position(id=self._next_id('positions'), title=title, description=description, election_id=election_id)
            self._positions[position.id] = position
            return position

    # Candidates
    def list_candidates(self, election_id):
        return self._select(self._candidates, lambda c: c.election_id == election_id)

    def get_candidate(self, candidate_id):
        return self._candidates.get(candidate_id)

    def list_candidates_by_position(self, position_id):
        return self._select(self._candidates, lambda c: c.position_id == position_id)

    def list_candidates_by_user(self, user_id):
        return self._select(self._candidates, lambda c: c.user_id == user_id)

    def create_candidate(self, *, user_id, election_id, position_id, manifesto=None, status=CandidateStatus.pending):
        with self._lock:
            if self._first(self._candidates, lambda c: c.user_id == user_id and c.position_id == position_id):
                raise Conflict('You have already applied for this position')
            candidate = Candidate(
                id=self._next_id('candidates'),
                user_id=user_id,
                position_id=position_id,
                election_id=election_id,
                manifesto=manifesto,
                status=CandidateStatus(status),
            )
            self._candidates[candidate.id] = candidate
            return candidate

    def update_candidate_status(self, candidate_id, status):
        with self._lock:
            candidate = self._candidates.get(candidate_id)
            if candidate is None:
                return None
            candidate = replace(candidate, status=CandidateStatus(status))
            self._candidates[candidate_id] = candidate
            return candidate

    # Votes
    def _insert_vote(self, user_id, election_id, position_id, candidate_id):
        key = (user_id, position_id, election_id)
        if self._first(self._votes, lambda v: (v.user_id, v.position_id, v.election_id) == key):
            raise Conflict('Vote already recorded for this position')
        vote = Vote(
            id=self._next_id('votes'),
            user_id=user_id,
            candidate_id=candidate_id,
            position_id=position_id,
            election_id=election_id,
            timestamp=utcnow(),
        )
        self._votes[vote.id] = vote
        return vote

    def create_vote(self, *, user_id, election_id, position_id, candidate_id):
        with self._lock:
            return self._insert_vote(user_id, election_id, position_id, candidate_id)

    def list_votes(self, election_id):
        return self._select(self._votes, lambda v: v.election_id == election_id)

    def has_voted(self, user_id, election_id):
        with self._lock:
            if (user_id, election_id) in self._ballots:
                return True
            return self._first(self._votes, lambda v: v.user_id == user_id and v.election_id == election_id) is not None

    def record_ballot(self, user_id, election_id, selections):
        check_distinct_positions(selections)
        with self._lock:
            if self.has_voted(user_id, election_id):
                raise AlreadyVoted()
            votes = [self._insert_vote(user_id, election_id, p, c) for p, c in selections]
            self._ballots.add((user_id, election_id))
            return votes

    # Eligible voters
    def list_eligible_voters(self, election_id):
        return self._select(self._eligible, lambda v: v.election_id == election_id)

    def get_eligible_voter_by_student_id(self, student_id, election_id=None):
        return self._first(
            self._eligible,
            lambda v: v.student_id == student_id and (election_id is None or v.election_id == election_id),
        )

    def _insert_eligible_voter(self, election_id, student_id, name, department):
        voter = EligibleVoter(
            id=self._next_id('eligible'),
            student_id=student_id,
            election_id=election_id,
            name=name,
            department=department,
        )
        self._eligible[voter.id] = voter
        return voter

    def create_eligible_voter(self, *, election_id, student_id, name=None, department=None):
        with self._lock:
            if self.get_eligible_voter_by_student_id(student_id, election_id) is not None:
                raise Conflict('Student is already eligible for this election')
            return self._insert_eligible_voter(election_id, student_id, name, department)

    def bulk_create_eligible_voters(self, election_id, rows):
        created = []
        with self._lock:
            for row in rows:
                if self.get_eligible_voter_by_student_id(row['student_id'], election_id) is not None:
                    continue
                created.append(
                    self._insert_eligible_voter(election_id, row['student_id'], row.get('name'), row.get('department'))
                )
        return created

    # Audit
    def add_audit(self, action, user, details):
        with self._lock:
            entry = AuditEntry(id=self._next_id('audit'), action=action, user=user, details=details)
            self._audit[entry.id] = entry
            return entry

    def list_audit(self, limit=500):
        entries = self._select(self._audit, lambda e: True)
        return sorted(entries, key=lambda e: e.id, reverse=True)[:limit]
