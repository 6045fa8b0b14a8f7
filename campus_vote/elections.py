import datetime
import logging

from campus_vote.errors import (
    CandidateNotFound,
    ElectionNotFound,
    InvalidInput,
    PositionNotFound,
    UserNotFound,
)
from campus_vote.models import (
    Candidate,
    CandidateStatus,
    Election,
    ElectionStatus,
    EligibleVoter,
    Position,
    Role,
)
from campus_vote.store import Store

logger = logging.getLogger(__name__)

MIN_MANIFESTO_LENGTH = 20


def parse_status(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise InvalidInput('Invalid status') from exc


def parse_date(value) -> datetime.datetime | None:
    if value in (None, ''):
        return None
    if isinstance(value, datetime.datetime):
        return value
    try:
        return datetime.datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError as exc:
        raise InvalidInput(f'Invalid date: {value}') from exc


def _check_dates(start, end) -> None:
    if start is None or end is None:
        return
    # naive and aware datetimes cannot be compared; treat naive as UTC
    if (start.tzinfo is None) != (end.tzinfo is None):
        start = start if start.tzinfo else start.replace(tzinfo=datetime.timezone.utc)
        end = end if end.tzinfo else end.replace(tzinfo=datetime.timezone.utc)
    if end < start:
        raise InvalidInput('End date must be after start date')


def create_election(
    store: Store,
    *,
    title: str,
    description: str | None = None,
    start_date=None,
    end_date=None,
    status=ElectionStatus.draft,
) -> Election:
    if not isinstance(title, str) or not title.strip():
        raise InvalidInput('Title is required')
    start, end = parse_date(start_date), parse_date(end_date)
    _check_dates(start, end)
    election = store.create_election(
        title=title.strip(),
        description=description,
        start_date=start,
        end_date=end,
        status=parse_status(ElectionStatus, status),
    )
    logger.info('Created election id=%s status=%s', election.id, election.status.value)
    return election


def update_election(store: Store, election_id: int, **changes) -> Election:
    """Apply a partial update. Status may only move forward: draft, active, completed."""
    election = store.get_election(election_id)
    if election is None:
        raise ElectionNotFound(election_id)

    unknown = set(changes) - {'title', 'description', 'start_date', 'end_date', 'status'}
    if unknown:
        raise InvalidInput(f'Unknown fields: {", ".join(sorted(unknown))}')
    if 'title' in changes and (not isinstance(changes['title'], str) or not changes['title'].strip()):
        raise InvalidInput('Title is required')
    for key in ('start_date', 'end_date'):
        if key in changes:
            changes[key] = parse_date(changes[key])
    _check_dates(changes.get('start_date', election.start_date), changes.get('end_date', election.end_date))

    if 'status' in changes:
        status = parse_status(ElectionStatus, changes['status'])
        if not election.status.can_move_to(status):
            raise InvalidInput(f'Cannot move election from {election.status.value} to {status.value}')
        changes['status'] = status

    updated = store.update_election(election_id, **changes)
    if 'status' in changes and changes['status'] != election.status:
        logger.info('Election id=%s moved %s -> %s', election_id, election.status.value, updated.status.value)
    return updated


def create_position(store: Store, *, election_id: int, title: str, description: str | None = None) -> Position:
    if store.get_election(election_id) is None:
        raise ElectionNotFound(election_id)
    if not isinstance(title, str) or not title.strip():
        raise InvalidInput('Title is required')
    return store.create_position(election_id=election_id, title=title.strip(), description=description)


def apply_as_candidate(
    store: Store, *, user_id: int, election_id: int, position_id: int, manifesto: str
) -> Candidate:
    user = store.get_user(user_id)
    if user is None:
        raise UserNotFound(user_id)
    if store.get_election(election_id) is None:
        raise ElectionNotFound(election_id)
    position = store.get_position(position_id)
    if position is None or position.election_id != election_id:
        raise PositionNotFound(position_id)
    if not isinstance(manifesto, str) or len(manifesto.strip()) < MIN_MANIFESTO_LENGTH:
        raise InvalidInput(f'Manifesto must be at least {MIN_MANIFESTO_LENGTH} characters')

    candidate = store.create_candidate(
        user_id=user_id,
        election_id=election_id,
        position_id=position_id,
        manifesto=manifesto.strip(),
        status=CandidateStatus.pending,
    )
    if user.role == Role.voter:
        store.set_user_role(user_id, Role.candidate)
    logger.info('User id=%s applied for position id=%s', user_id, position_id)
    return candidate


def set_candidate_status(store: Store, candidate_id: int, status) -> Candidate:
    status = parse_status(CandidateStatus, status)
    candidate = store.update_candidate_status(candidate_id, status)
    if candidate is None:
        raise CandidateNotFound(candidate_id)
    logger.info('Candidate id=%s is now %s', candidate_id, status.value)
    return candidate


def add_eligible_voter(
    store: Store, *, election_id: int, student_id: str, name: str, department: str | None = None
) -> EligibleVoter:
    if store.get_election(election_id) is None:
        raise ElectionNotFound(election_id)
    if not isinstance(student_id, str) or not isinstance(name, str) or not student_id.strip() or not name.strip():
        raise InvalidInput('Student ID and name are required')
    return store.create_eligible_voter(
        election_id=election_id,
        student_id=student_id.strip(),
        name=name.strip(),
        department=(department or '').strip(),
    )


def list_roster(store: Store, election_id: int) -> list[dict[str, object]]:
    """Roster entries for an election, each with whether that student has voted in it."""
    roster = []
    for voter in store.list_eligible_voters(election_id):
        user = store.get_user_by_student_id(voter.student_id)
        entry = voter.as_dict()
        entry['hasVoted'] = bool(user and store.has_voted(user.id, election_id))
        roster.append(entry)
    return roster
