import logging
from dataclasses import dataclass

from campus_vote.errors import AlreadyVoted, ElectionNotActive, ElectionNotFound, NotEligible, UserNotFound
from campus_vote.models import CandidateStatus, Election, ElectionStatus, Position, User
from campus_vote.store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BallotCandidate:
    candidate_id: int
    user_id: int
    name: str | None
    student_id: str | None
    department: str | None
    manifesto: str | None

    def as_dict(self) -> dict[str, object]:
        return {
            'candidateId': self.candidate_id,
            'userId': self.user_id,
            'name': self.name,
            'studentId': self.student_id,
            'department': self.department,
            'manifesto': self.manifesto,
        }


@dataclass(frozen=True)
class BallotPosition:
    position: Position
    candidates: list[BallotCandidate]

    def as_dict(self) -> dict[str, object]:
        return {
            'position': self.position.as_dict(),
            'candidates': [c.as_dict() for c in self.candidates],
        }


@dataclass(frozen=True)
class BallotView:
    election: Election
    positions: list[BallotPosition]

    def as_dict(self) -> dict[str, object]:
        return {
            'election': self.election.as_dict(),
            'ballot': [p.as_dict() for p in self.positions],
        }


def require_active_election(store: Store, election_id: int) -> Election:
    election = store.get_election(election_id)
    if election is None:
        raise ElectionNotFound(election_id)
    if election.status != ElectionStatus.active:
        raise ElectionNotActive(election_id)
    return election


def require_eligible_voter(store: Store, *, election_id: int, user_id: int) -> User:
    """Return the voter's user record if their student id is on the election's roster."""
    user = store.get_user(user_id)
    if user is None:
        raise UserNotFound(user_id)
    if not user.student_id or store.get_eligible_voter_by_student_id(user.student_id, election_id) is None:
        logger.info('Rejected ineligible voter user_id=%s for election_id=%s', user_id, election_id)
        raise NotEligible()
    return user


def _ballot_position(store: Store, position: Position) -> BallotPosition:
    candidates = []
    for candidate in store.list_candidates_by_position(position.id):
        if candidate.status != CandidateStatus.approved:
            continue
        user = store.get_user(candidate.user_id)
        if user is None:
            logger.warning('Approved candidate %s references missing user %s', candidate.id, candidate.user_id)
            continue
        candidates.append(
            BallotCandidate(
                candidate_id=candidate.id,
                user_id=user.id,
                name=user.name,
                student_id=user.student_id,
                department=user.department,
                manifesto=candidate.manifesto,
            )
        )
    return BallotPosition(position=position, candidates=candidates)


def get_ballot(store: Store, *, election_id: int, voter_user_id: int) -> BallotView:
    if store.has_voted(voter_user_id, election_id):
        raise AlreadyVoted()
    election = require_active_election(store, election_id)
    require_eligible_voter(store, election_id=election_id, user_id=voter_user_id)

    positions = [_ballot_position(store, p) for p in store.list_positions(election_id)]
    return BallotView(election=election, positions=positions)
