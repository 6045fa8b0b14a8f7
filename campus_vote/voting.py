import datetime
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from campus_vote.ballot import require_active_election, require_eligible_voter
from campus_vote.errors import AlreadyVoted, InvalidInput, InvalidSelection
from campus_vote.models import CandidateStatus, utcnow
from campus_vote.store import Store, check_distinct_positions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Receipt:
    """Proof that a ballot was cast. Carries no vote content."""

    election_id: int
    user_id: int
    votes_recorded: int
    cast_at: datetime.datetime

    def as_dict(self) -> dict[str, object]:
        return {
            'electionId': self.election_id,
            'votesRecorded': self.votes_recorded,
            'castAt': self.cast_at.isoformat(),
        }


def _normalize(selections: Iterable[tuple[int, int]]) -> list[tuple[int, int]]:
    pairs = []
    for selection in selections:
        try:
            position_id, candidate_id = selection
            pairs.append((int(position_id), int(candidate_id)))
        except (TypeError, ValueError) as exc:
            raise InvalidInput('Invalid vote data') from exc
    if not pairs:
        raise InvalidInput('At least one vote is required')
    return pairs


def _check_selections(store: Store, election_id: int, selections: list[tuple[int, int]]) -> None:
    for position_id, candidate_id in selections:
        candidate = store.get_candidate(candidate_id)
        if candidate is None:
            raise InvalidSelection(f'Candidate {candidate_id} does not exist')
        if candidate.position_id != position_id or candidate.election_id != election_id:
            raise InvalidSelection(f'Candidate {candidate_id} is not standing for position {position_id}')
        if candidate.status != CandidateStatus.approved:
            raise InvalidSelection(f'Candidate {candidate_id} is not on the ballot')


def submit_vote(
    store: Store,
    *,
    election_id: int,
    voter_user_id: int,
    selections: Iterable[tuple[int, int]],
) -> Receipt:
    """Record one vote per selected position for the voter, all or nothing.

    Every check runs before anything is written. The final write goes
    through :meth:`Store.record_ballot`, which re-checks the ballot marker
    atomically, so two racing submissions for the same voter leave exactly
    one ballot behind and the loser gets :class:`AlreadyVoted`.
    """
    selections = _normalize(selections)

    if store.has_voted(voter_user_id, election_id):
        logger.info('Duplicate ballot attempt user_id=%s election_id=%s', voter_user_id, election_id)
        raise AlreadyVoted()
    check_distinct_positions(selections)
    require_active_election(store, election_id)
    user = require_eligible_voter(store, election_id=election_id, user_id=voter_user_id)
    _check_selections(store, election_id, selections)

    votes = store.record_ballot(voter_user_id, election_id, selections)
    cast_at = votes[0].timestamp if votes and votes[0].timestamp else utcnow()

    store.add_audit('cast_ballot', user.username, f'ballot cast in election_id={election_id}')
    logger.info('Ballot recorded user_id=%s election_id=%s positions=%d', voter_user_id, election_id, len(votes))
    return Receipt(election_id=election_id, user_id=voter_user_id, votes_recorded=len(votes), cast_at=cast_at)
