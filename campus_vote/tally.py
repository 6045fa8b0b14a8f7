"""Vote counting for an election.

Results are recomputed from the stored votes on every call. Positions,
votes and the roster are read independently, so during an active
election two reads may disagree slightly; callers must tolerate that.
"""

import logging
from collections import Counter
from dataclasses import dataclass

from campus_vote.errors import ElectionNotFound
from campus_vote.models import CandidateStatus, Election, Position
from campus_vote.store import Store

logger = logging.getLogger(__name__)


def percent(part: int, whole: int) -> int:
    """``part / whole`` as a whole percentage, rounding halves up. 0 if ``whole`` is 0."""
    if whole <= 0:
        return 0
    return (part * 200 + whole) // (whole * 2)


@dataclass(frozen=True)
class CandidateResult:
    candidate_id: int
    name: str
    student_id: str
    department: str | None
    votes: int
    percentage: int

    def as_dict(self) -> dict[str, object]:
        return {
            'candidateId': self.candidate_id,
            'candidateName': self.name,
            'candidateStudentId': self.student_id,
            'department': self.department,
            'votes': self.votes,
            'percentage': self.percentage,
        }


@dataclass(frozen=True)
class PositionResult:
    position: Position
    total_votes: int
    results: list[CandidateResult]

    @property
    def winner(self) -> CandidateResult | None:
        # ties go to whichever candidate sorted first
        if self.total_votes > 0 and self.results:
            return self.results[0]
        return None

    def as_dict(self) -> dict[str, object]:
        winner = self.winner
        return {
            'positionId': self.position.id,
            'positionTitle': self.position.title,
            'totalVotes': self.total_votes,
            'results': [r.as_dict() for r in self.results],
            'winner': winner.as_dict() if winner else None,
        }


@dataclass(frozen=True)
class ElectionResults:
    election: Election
    total_eligible_voters: int
    total_votes_cast: int
    positions: list[PositionResult]

    @property
    def voter_turnout(self) -> int:
        return percent(self.total_votes_cast, self.total_eligible_voters)

    def as_dict(self) -> dict[str, object]:
        return {
            'electionId': self.election.id,
            'electionTitle': self.election.title,
            'status': self.election.status.value,
            'totalEligibleVoters': self.total_eligible_voters,
            'totalVotesCast': self.total_votes_cast,
            'voterTurnout': self.voter_turnout,
            'positionResults': [p.as_dict() for p in self.positions],
        }

    def rows(self) -> list[dict[str, object]]:
        """Flat per-candidate rows for CSV/JSON export."""
        out = []
        for position in self.positions:
            winner = position.winner
            for rank, result in enumerate(position.results, start=1):
                out.append(
                    {
                        'position': position.position.title,
                        'rank': rank,
                        'candidate_id': result.candidate_id,
                        'name': result.name,
                        'student_id': result.student_id,
                        'votes': result.votes,
                        'percent': result.percentage,
                        'winner': winner is not None and winner.candidate_id == result.candidate_id,
                    }
                )
        return out


def _position_result(store: Store, position: Position, counts: Counter) -> PositionResult:
    total = sum(counts.values())
    standing = {
        c.id: c
        for c in store.list_candidates_by_position(position.id)
        if c.status == CandidateStatus.approved or counts[c.id] > 0
    }
    for candidate_id in counts:
        if candidate_id not in standing:
            candidate = store.get_candidate(candidate_id)
            if candidate is not None:
                standing[candidate_id] = candidate

    results = []
    for candidate_id in sorted(standing):
        user = store.get_user(standing[candidate_id].user_id)
        if user is None:
            logger.warning('Skipping candidate %s with missing user in results', candidate_id)
            continue
        votes = counts[candidate_id]
        results.append(
            CandidateResult(
                candidate_id=candidate_id,
                name=user.name or 'Unknown',
                student_id=user.student_id or '',
                department=user.department,
                votes=votes,
                percentage=percent(votes, total),
            )
        )
    # stable: equal counts keep candidate id order
    results.sort(key=lambda r: r.votes, reverse=True)
    return PositionResult(position=position, total_votes=total, results=results)


def compute_results(store: Store, election_id: int) -> ElectionResults:
    election = store.get_election(election_id)
    if election is None:
        raise ElectionNotFound(election_id)

    votes = store.list_votes(election_id)
    by_position: dict[int, Counter] = {}
    for vote in votes:
        by_position.setdefault(vote.position_id, Counter())[vote.candidate_id] += 1

    positions = [
        _position_result(store, position, by_position.get(position.id, Counter()))
        for position in store.list_positions(election_id)
    ]
    voters = {vote.user_id for vote in votes}
    eligible = store.list_eligible_voters(election_id)

    return ElectionResults(
        election=election,
        total_eligible_voters=len(eligible),
        total_votes_cast=len(voters),
        positions=positions,
    )
