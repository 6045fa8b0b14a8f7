import datetime
import enum
from dataclasses import dataclass, field


class Role(str, enum.Enum):
    admin = 'admin'
    candidate = 'candidate'
    voter = 'voter'


class ElectionStatus(str, enum.Enum):
    draft = 'draft'
    active = 'active'
    completed = 'completed'

    @property
    def rank(self) -> int:
        return _ELECTION_ORDER.index(self)

    def can_move_to(self, other: 'ElectionStatus') -> bool:
        return other.rank >= self.rank


_ELECTION_ORDER = [ElectionStatus.draft, ElectionStatus.active, ElectionStatus.completed]


class CandidateStatus(str, enum.Enum):
    pending = 'pending'
    approved = 'approved'
    rejected = 'rejected'


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _iso(value):
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class User:
    id: int
    username: str
    password: str
    role: Role
    student_id: str | None = None
    department: str | None = None
    name: str | None = None

    def as_dict(self) -> dict[str, object]:
        # password hash deliberately left out
        return {
            'id': self.id,
            'username': self.username,
            'role': self.role.value,
            'studentId': self.student_id,
            'department': self.department,
            'name': self.name,
        }


@dataclass(frozen=True)
class Election:
    id: int
    title: str
    description: str | None = None
    start_date: datetime.datetime | None = None
    end_date: datetime.datetime | None = None
    status: ElectionStatus = ElectionStatus.draft
    created_at: datetime.datetime | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'startDate': _iso(self.start_date),
            'endDate': _iso(self.end_date),
            'status': self.status.value,
            'createdAt': _iso(self.created_at),
        }


@dataclass(frozen=True)
class Position:
    id: int
    title: str
    election_id: int
    description: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'electionId': self.election_id,
        }


@dataclass(frozen=True)
class Candidate:
    id: int
    user_id: int
    position_id: int
    election_id: int
    manifesto: str | None = None
    status: CandidateStatus = CandidateStatus.pending

    def as_dict(self) -> dict[str, object]:
        return {
            'id': self.id,
            'userId': self.user_id,
            'positionId': self.position_id,
            'electionId': self.election_id,
            'manifesto': self.manifesto,
            'status': self.status.value,
        }


@dataclass(frozen=True)
class CandidateDetails:
    """A candidate joined with its user and position."""

    candidate: Candidate
    user: User
    position: Position

    def as_dict(self) -> dict[str, object]:
        data = self.candidate.as_dict()
        data['user'] = self.user.as_dict()
        data['position'] = self.position.as_dict()
        return data


@dataclass(frozen=True)
class ElectionDetails:
    election: Election
    positions: list[Position]
    candidates: list[CandidateDetails]

    def as_dict(self) -> dict[str, object]:
        data = self.election.as_dict()
        data['positions'] = [p.as_dict() for p in self.positions]
        data['candidates'] = [c.as_dict() for c in self.candidates]
        return data


@dataclass(frozen=True)
class Vote:
    id: int
    user_id: int
    candidate_id: int
    position_id: int
    election_id: int
    timestamp: datetime.datetime | None = None


@dataclass(frozen=True)
class EligibleVoter:
    id: int
    student_id: str
    election_id: int
    name: str | None = None
    department: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            'id': self.id,
            'studentId': self.student_id,
            'name': self.name,
            'department': self.department,
            'electionId': self.election_id,
        }


@dataclass(frozen=True)
class AuditEntry:
    id: int
    action: str
    user: str | None
    details: str
    timestamp: datetime.datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, object]:
        return {
            'id': self.id,
            'action': self.action,
            'user': self.user,
            'details': self.details,
            'timestamp': _iso(self.timestamp),
        }
