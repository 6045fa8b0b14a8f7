import os

# must be set before campus_vote.app builds its limiter
os.environ.setdefault('RATELIMIT_ENABLED', '0')

import types

import pytest

from campus_vote.models import CandidateStatus, ElectionStatus, Role
from campus_vote.store import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_voter(store):
    def make(election_id, student_id, name=None, department='Physics'):
        store.create_eligible_voter(election_id=election_id, student_id=student_id, name=name or student_id, department=department)
        user = store.get_user_by_student_id(student_id)
        if user is None:
            user = store.create_user(
                username=student_id,
                password='unused',
                role=Role.voter,
                student_id=student_id,
                name=name or student_id,
                department=department,
            )
        return user

    return make


@pytest.fixture
def make_candidate(store):
    def make(election_id, position_id, name, status=CandidateStatus.approved):
        user = store.create_user(
            username=name.lower(),
            password='unused',
            role=Role.candidate,
            student_id=f'C-{name}',
            name=name,
            department='Computer Science',
        )
        return store.create_candidate(
            user_id=user.id,
            election_id=election_id,
            position_id=position_id,
            manifesto=f'{name} promises better wifi in every hall.',
            status=status,
        )

    return make


@pytest.fixture
def president(store, make_candidate):
    """Active election with one position: Alice and Bob approved, Carol pending."""
    election = store.create_election(title='Student Council 2026', status=ElectionStatus.active)
    position = store.create_position(election_id=election.id, title='President')
    return types.SimpleNamespace(
        election=election,
        position=position,
        alice=make_candidate(election.id, position.id, 'Alice'),
        bob=make_candidate(election.id, position.id, 'Bob'),
        carol=make_candidate(election.id, position.id, 'Carol', status=CandidateStatus.pending),
    )
