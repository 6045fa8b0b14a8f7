import pytest

from campus_vote import elections
from campus_vote.errors import CandidateNotFound, Conflict, ElectionNotFound, InvalidInput, PositionNotFound
from campus_vote.models import CandidateStatus, ElectionStatus, Role
from campus_vote.voting import submit_vote

MANIFESTO = 'I will extend library opening hours.'


def test_create_election_defaults_to_draft(store):
    election = elections.create_election(store, title='  Council  ', start_date='2026-03-01T09:00:00Z')
    assert election.title == 'Council'
    assert election.status == ElectionStatus.draft
    assert election.start_date.year == 2026


def test_create_election_validates(store):
    with pytest.raises(InvalidInput):
        elections.create_election(store, title='')
    with pytest.raises(InvalidInput):
        elections.create_election(store, title='X', start_date='2026-03-02', end_date='2026-03-01')
    with pytest.raises(InvalidInput):
        elections.create_election(store, title='X', start_date='not a date')
    with pytest.raises(InvalidInput):
        elections.create_election(store, title='X', status='archived')


def test_status_moves_forward_only(store):
    election = elections.create_election(store, title='Council')
    assert elections.update_election(store, election.id, status='active').status == ElectionStatus.active
    assert elections.update_election(store, election.id, status='active').status == ElectionStatus.active
    assert elections.update_election(store, election.id, status='completed').status == ElectionStatus.completed
    with pytest.raises(InvalidInput):
        elections.update_election(store, election.id, status='active')
    with pytest.raises(InvalidInput):
        elections.update_election(store, election.id, status='draft')


def test_update_election_partial(store):
    election = elections.create_election(store, title='Council', description='old')
    updated = elections.update_election(store, election.id, description='new')
    assert updated.title == 'Council'
    assert updated.description == 'new'
    with pytest.raises(ElectionNotFound):
        elections.update_election(store, 99, title='x')
    with pytest.raises(InvalidInput):
        elections.update_election(store, election.id, colour='blue')


def test_create_position_requires_election(store):
    with pytest.raises(ElectionNotFound):
        elections.create_position(store, election_id=5, title='President')


def test_apply_promotes_voter_to_candidate(store):
    election = elections.create_election(store, title='Council')
    position = elections.create_position(store, election_id=election.id, title='President')
    user = store.create_user(username='amy', password='x', role=Role.voter, student_id='S1', name='Amy')

    candidate = elections.apply_as_candidate(
        store, user_id=user.id, election_id=election.id, position_id=position.id, manifesto=MANIFESTO
    )

    assert candidate.status == CandidateStatus.pending
    assert store.get_user(user.id).role == Role.candidate
    with pytest.raises(Conflict):
        elections.apply_as_candidate(
            store, user_id=user.id, election_id=election.id, position_id=position.id, manifesto=MANIFESTO
        )


def test_apply_checks_position_and_manifesto(store):
    council = elections.create_election(store, title='Council')
    sports = elections.create_election(store, title='Sports')
    captain = elections.create_position(store, election_id=sports.id, title='Captain')
    user = store.create_user(username='amy', password='x', role=Role.voter, student_id='S1')

    with pytest.raises(PositionNotFound):
        elections.apply_as_candidate(store, user_id=user.id, election_id=council.id, position_id=captain.id, manifesto=MANIFESTO)
    with pytest.raises(InvalidInput):
        elections.apply_as_candidate(store, user_id=user.id, election_id=sports.id, position_id=captain.id, manifesto='vote me')


def test_set_candidate_status(store, president):
    assert elections.set_candidate_status(store, president.carol.id, 'approved').status == CandidateStatus.approved
    with pytest.raises(CandidateNotFound):
        elections.set_candidate_status(store, 404, 'approved')
    with pytest.raises(InvalidInput):
        elections.set_candidate_status(store, president.carol.id, 'maybe')


def test_roster_entries_and_voted_flag(store, president, make_voter):
    voter = make_voter(president.election.id, 'S1', name='Sam')
    elections.add_eligible_voter(store, election_id=president.election.id, student_id='S2', name='Pat')
    with pytest.raises(Conflict):
        elections.add_eligible_voter(store, election_id=president.election.id, student_id='S2', name='Pat')
    with pytest.raises(InvalidInput):
        elections.add_eligible_voter(store, election_id=president.election.id, student_id='', name='Nobody')

    submit_vote(
        store,
        election_id=president.election.id,
        voter_user_id=voter.id,
        selections=[(president.position.id, president.alice.id)],
    )

    roster = {entry['studentId']: entry['hasVoted'] for entry in elections.list_roster(store, president.election.id)}
    assert roster == {'S1': True, 'S2': False}


def test_non_text_fields_are_invalid(store, president):
    with pytest.raises(InvalidInput):
        elections.create_election(store, title=5)
    with pytest.raises(InvalidInput):
        elections.update_election(store, president.election.id, title=5)
    with pytest.raises(InvalidInput):
        elections.create_position(store, election_id=president.election.id, title=None)
    user = store.create_user(username='amy', password='x', role=Role.voter, student_id='S1')
    with pytest.raises(InvalidInput):
        elections.apply_as_candidate(
            store, user_id=user.id, election_id=president.election.id, position_id=president.position.id, manifesto=12345
        )
