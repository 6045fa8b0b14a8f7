import threading

import pytest

from campus_vote.errors import (
    AlreadyVoted,
    DuplicatePositionSelection,
    ElectionNotActive,
    ElectionNotFound,
    InvalidInput,
    InvalidSelection,
    NotEligible,
)
from campus_vote.models import CandidateStatus, ElectionStatus
from campus_vote.voting import submit_vote


@pytest.fixture
def council(store, president, make_candidate):
    """President plus a Secretary position with two approved candidates and one pending."""
    secretary = store.create_position(election_id=president.election.id, title='Secretary')
    president.secretary = secretary
    president.erin = make_candidate(president.election.id, secretary.id, 'Erin')
    president.frank = make_candidate(president.election.id, secretary.id, 'Frank')
    president.gina = make_candidate(president.election.id, secretary.id, 'Gina', status=CandidateStatus.pending)
    return president


def test_one_vote_row_per_position(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    receipt = submit_vote(
        store,
        election_id=council.election.id,
        voter_user_id=voter.id,
        selections=[(council.position.id, council.alice.id), (council.secretary.id, council.frank.id)],
    )

    votes = store.list_votes(council.election.id)
    assert receipt.votes_recorded == 2
    assert len(votes) == 2
    assert {(v.position_id, v.candidate_id) for v in votes} == {
        (council.position.id, council.alice.id),
        (council.secretary.id, council.frank.id),
    }
    assert store.has_voted(voter.id, council.election.id)


def test_second_submission_rejected_regardless_of_content(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    submit_vote(
        store,
        election_id=council.election.id,
        voter_user_id=voter.id,
        selections=[(council.position.id, council.alice.id)],
    )
    # topping up the untouched Secretary position is refused too
    with pytest.raises(AlreadyVoted):
        submit_vote(
            store,
            election_id=council.election.id,
            voter_user_id=voter.id,
            selections=[(council.secretary.id, council.erin.id)],
        )
    assert len(store.list_votes(council.election.id)) == 1


def test_duplicate_position_selection(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    with pytest.raises(DuplicatePositionSelection):
        submit_vote(
            store,
            election_id=council.election.id,
            voter_user_id=voter.id,
            selections=[(council.position.id, council.alice.id), (council.position.id, council.bob.id)],
        )
    assert store.list_votes(council.election.id) == []


def test_pending_candidate_fails_whole_batch(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    with pytest.raises(InvalidSelection):
        submit_vote(
            store,
            election_id=council.election.id,
            voter_user_id=voter.id,
            selections=[(council.position.id, council.alice.id), (council.secretary.id, council.gina.id)],
        )
    assert store.list_votes(council.election.id) == []
    assert not store.has_voted(voter.id, council.election.id)


def test_candidate_must_stand_for_the_selected_position(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    with pytest.raises(InvalidSelection):
        submit_vote(
            store,
            election_id=council.election.id,
            voter_user_id=voter.id,
            selections=[(council.position.id, council.erin.id)],
        )


def test_candidate_from_another_election(store, council, make_voter, make_candidate):
    other = store.create_election(title='Sports Committee', status=ElectionStatus.active)
    captain = store.create_position(election_id=other.id, title='Captain')
    outsider = make_candidate(other.id, captain.id, 'Hank')
    voter = make_voter(council.election.id, 'S100')
    with pytest.raises(InvalidSelection):
        submit_vote(
            store,
            election_id=council.election.id,
            voter_user_id=voter.id,
            selections=[(captain.id, outsider.id)],
        )


def test_unknown_candidate(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    with pytest.raises(InvalidSelection):
        submit_vote(store, election_id=council.election.id, voter_user_id=voter.id, selections=[(council.position.id, 999)])


def test_empty_submission(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    with pytest.raises(InvalidInput):
        submit_vote(store, election_id=council.election.id, voter_user_id=voter.id, selections=[])


def test_inactive_election_rejected(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    store.update_election(council.election.id, status=ElectionStatus.completed)
    with pytest.raises(ElectionNotActive):
        submit_vote(
            store,
            election_id=council.election.id,
            voter_user_id=voter.id,
            selections=[(council.position.id, council.alice.id)],
        )


def test_unknown_election_rejected(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    with pytest.raises(ElectionNotFound):
        submit_vote(store, election_id=42, voter_user_id=voter.id, selections=[(1, 1)])


def test_voter_must_be_on_roster(store, council):
    stranger = store.create_user(username='walkin', password='unused', role='voter', student_id='S999')
    with pytest.raises(NotEligible):
        submit_vote(
            store,
            election_id=council.election.id,
            voter_user_id=stranger.id,
            selections=[(council.position.id, council.alice.id)],
        )


def test_receipt_and_audit_do_not_echo_choices(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    receipt = submit_vote(
        store,
        election_id=council.election.id,
        voter_user_id=voter.id,
        selections=[(council.position.id, council.bob.id)],
    )

    assert set(receipt.as_dict()) == {'electionId', 'votesRecorded', 'castAt'}
    [entry] = store.list_audit()
    assert entry.action == 'cast_ballot'
    assert entry.user == 'S100'
    assert 'candidate' not in entry.details


def test_racing_submissions_leave_one_ballot(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    attempts = 8
    barrier = threading.Barrier(attempts)
    outcomes = []
    lock = threading.Lock()

    def cast():
        barrier.wait()
        try:
            submit_vote(
                store,
                election_id=council.election.id,
                voter_user_id=voter.id,
                selections=[(council.position.id, council.alice.id)],
            )
            result = 'ok'
        except AlreadyVoted:
            result = 'rejected'
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=cast) for _ in range(attempts)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count('ok') == 1
    assert outcomes.count('rejected') == attempts - 1
    assert len(store.list_votes(council.election.id)) == 1


def test_store_refuses_ballot_when_vote_exists(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    store.create_vote(
        user_id=voter.id,
        election_id=council.election.id,
        position_id=council.position.id,
        candidate_id=council.alice.id,
    )
    with pytest.raises(AlreadyVoted):
        store.record_ballot(voter.id, council.election.id, [(council.secretary.id, council.erin.id)])
    assert len(store.list_votes(council.election.id)) == 1


def test_store_rejects_repeated_position(store, council, make_voter):
    voter = make_voter(council.election.id, 'S100')
    with pytest.raises(DuplicatePositionSelection):
        store.record_ballot(
            voter.id,
            council.election.id,
            [(council.position.id, council.alice.id), (council.position.id, council.bob.id)],
        )
    assert store.list_votes(council.election.id) == []
    assert not store.has_voted(voter.id, council.election.id)
