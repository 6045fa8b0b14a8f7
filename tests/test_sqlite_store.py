import datetime
import threading

import pytest

from campus_vote.errors import AlreadyVoted, Conflict, DuplicatePositionSelection
from campus_vote.models import CandidateStatus, ElectionStatus, Role
from campus_vote.sqlite_store import SqliteStore, connect, init_schema
from campus_vote.tally import compute_results
from campus_vote.voting import submit_vote


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / 'test.db')
    conn = connect(path)
    init_schema(conn)
    conn.close()
    return path


@pytest.fixture
def sql_store(db_path):
    conn = connect(db_path)
    yield SqliteStore(conn)
    conn.close()


@pytest.fixture
def seeded(sql_store):
    s = sql_store
    election = s.create_election(title='Student Council', status=ElectionStatus.active)
    position = s.create_position(election_id=election.id, title='President')
    cand_user = s.create_user(username='alice', password='x', role=Role.candidate, student_id='C1', name='Alice')
    alice = s.create_candidate(
        user_id=cand_user.id, election_id=election.id, position_id=position.id, status=CandidateStatus.approved
    )
    s.create_eligible_voter(election_id=election.id, student_id='S1', name='Sam')
    voter = s.create_user(username='S1', password='x', role=Role.voter, student_id='S1', name='Sam')
    return election, position, alice, voter


def test_election_round_trip(sql_store):
    start = datetime.datetime(2026, 3, 1, 9, 0, tzinfo=datetime.timezone.utc)
    election = sql_store.create_election(title='Council', description='Spring', start_date=start)

    loaded = sql_store.get_election(election.id)
    assert loaded.status == ElectionStatus.draft
    assert loaded.start_date == start
    assert loaded.end_date is None
    assert loaded.created_at is not None

    updated = sql_store.update_election(election.id, status=ElectionStatus.active, title='Council 2026')
    assert updated.status == ElectionStatus.active
    assert updated.title == 'Council 2026'
    assert sql_store.update_election(999, title='nope') is None


def test_unique_user_fields(sql_store):
    sql_store.create_user(username='amy', password='x', role=Role.voter, student_id='S1')
    with pytest.raises(Conflict, match='Username'):
        sql_store.create_user(username='amy', password='x', role=Role.voter, student_id='S2')
    with pytest.raises(Conflict, match='student ID'):
        sql_store.create_user(username='amy2', password='x', role=Role.voter, student_id='S1')


def test_roster_unique_per_election(sql_store):
    first = sql_store.create_election(title='A')
    second = sql_store.create_election(title='B')
    sql_store.create_eligible_voter(election_id=first.id, student_id='S1', name='Sam')
    sql_store.create_eligible_voter(election_id=second.id, student_id='S1', name='Sam')
    with pytest.raises(Conflict):
        sql_store.create_eligible_voter(election_id=first.id, student_id='S1', name='Sam')

    created = sql_store.bulk_create_eligible_voters(
        first.id, [{'student_id': 'S1', 'name': 'Sam'}, {'student_id': 'S2', 'name': 'Pat', 'department': 'Art'}]
    )
    assert [v.student_id for v in created] == ['S2']
    assert sql_store.get_eligible_voter_by_student_id('S2', first.id).department == 'Art'
    assert sql_store.get_eligible_voter_by_student_id('S2', second.id) is None


def test_record_ballot_writes_marker_and_votes(sql_store, seeded):
    election, position, alice, voter = seeded
    votes = sql_store.record_ballot(voter.id, election.id, [(position.id, alice.id)])

    assert [v.candidate_id for v in votes] == [alice.id]
    assert sql_store.has_voted(voter.id, election.id)
    with pytest.raises(AlreadyVoted):
        sql_store.record_ballot(voter.id, election.id, [(position.id, alice.id)])
    assert len(sql_store.list_votes(election.id)) == 1


def test_failed_ballot_write_rolls_back(sql_store, seeded):
    election, position, alice, voter = seeded
    # second selection points at a candidate row that does not exist
    with pytest.raises(Conflict):
        sql_store.record_ballot(voter.id, election.id, [(position.id, alice.id), (position.id + 1, 999)])

    assert sql_store.list_votes(election.id) == []
    assert not sql_store.has_voted(voter.id, election.id)


def test_set_has_voted_is_per_election(sql_store, seeded):
    election, _, _, voter = seeded
    other = sql_store.create_election(title='Other')
    sql_store.set_has_voted(voter.id, election.id)
    sql_store.set_has_voted(voter.id, election.id)

    assert sql_store.has_voted(voter.id, election.id)
    assert not sql_store.has_voted(voter.id, other.id)


def test_racing_connections_record_one_ballot(db_path, seeded):
    election, position, alice, voter = seeded
    attempts = 4
    barrier = threading.Barrier(attempts)
    outcomes = []
    lock = threading.Lock()

    def cast():
        conn = connect(db_path)
        try:
            barrier.wait()
            submit_vote(
                SqliteStore(conn),
                election_id=election.id,
                voter_user_id=voter.id,
                selections=[(position.id, alice.id)],
            )
            result = 'ok'
        except AlreadyVoted:
            result = 'rejected'
        finally:
            conn.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=cast) for _ in range(attempts)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ['ok'] + ['rejected'] * (attempts - 1)
    conn = connect(db_path)
    try:
        assert len(SqliteStore(conn).list_votes(election.id)) == 1
    finally:
        conn.close()


def test_results_from_sqlite(sql_store, seeded):
    election, position, alice, voter = seeded
    submit_vote(sql_store, election_id=election.id, voter_user_id=voter.id, selections=[(position.id, alice.id)])

    results = compute_results(sql_store, election.id)
    assert results.voter_turnout == 100
    assert results.positions[0].winner.name == 'Alice'


def test_election_details_join(sql_store, seeded):
    election, position, alice, _ = seeded
    details = sql_store.get_election_with_details(election.id)

    assert [p.id for p in details.positions] == [position.id]
    assert details.candidates[0].user.name == 'Alice'
    assert details.as_dict()['candidates'][0]['position']['title'] == 'President'


def test_repeated_position_rejected_before_writing(sql_store, seeded):
    election, position, alice, voter = seeded
    with pytest.raises(DuplicatePositionSelection):
        sql_store.record_ballot(voter.id, election.id, [(position.id, alice.id), (position.id, alice.id)])

    assert sql_store.list_votes(election.id) == []
    assert not sql_store.has_voted(voter.id, election.id)
