import pytest

from campus_vote.csv_import import import_roster, parse_roster
from campus_vote.errors import ElectionNotFound, InvalidInput


def test_invalid_rows_are_skipped(store):
    election = store.create_election(title='Council')
    csv_text = (
        'studentId,name,department\n'
        'S1,Sam Lee,Maths\n'
        ',Missing Id,Art\n'
        'S2,,Art\n'
        'S3,Pat Kim\n'
    )
    assert import_roster(store, election.id, csv_text) == 2

    roster = store.list_eligible_voters(election.id)
    assert [(v.student_id, v.name, v.department) for v in roster] == [('S1', 'Sam Lee', 'Maths'), ('S3', 'Pat Kim', '')]


def test_existing_entries_are_not_duplicated(store):
    election = store.create_election(title='Council')
    store.create_eligible_voter(election_id=election.id, student_id='S1', name='Sam Lee')
    assert import_roster(store, election.id, 'studentId,name\nS1,Sam Lee\nS2,Pat Kim\n') == 1
    assert len(store.list_eligible_voters(election.id)) == 2


def test_header_whitespace_is_tolerated():
    assert parse_roster('studentId , name\nS1,Sam\n') == [{'student_id': 'S1', 'name': 'Sam', 'department': ''}]


def test_missing_columns(store):
    election = store.create_election(title='Council')
    with pytest.raises(InvalidInput, match='name'):
        import_roster(store, election.id, 'studentId,dept\nS1,Maths\n')


def test_nothing_valid(store):
    election = store.create_election(title='Council')
    with pytest.raises(InvalidInput):
        import_roster(store, election.id, 'studentId,name\n,\n')
    with pytest.raises(InvalidInput):
        import_roster(store, election.id, '')


def test_unknown_election(store):
    with pytest.raises(ElectionNotFound):
        import_roster(store, 3, 'studentId,name\nS1,Sam\n')


def test_csv_must_be_text(store):
    election = store.create_election(title='Council')
    with pytest.raises(InvalidInput):
        import_roster(store, election.id, b'studentId,name\nS1,Sam\n')
