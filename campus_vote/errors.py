class CampusVoteError(Exception):
    status_code = 500

    def __init__(self, message, *, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFound(CampusVoteError):
    status_code = 404


class Conflict(CampusVoteError):
    status_code = 409


class InvalidInput(CampusVoteError):
    status_code = 400


class Forbidden(CampusVoteError):
    status_code = 403


class Unauthorized(CampusVoteError):
    status_code = 401


class ElectionNotFound(NotFound):
    def __init__(self, election_id):
        super().__init__(f'Election {election_id} not found')
        self.election_id = election_id


class PositionNotFound(NotFound):
    def __init__(self, position_id):
        super().__init__(f'Position {position_id} not found')
        self.position_id = position_id


class CandidateNotFound(NotFound):
    def __init__(self, candidate_id):
        super().__init__(f'Candidate {candidate_id} not found')
        self.candidate_id = candidate_id


class UserNotFound(NotFound):
    def __init__(self, user_id):
        super().__init__(f'User {user_id} not found')
        self.user_id = user_id


class AlreadyVoted(Conflict):
    def __init__(self, message='You have already voted in this election'):
        super().__init__(message)


class DuplicatePositionSelection(Conflict):
    def __init__(self, position_id):
        super().__init__('You can only vote once per position')
        self.position_id = position_id


class ElectionNotActive(Conflict):
    def __init__(self, election_id):
        super().__init__('This election is not currently active')
        self.election_id = election_id


class InvalidSelection(InvalidInput):
    pass


class NotEligible(Forbidden):
    def __init__(self, message='Your student ID is not in the eligible voters list for this election'):
        super().__init__(message)


class ResultsNotPublic(Forbidden):
    def __init__(self):
        super().__init__('Results are not available yet')
