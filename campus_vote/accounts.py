import logging
import secrets

from werkzeug.security import check_password_hash, generate_password_hash

from campus_vote.errors import Conflict, InvalidInput, Unauthorized
from campus_vote.models import Role, User
from campus_vote.store import Store

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def authenticate_admin(store: Store, username: str, password: str) -> User:
    if not username or not password:
        raise InvalidInput('Please provide username and password')
    user = store.get_user_by_username(username)
    if user is None or user.role != Role.admin or not check_password_hash(user.password, password):
        logger.debug('Admin login failed for %s', username)
        raise Unauthorized('Invalid admin credentials')
    return user


def student_login(store: Store, student_id: str, role) -> User:
    """Log a student in by student id alone.

    Voters must appear on some election roster and get a user record on
    first login. Candidates must already have a user record and at least
    one application.
    """
    if not student_id:
        raise InvalidInput('Student ID is required')
    try:
        role = Role(role)
    except ValueError as exc:
        raise InvalidInput('Invalid role specified') from exc

    if role == Role.voter:
        roster_entry = store.get_eligible_voter_by_student_id(student_id)
        if roster_entry is None:
            raise Unauthorized('Student ID not found in eligible voters list')
        user = store.get_user_by_student_id(student_id)
        if user is None:
            user = store.create_user(
                username=student_id,
                password=generate_password_hash(secrets.token_urlsafe(16)),
                role=Role.voter,
                student_id=student_id,
                name=roster_entry.name,
                department=roster_entry.department,
            )
            logger.info('Provisioned voter account for student %s', student_id)
        return user

    if role == Role.candidate:
        user = store.get_user_by_student_id(student_id)
        if user is None:
            raise Unauthorized('Student ID not found in candidate database')
        if not store.list_candidates_by_user(user.id):
            raise Unauthorized('No candidate application found for this student ID')
        return user

    raise InvalidInput('Invalid role specified')


def register(
    store: Store,
    *,
    username: str,
    password: str,
    role,
    student_id: str,
    name: str,
    department: str | None = None,
) -> User:
    if not username or not student_id or not name:
        raise InvalidInput('Username, student ID and name are required')
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidInput(f'Password must be at least {MIN_PASSWORD_LENGTH} characters')
    try:
        role = Role(role)
    except ValueError as exc:
        raise InvalidInput('Invalid role specified') from exc
    if role == Role.admin:
        raise InvalidInput('Invalid role specified')

    if store.get_user_by_student_id(student_id) is not None:
        raise Conflict('A user with this student ID already exists')
    if role == Role.voter and store.get_eligible_voter_by_student_id(student_id) is None:
        raise Unauthorized(
            'Your student ID is not in the eligible voters list. Please contact your administrator.'
        )

    return store.create_user(
        username=username,
        password=generate_password_hash(password),
        role=role,
        student_id=student_id,
        name=name,
        department=department or None,
    )


def create_admin(store: Store, username: str, password: str, name: str = 'Administrator') -> User:
    return store.create_user(
        username=username,
        password=generate_password_hash(password),
        role=Role.admin,
        name=name,
    )
