import csv
import functools
import io
import json
import os
from datetime import datetime, timedelta, timezone

from flask import Flask, Response, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

# Security and realtime extensions
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO
from flask_wtf import CSRFProtect
from flask_wtf.csrf import CSRFError, generate_csrf
from itsdangerous import BadSignature, URLSafeTimedSerializer

from campus_vote import accounts, elections
from campus_vote.ballot import get_ballot
from campus_vote.csv_import import import_roster
from campus_vote.errors import CampusVoteError, ElectionNotFound, Forbidden, InvalidInput, ResultsNotPublic, Unauthorized
from campus_vote.models import ElectionStatus, Role
from campus_vote.sqlite_store import SqliteStore, connect
from campus_vote.tally import compute_results
from campus_vote.voting import submit_vote


def _env_flag(name, default):
    return os.environ.get(name, default).lower() not in ('0', 'false', 'no', '')


app = Flask(__name__)
app.config.update(
    SECRET_KEY=os.environ.get('SECRET_KEY', 'change-me-in-production'),
    DATABASE=os.environ.get('DATABASE', 'database.db'),
    LOG_LEVEL=os.environ.get('LOG_LEVEL', 'INFO'),
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=_env_flag('SESSION_COOKIE_SECURE', '0'),  # set in production with HTTPS
    SESSION_COOKIE_SAMESITE='Lax',
    PERMANENT_SESSION_LIFETIME=timedelta(minutes=int(os.environ.get('SESSION_LIFETIME_MINUTES', '30'))),
    RATELIMIT_ENABLED=_env_flag('RATELIMIT_ENABLED', '1'),
    RATELIMIT_STORAGE_URI=os.environ.get('RATELIMIT_STORAGE_URI', 'memory://'),
)
app.logger.setLevel(app.config['LOG_LEVEL'])

# Initialize helpers
csrf = CSRFProtect(app)
limiter = Limiter(key_func=get_remote_address, app=app, default_limits=['2000 per day', '500 per hour'])
socketio = SocketIO(app, async_mode='threading')
serializer = URLSafeTimedSerializer(app.config['SECRET_KEY'])

RECEIPT_SALT = 'vote-receipt'


def get_db():
    if 'db' not in g:
        g.db = connect(app.config['DATABASE'])
    return g.db


def get_store():
    if 'store' not in g:
        g.store = SqliteStore(get_db())
    return g.store


@app.teardown_appcontext
def close_db(exception=None):
    g.pop('store', None)
    db = g.pop('db', None)
    if db is not None:
        db.close()


@app.errorhandler(CampusVoteError)
def handle_domain_error(e):
    if e.status_code >= 500:
        app.logger.error('Request failed: %s', e.message)
    else:
        app.logger.debug('Request rejected (%s): %s', e.status_code, e.message)
    return jsonify({'message': e.message}), e.status_code


@app.errorhandler(CSRFError)
def handle_csrf_error(e):
    app.logger.warning('CSRF error: %s', getattr(e, 'description', str(e)))
    return jsonify({'message': 'Missing or invalid CSRF token'}), 400


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return jsonify({'message': e.description}), e.code


# Helpers
def payload():
    return request.get_json(silent=True) or {}


def as_int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f'{field} is required') from exc


def as_text(value, field):
    if value is None or isinstance(value, str):
        return value
    raise InvalidInput(f'{field} must be a string')


def require_role(*roles):
    def decorator(view):
        @functools.wraps(view)
        def wrapped(*args, **kwargs):
            if 'user_id' not in session:
                raise Unauthorized('Authentication required')
            if roles and session.get('role') not in roles:
                raise Forbidden('Insufficient permissions')
            return view(*args, **kwargs)

        return wrapped

    return decorator


require_auth = require_role()


def start_session(user):
    session.clear()
    session.permanent = True
    session['user_id'] = user.id
    session['username'] = user.username
    session['role'] = user.role.value
    if user.student_id:
        session['student_id'] = user.student_id


def session_user():
    data = {'id': session['user_id'], 'username': session['username'], 'role': session['role']}
    if session.get('student_id'):
        data['studentId'] = session['student_id']
    return data


def audit(action, details):
    get_store().add_audit(action, session.get('username'), details)


def notify(event, data):
    try:
        socketio.emit(event, data)
    except Exception:
        app.logger.exception('Socket emit failed for %s', event)


def results_for(election_id):
    return compute_results(get_store(), election_id)


# Simple health endpoint for quick checks
@app.route('/_health')
def health():
    return {'status': 'ok', 'user': session.get('username')}


# --- Auth ---
@app.route('/api/auth/csrf')
def csrf_token():
    return {'csrfToken': generate_csrf()}


@app.route('/api/auth/login', methods=['POST'])
@limiter.limit('10 per minute')
def login():
    data = payload()
    user = accounts.authenticate_admin(
        get_store(), as_text(data.get('username'), 'Username'), as_text(data.get('password'), 'Password')
    )
    start_session(user)
    app.logger.info('Admin login successful for %s (id=%s)', user.username, user.id)
    return {'message': 'Login successful', 'user': session_user()}


@app.route('/api/auth/student-login', methods=['POST'])
@limiter.limit('10 per minute')
def student_login():
    data = payload()
    user = accounts.student_login(
        get_store(), as_text(data.get('studentId'), 'Student ID'), as_text(data.get('role'), 'Role')
    )
    start_session(user)
    app.logger.info('Student login successful for %s (role=%s)', user.student_id, user.role.value)
    return {'message': 'Login successful', 'user': session_user()}


@app.route('/api/auth/register', methods=['POST'])
@limiter.limit('10 per minute')
def register():
    data = payload()
    user = accounts.register(
        get_store(),
        username=as_text(data.get('username'), 'Username'),
        password=as_text(data.get('password'), 'Password'),
        role=as_text(data.get('role'), 'Role'),
        student_id=as_text(data.get('studentId'), 'Student ID'),
        name=as_text(data.get('name'), 'Name'),
        department=as_text(data.get('department'), 'Department'),
    )
    start_session(user)
    return {'message': 'Registration successful', 'user': session_user()}, 201


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return {'message': 'Logout successful'}


@app.route('/api/auth/session')
def current_session():
    if 'user_id' in session:
        return {'user': session_user()}
    return {'user': None}


# --- Admin: elections & positions ---
def election_changes(data):
    mapping = {'title': 'title', 'description': 'description', 'startDate': 'start_date', 'endDate': 'end_date', 'status': 'status'}
    return {field: as_text(data[key], key) for key, field in mapping.items() if key in data}


@app.route('/api/admin/elections', methods=['GET'])
@require_role('admin')
def list_elections():
    return jsonify([e.as_dict() for e in get_store().list_elections()])


@app.route('/api/admin/elections', methods=['POST'])
@require_role('admin')
def create_election():
    changes = election_changes(payload())
    election = elections.create_election(get_store(), title=changes.pop('title', None), **changes)
    audit('create_election', f'created election id={election.id} title={election.title}')
    return election.as_dict(), 201


@app.route('/api/admin/elections/<int:election_id>', methods=['GET'])
@require_role('admin')
def election_detail(election_id):
    details = get_store().get_election_with_details(election_id)
    if details is None:
        raise ElectionNotFound(election_id)
    return details.as_dict()


@app.route('/api/admin/elections/<int:election_id>', methods=['PATCH'])
@require_role('admin')
def update_election(election_id):
    changes = election_changes(payload())
    store = get_store()
    before = store.get_election(election_id)
    updated = elections.update_election(store, election_id, **changes)
    audit('update_election', f'updated election id={election_id} status={updated.status.value}')
    if updated.status == ElectionStatus.completed and before.status != ElectionStatus.completed:
        notify('results_published', {'electionId': election_id})
    return updated.as_dict()


@app.route('/api/admin/positions', methods=['POST'])
@require_role('admin')
def create_position():
    data = payload()
    position = elections.create_position(
        get_store(),
        election_id=as_int(data.get('electionId'), 'Election ID'),
        title=as_text(data.get('title'), 'Title'),
        description=as_text(data.get('description'), 'Description'),
    )
    audit('create_position', f'created position id={position.id} in election id={position.election_id}')
    return position.as_dict(), 201


@app.route('/api/admin/elections/<int:election_id>/positions')
@require_role('admin')
def admin_positions(election_id):
    return jsonify([p.as_dict() for p in get_store().list_positions(election_id)])


# --- Admin: candidates ---
@app.route('/api/admin/candidates')
@require_role('admin')
def admin_candidates():
    election_id = as_int(request.args.get('electionId'), 'Election ID')
    store = get_store()
    details = [store.get_candidate_with_details(c.id) for c in store.list_candidates(election_id)]
    return jsonify([d.as_dict() for d in details if d is not None])


@app.route('/api/admin/candidates/<int:candidate_id>/status', methods=['PATCH'])
@require_role('admin')
def candidate_status(candidate_id):
    candidate = elections.set_candidate_status(get_store(), candidate_id, as_text(payload().get('status'), 'Status'))
    audit('candidate_status', f'candidate id={candidate_id} set to {candidate.status.value}')
    notify('candidate_update', {'electionId': candidate.election_id, 'candidateId': candidate.id})
    return candidate.as_dict()


# --- Admin: voters ---
@app.route('/api/admin/voters')
@require_role('admin')
def admin_voters():
    election_id = as_int(request.args.get('electionId'), 'Election ID')
    return jsonify(elections.list_roster(get_store(), election_id))


@app.route('/api/admin/voters/upload', methods=['POST'])
@require_role('admin')
def upload_voters():
    data = payload()
    if not data.get('csvData') or not data.get('electionId'):
        raise InvalidInput('CSV data and election ID are required')
    election_id = as_int(data['electionId'], 'Election ID')
    count = import_roster(get_store(), election_id, as_text(data['csvData'], 'CSV data'))
    audit('import_voters', f'imported {count} voters into election id={election_id}')
    return {'message': f'{count} voters imported successfully', 'count': count}, 201


@app.route('/api/admin/voters', methods=['POST'])
@require_role('admin')
def add_voter():
    data = payload()
    voter = elections.add_eligible_voter(
        get_store(),
        election_id=as_int(data.get('electionId'), 'Election ID'),
        student_id=as_text(data.get('studentId'), 'Student ID'),
        name=as_text(data.get('name'), 'Name'),
        department=as_text(data.get('department'), 'Department'),
    )
    audit('add_voter', f'added {voter.student_id} to election id={voter.election_id}')
    return voter.as_dict(), 201


# --- Admin: results & audit ---
@app.route('/api/admin/results/<int:election_id>')
@require_role('admin')
def admin_results(election_id):
    return results_for(election_id).as_dict()


@app.route('/api/admin/results/<int:election_id>/export')
@require_role('admin')
def export_results(election_id):
    fmt = request.args.get('format', 'csv').lower()
    rows = results_for(election_id).rows()
    ts = datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')
    if fmt == 'json':
        resp = Response(json.dumps(rows, indent=2), mimetype='application/json')
        resp.headers['Content-Disposition'] = f'attachment; filename=results_{election_id}_{ts}.json'
        return resp
    # Default: CSV
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=['position', 'rank', 'candidate_id', 'name', 'student_id', 'votes', 'percent', 'winner'])
    writer.writeheader()
    writer.writerows(rows)
    resp = Response(output.getvalue(), mimetype='text/csv')
    resp.headers['Content-Disposition'] = f'attachment; filename=results_{election_id}_{ts}.csv'
    return resp


@app.route('/api/admin/audit')
@require_role('admin')
def admin_audit():
    limit = max(1, min(as_int(request.args.get('limit', 500), 'limit'), 500))
    return jsonify([entry.as_dict() for entry in get_store().list_audit(limit)])


# --- Candidates ---
@app.route('/api/elections/<int:election_id>/positions')
@require_auth
def election_positions(election_id):
    return jsonify([p.as_dict() for p in get_store().list_positions(election_id)])


@app.route('/api/candidates/apply', methods=['POST'])
@require_auth
def apply():
    data = payload()
    store = get_store()
    candidate = elections.apply_as_candidate(
        store,
        user_id=session['user_id'],
        election_id=as_int(data.get('electionId'), 'Election ID'),
        position_id=as_int(data.get('positionId'), 'Position ID'),
        manifesto=as_text(data.get('manifesto'), 'Manifesto'),
    )
    if session.get('role') == Role.voter.value:
        session['role'] = Role.candidate.value
    audit('apply', f'applied for position id={candidate.position_id}')
    return candidate.as_dict(), 201


@app.route('/api/candidates/profile')
@require_role('candidate')
def candidate_profile():
    store = get_store()
    applications = store.list_candidates_by_user(session['user_id'])
    if not applications:
        return {'message': 'No candidate profile found'}, 404
    profile = []
    for application in applications:
        details = store.get_candidate_with_details(application.id)
        election = store.get_election(application.election_id)
        entry = details.as_dict() if details else application.as_dict()
        entry['election'] = election.as_dict() if election else None
        profile.append(entry)
    return jsonify(profile)


# --- Voters ---
@app.route('/api/elections/active')
@require_auth
def active_elections():
    active = [e.as_dict() for e in get_store().list_elections() if e.status == ElectionStatus.active]
    return jsonify(active)


@app.route('/api/elections/<int:election_id>/ballot')
@require_role('voter')
def ballot(election_id):
    return get_ballot(get_store(), election_id=election_id, voter_user_id=session['user_id']).as_dict()


@app.route('/api/vote', methods=['POST'])
@require_role('voter')
def vote():
    data = payload()
    election_id = as_int(data.get('electionId'), 'Election ID')
    votes = data.get('votes')
    if not isinstance(votes, list):
        raise InvalidInput('At least one vote is required')
    selections = []
    for item in votes:
        if not isinstance(item, dict):
            raise InvalidInput('Invalid vote data')
        selections.append((as_int(item.get('positionId'), 'Position ID'), as_int(item.get('candidateId'), 'Candidate ID')))

    receipt = submit_vote(get_store(), election_id=election_id, voter_user_id=session['user_id'], selections=selections)
    token = serializer.dumps(dict(receipt.as_dict(), voterId=receipt.user_id), salt=RECEIPT_SALT)
    notify('vote_cast', {'electionId': election_id})
    return {'message': 'Votes recorded successfully', 'receipt': token}


@app.route('/api/receipts/verify', methods=['POST'])
@require_auth
def verify_receipt():
    token = as_text(payload().get('receipt'), 'Receipt')
    if not token:
        raise InvalidInput('Receipt is required')
    try:
        data = serializer.loads(token, salt=RECEIPT_SALT)
    except BadSignature as exc:
        raise InvalidInput('Invalid receipt') from exc
    recorded = get_store().has_voted(data['voterId'], data['electionId'])
    return {
        'valid': True,
        'recorded': recorded,
        'electionId': data['electionId'],
        'votesRecorded': data['votesRecorded'],
        'castAt': data['castAt'],
    }


@app.route('/api/elections/<int:election_id>/results')
@require_auth
def public_results(election_id):
    election = get_store().get_election(election_id)
    if election is None:
        raise ElectionNotFound(election_id)
    if election.status != ElectionStatus.completed and session.get('role') != Role.admin.value:
        raise ResultsNotPublic()
    return results_for(election_id).as_dict()


# SocketIO event handlers
@socketio.on('connect')
def on_connect(auth=None):
    app.logger.debug('Socket connected: %s', getattr(request, 'sid', 'unknown'))


@socketio.on('disconnect')
def on_disconnect(reason=None):
    app.logger.debug('Socket disconnected')


if __name__ == '__main__':
    socketio.run(app, debug=True)
