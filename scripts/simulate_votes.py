"""Simulate voters logging in and casting ballots against the running app.

Defaults: 100 voters, concurrency 10, deterministic seed

Usage examples:
  python scripts/simulate_votes.py --setup --voters 100 --concurrency 10 --seed 42
  python scripts/simulate_votes.py --election 1 --voters 10 --double-submit

Notes:
- Requires `requests`.
- Runs against the app at BASE URL (default http://127.0.0.1:5000).
- With --setup it logs in as admin, creates an election with two positions,
  registers and approves two candidates per position, imports a roster of
  `<prefix><n>` student ids and activates the election.
- With --double-submit every voter fires two ballots at once; exactly one
  of each pair should be accepted.
"""

import argparse
import concurrent.futures
import logging
import random
import time

import requests

logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
logger = logging.getLogger('simulate')


def refresh_csrf(session: requests.Session, base: str) -> None:
    # login clears the server-side session, so the token must be refetched afterwards
    r = session.get(base + '/api/auth/csrf')
    r.raise_for_status()
    session.headers['X-CSRFToken'] = r.json()['csrfToken']


def post(session: requests.Session, base: str, path: str, data: dict) -> requests.Response:
    return session.post(base + path, json=data)


def admin_session(base: str, username: str, password: str) -> requests.Session:
    s = requests.Session()
    refresh_csrf(s, base)
    r = post(s, base, '/api/auth/login', {'username': username, 'password': password})
    r.raise_for_status()
    refresh_csrf(s, base)
    return s


def setup_election(base: str, args) -> int:
    admin = admin_session(base, args.admin_user, args.admin_password)
    election = post(admin, base, '/api/admin/elections', {'title': 'Simulated election', 'status': 'draft'}).json()
    election_id = election['id']

    roster = ['studentId,name,department']
    roster += [f'{args.prefix}{i},Voter {i},Sim' for i in range(1, args.voters + 1)]
    r = post(admin, base, '/api/admin/voters/upload', {'electionId': election_id, 'csvData': '\n'.join(roster)})
    logger.info(r.json()['message'])

    for title in ('President', 'Secretary'):
        position = post(admin, base, '/api/admin/positions', {'electionId': election_id, 'title': title}).json()
        for n in (1, 2):
            student_id = f'cand-{position["id"]}-{n}'
            s = requests.Session()
            refresh_csrf(s, base)
            post(s, base, '/api/auth/register', {
                'username': student_id, 'password': args.password, 'role': 'candidate',
                'studentId': student_id, 'name': f'{title} candidate {n}',
            }).raise_for_status()
            refresh_csrf(s, base)
            candidate = post(s, base, '/api/candidates/apply', {
                'electionId': election_id, 'positionId': position['id'],
                'manifesto': 'Simulated manifesto text for this candidate.',
            }).json()
            admin.patch(base + f'/api/admin/candidates/{candidate["id"]}/status', json={'status': 'approved'}).raise_for_status()

    admin.patch(base + f'/api/admin/elections/{election_id}', json={'status': 'active'}).raise_for_status()
    logger.info('Election %s ready', election_id)
    return election_id


def login_voter(base: str, student_id: str) -> requests.Session:
    s = requests.Session()
    refresh_csrf(s, base)
    r = post(s, base, '/api/auth/student-login', {'studentId': student_id, 'role': 'voter'})
    r.raise_for_status()
    refresh_csrf(s, base)
    return s


def choose(session: requests.Session, base: str, election_id: int, rng: random.Random) -> list:
    r = session.get(base + f'/api/elections/{election_id}/ballot')
    r.raise_for_status()
    votes = []
    for entry in r.json()['ballot']:
        if entry['candidates']:
            candidate = rng.choice(entry['candidates'])
            votes.append({'positionId': entry['position']['id'], 'candidateId': candidate['candidateId']})
    return votes


def worker(index: int, base: str, election_id: int, prefix: str, rng: random.Random, double: bool) -> int:
    student_id = f'{prefix}{index}'
    try:
        s = login_voter(base, student_id)
        votes = choose(s, base, election_id, rng)
        if not votes:
            logger.warning('%s: empty ballot', student_id)
            return 0
        body = {'electionId': election_id, 'votes': votes}
        if not double:
            r = post(s, base, '/api/vote', body)
            return 1 if r.ok else 0
        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as ex:
            responses = list(ex.map(lambda _: post(s, base, '/api/vote', body), range(2)))
        accepted = sum(1 for r in responses if r.ok)
        if accepted != 1:
            logger.error('%s: %d of 2 racing ballots accepted', student_id, accepted)
        return accepted
    except requests.RequestException:
        logger.exception('worker %s failed', student_id)
        return 0


def main(argv=None):
    p = argparse.ArgumentParser()
    p.add_argument('--voters', type=int, default=100)
    p.add_argument('--concurrency', type=int, default=10)
    p.add_argument('--seed', type=int, default=42)
    p.add_argument('--base-url', default='http://127.0.0.1:5000')
    p.add_argument('--prefix', default='sim')
    p.add_argument('--password', default='password')
    p.add_argument('--election', type=int, help='Existing active election id (omit with --setup)')
    p.add_argument('--setup', action='store_true', help='Create and activate a fresh election first')
    p.add_argument('--admin-user', default='admin')
    p.add_argument('--admin-password', default='admin123')
    p.add_argument('--double-submit', action='store_true', help='Race two ballots per voter')
    args = p.parse_args(argv)

    base = args.base_url.rstrip('/')
    election_id = setup_election(base, args) if args.setup else args.election
    if election_id is None:
        p.error('--election is required without --setup')

    rng_global = random.Random(args.seed)
    logger.info('Simulation start: voters=%s concurrency=%s seed=%s', args.voters, args.concurrency, args.seed)
    start = time.time()

    with concurrent.futures.ThreadPoolExecutor(max_workers=args.concurrency) as ex:
        futures = []
        for i in range(1, args.voters + 1):
            rng = random.Random(rng_global.randint(0, 2 ** 30))
            futures.append(ex.submit(worker, i, base, election_id, args.prefix, rng, args.double_submit))
        accepted = sum(f.result() for f in concurrent.futures.as_completed(futures))

    elapsed = time.time() - start
    logger.info('Simulation finished in %.2fs: %d/%d ballots accepted', elapsed, accepted, args.voters)

    admin = admin_session(base, args.admin_user, args.admin_password)
    results = admin.get(base + f'/api/admin/results/{election_id}').json()
    logger.info('Turnout: %s%%', results['voterTurnout'])
    for position in results['positionResults']:
        for row in position['results']:
            logger.info('  %s / %s: %d (%d%%)', position['positionTitle'], row['candidateName'], row['votes'], row['percentage'])


if __name__ == '__main__':
    main()
