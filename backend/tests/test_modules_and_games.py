from datetime import date

from fastapi.testclient import TestClient
from sqlmodel import Session

from ecolearn.database import engine
from ecolearn.main import app
from ecolearn.services import DAILY_CHALLENGES, GameService

client = TestClient(app)

VIDEO = 'https://www.youtube.com/watch?v=abc123'


def test_module_lifecycle(make_user):
    teacher = make_user('teacher')
    student = make_user('student')
    body = {'title': 'Composting 101', 'description': 'Turn scraps into soil', 'videoUrl': VIDEO,
            'category': 'waste'}

    assert client.post('/api/modules', json=body, headers=student.headers).status_code == 403
    r = client.post('/api/modules', json=body, headers=teacher.headers)
    assert r.status_code == 201
    module = r.json()['data']
    assert module['videoUrl'].startswith('https://www.youtube.com/watch')
    assert module['createdBy']['id'] == teacher.id

    listed = client.get('/api/modules', headers=student.headers).json()
    assert listed['count'] == 1
    assert client.get('/api/modules?category=energy', headers=student.headers).json()['count'] == 0

    url = f"/api/modules/{module['id']}"
    assert client.delete(url, headers=student.headers).status_code == 403
    assert client.delete(url, headers=teacher.headers).status_code == 200
    assert client.delete(url, headers=teacher.headers).status_code == 404


def test_module_requires_a_url(make_user):
    teacher = make_user('teacher')
    body = {'title': 'Bad', 'description': 'No link', 'videoUrl': 'not a url'}
    r = client.post('/api/modules', json=body, headers=teacher.headers)
    assert r.status_code == 400
    assert r.json()['errors'][0]['field'] == 'videoUrl'


def test_daily_challenge_is_credited_once(make_user):
    student = make_user('student')
    challenge = client.get('/api/games/daily-challenge', headers=student.headers).json()['data']
    assert challenge['completed'] is False
    assert challenge['points'] == 50

    r = client.post('/api/games/complete-challenge', headers=student.headers)
    assert r.status_code == 200
    assert r.json()['data']['points'] == 50

    again = client.post('/api/games/complete-challenge', headers=student.headers)
    assert again.status_code == 400
    me = client.get('/api/auth/me', headers=student.headers).json()['data']['user']
    assert me['points'] == 50
    assert client.get('/api/games/daily-challenge', headers=student.headers).json()['data']['completed'] is True


def test_daily_challenge_is_student_only(make_user):
    teacher = make_user('teacher')
    assert client.post('/api/games/complete-challenge', headers=teacher.headers).status_code == 403


def test_challenge_rotates_by_day(make_user):
    student = make_user('student')
    with Session(engine) as session:
        svc = GameService(session)
        user = svc.user_repo.get(student.id)
        monday = svc.daily_challenge(user, date(2026, 3, 2))
        tuesday = svc.daily_challenge(user, date(2026, 3, 3))
        svc.complete_challenge(user, date(2026, 3, 2))
        assert svc.daily_challenge(user, date(2026, 3, 2))['completed'] is True
        assert svc.daily_challenge(user, date(2026, 3, 3))['completed'] is False
    assert monday['title'] != tuesday['title']
    assert {monday['title'], tuesday['title']} <= {title for title, _ in DAILY_CHALLENGES}


def test_start_game(make_user):
    student = make_user('student')
    r = client.post('/api/games/start?gameType=recycling-sort', headers=student.headers)
    assert r.status_code == 200
    assert r.json()['data']['gameType'] == 'recycling-sort'
