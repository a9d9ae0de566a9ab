import uuid

from fastapi.testclient import TestClient
from coursetrack.main import app
from coursetrack import repositories
from coursetrack.config import settings
from coursetrack.errors import ConcurrentUpdateError

client = TestClient(app)


def _token(username, password='pw'):
    client.post('/auth/register', json={'username': username, 'password': password})
    r = client.post('/auth/login', json={'username': username, 'password': password})
    assert r.status_code == 200
    return {'Authorization': f"Bearer {r.json()['access_token']}"}


def _admin():
    return _token('admin', 'adminpw')


def _student():
    return _token(f'student-{uuid.uuid4().hex[:8]}')


QUIZ = {
    'title': 'Checkpoint',
    'passing_score': 70,
    'questions': [
        {'text': 'Pick A', 'options': [{'text': 'A', 'is_correct': True}, {'text': 'B'}], 'explanation': 'A it is'},
        {'text': 'Pick C and D', 'options': [
            {'text': 'C', 'is_correct': True}, {'text': 'D', 'is_correct': True}, {'text': 'E'}]},
    ],
}

# quiz id -> stored questions with their answer key, as returned on creation
_KEYS = {}


def _course(admin, lessons=2, quiz=QUIZ):
    c = client.post('/courses', json={'title': 'Python 101'}, headers=admin)
    assert c.status_code == 201
    course_id = c.json()['id']
    lesson_ids = []
    for i in range(lessons):
        r = client.post(f'/courses/{course_id}/lessons', json={'title': f'L{i}', 'order': i}, headers=admin)
        assert r.status_code == 201
        lesson_ids.append(r.json()['id'])
    quiz_id = None
    if quiz is not None:
        r = client.post(f'/courses/{course_id}/quizzes', json=quiz, headers=admin)
        assert r.status_code == 201
        quiz_id = r.json()['id']
        _KEYS[quiz_id] = r.json()['questions']
    return course_id, lesson_ids, quiz_id


def _answers(questions, correct=True):
    out = []
    for q in questions:
        out.append([o['id'] for o in q['options'] if o['is_correct']] if correct else [])
    return out


def test_full_course_flow_with_certificate():
    admin = _admin()
    course_id, lessons, quiz_id = _course(admin)

    student = _student()
    assert client.post(f'/courses/{course_id}/enroll', headers=student).status_code == 200
    for lesson_id in lessons:
        r = client.post(f'/lessons/{lesson_id}/complete', json={'time_spent': 5}, headers=student)
        assert r.status_code == 200
    assert r.json()['overall_progress'] == 67

    taking = client.get(f'/quizzes/{quiz_id}', headers=student).json()
    assert all('is_correct' not in o for q in taking['questions'] for o in q['options'])
    assert taking['can_attempt'] is True

    detail = client.get(f'/courses/{course_id}').json()
    assert detail['quizzes'][0]['question_count'] == 2

    r = client.post(f'/quizzes/{quiz_id}/submit', json={'answers': _answers(_KEYS[quiz_id]), 'time_spent': 3},
                    headers=student)
    assert r.status_code == 200
    body = r.json()
    assert body['score']['percentage'] == 100
    assert body['score']['passed'] is True
    assert body['attempt_number'] == 1
    assert body['remaining_attempts'] is None
    assert body['overall_progress'] == 100
    assert [d['is_correct'] for d in body['detailed_results']] == [True, True]

    summary = client.get(f'/progress/course/{course_id}', headers=student).json()
    assert summary['overall_progress'] == 100
    assert summary['completed_at'] is not None
    assert summary['stats']['passed_quizzes'] == 1

    first = client.post(f'/progress/course/{course_id}/certificate', headers=student)
    assert first.status_code == 200
    second = client.post(f'/progress/course/{course_id}/certificate', headers=student)
    assert second.status_code == 400
    assert second.json()['error'] == 'AlreadyIssuedError'

    certs = client.get('/progress/certificates', headers=student).json()
    assert [c['course_id'] for c in certs] == [course_id]


def test_watch_progress_auto_completes():
    admin = _admin()
    course_id, lessons, _ = _course(admin, lessons=1, quiz=None)
    student = _student()
    client.post(f'/courses/{course_id}/enroll', headers=student)

    r = client.put(f'/lessons/{lessons[0]}/progress', json={'time_spent': 2, 'watched_percentage': 79}, headers=student)
    assert r.status_code == 200
    assert r.json()['lesson_progress']['completed'] is False
    r = client.put(f'/lessons/{lessons[0]}/progress', json={'time_spent': 2, 'watched_percentage': 85}, headers=student)
    assert r.json()['lesson_progress']['completed'] is True
    r = client.put(f'/lessons/{lessons[0]}/progress', json={'watched_percentage': 60}, headers=student)
    entry = r.json()['lesson_progress']
    assert entry['watched_percentage'] == 85
    assert entry['time_spent_minutes'] == 4
    assert r.json()['overall_progress'] == 100


def test_activity_requires_enrollment():
    admin = _admin()
    course_id, lessons, quiz_id = _course(admin, lessons=1)
    student = _student()
    r = client.post(f'/lessons/{lessons[0]}/complete', json={}, headers=student)
    assert r.status_code == 403
    r = client.post(f'/quizzes/{quiz_id}/submit', json={'answers': [[], []]}, headers=student)
    assert r.status_code == 403
    assert client.get(f'/progress/course/{course_id}', headers=student).status_code == 404


def test_attempt_limit_and_answer_validation():
    admin = _admin()
    limited = dict(QUIZ, max_attempts=1)
    course_id, _, quiz_id = _course(admin, lessons=0, quiz=limited)
    student = _student()
    client.post(f'/courses/{course_id}/enroll', headers=student)

    r = client.post(f'/quizzes/{quiz_id}/submit', json={'answers': [[]]}, headers=student)
    assert r.status_code == 400
    assert r.json()['error'] == 'InvalidInputError'

    r = client.post(f'/quizzes/{quiz_id}/submit', json={'answers': [[], []]}, headers=student)
    assert r.status_code == 200
    body = r.json()
    assert body['score']['percentage'] == 0
    assert body['remaining_attempts'] == 0
    assert body['detailed_results'] is None

    r = client.post(f'/quizzes/{quiz_id}/submit', json={'answers': [[], []]}, headers=student)
    assert r.status_code == 400
    assert r.json()['error'] == 'AttemptLimitError'

    results = client.get(f'/quizzes/{quiz_id}/results', headers=student).json()
    assert results['total_attempts'] == 1


def test_inactive_quiz_rejects_submissions():
    admin = _admin()
    course_id, _, quiz_id = _course(admin, lessons=0, quiz=dict(QUIZ, is_active=False))
    student = _student()
    client.post(f'/courses/{course_id}/enroll', headers=student)
    r = client.post(f'/quizzes/{quiz_id}/submit', json={'answers': [[], []]}, headers=student)
    assert r.status_code == 400
    assert r.json()['error'] == 'QuizInactiveError'


def test_certificate_before_completion_is_rejected():
    admin = _admin()
    course_id, lessons, _ = _course(admin, lessons=2, quiz=None)
    student = _student()
    client.post(f'/courses/{course_id}/enroll', headers=student)
    client.post(f'/lessons/{lessons[0]}/complete', json={}, headers=student)
    r = client.post(f'/progress/course/{course_id}/certificate', headers=student)
    assert r.status_code == 400
    assert r.json()['error'] == 'NotEligibleError'


def test_deleting_quiz_and_lesson_prunes_progress():
    admin = _admin()
    course_id, lessons, quiz_id = _course(admin, lessons=2)
    student = _student()
    client.post(f'/courses/{course_id}/enroll', headers=student)
    client.post(f'/lessons/{lessons[0]}/complete', json={}, headers=student)
    client.post(f'/quizzes/{quiz_id}/submit', json={'answers': _answers(_KEYS[quiz_id])}, headers=student)
    assert client.get(f'/progress/course/{course_id}', headers=student).json()['overall_progress'] == 67

    r = client.delete(f'/quizzes/{quiz_id}', headers=admin)
    assert r.status_code == 200
    assert r.json()['progress_records_updated'] == 1
    summary = client.get(f'/progress/course/{course_id}', headers=student).json()
    assert summary['quiz_progress'] == []
    assert summary['overall_progress'] == 50

    client.delete(f'/lessons/{lessons[1]}', headers=admin)
    summary = client.get(f'/progress/course/{course_id}', headers=student).json()
    assert summary['overall_progress'] == 100
    assert summary['completed_at'] is not None


def test_quiz_stats_and_overview():
    admin = _admin()
    course_id, _, quiz_id = _course(admin, lessons=0)
    key = _KEYS[quiz_id]
    good, bad = _student(), _student()
    for headers, correct in ((good, True), (bad, False)):
        client.post(f'/courses/{course_id}/enroll', headers=headers)
        client.post(f'/quizzes/{quiz_id}/submit', json={'answers': _answers(key, correct)}, headers=headers)

    assert client.get(f'/quizzes/{quiz_id}/stats', headers=good).status_code == 403
    stats = client.get(f'/quizzes/{quiz_id}/stats', headers=admin).json()
    assert stats['total_users'] == 2
    assert stats['pass_rate'] == 50

    overview = client.get('/progress/overview', headers=good).json()
    assert overview['overview']['total_courses_enrolled'] == 1
    assert overview['overview']['completed_courses'] == 1


def test_unenroll_drops_progress():
    admin = _admin()
    course_id, lessons, _ = _course(admin, lessons=1, quiz=None)
    student = _student()
    client.post(f'/courses/{course_id}/enroll', headers=student)
    client.post(f'/lessons/{lessons[0]}/complete', json={}, headers=student)
    assert client.delete(f'/courses/{course_id}/enroll', headers=student).status_code == 200
    assert client.get(f'/progress/course/{course_id}', headers=student).status_code == 404
    r = client.post(f'/courses/{course_id}/enroll', headers=student)
    assert r.json()['overall_progress'] == 0


def test_delete_course_removes_everything():
    admin = _admin()
    course_id, lessons, quiz_id = _course(admin, lessons=1)
    student = _student()
    client.post(f'/courses/{course_id}/enroll', headers=student)
    assert client.delete(f'/courses/{course_id}', headers=admin).status_code == 200
    assert client.get(f'/courses/{course_id}').status_code == 404
    assert client.get(f'/quizzes/{quiz_id}', headers=student).status_code == 404
    assert client.post(f'/lessons/{lessons[0]}/complete', json={}, headers=student).status_code == 404


def test_write_conflict_is_retried(monkeypatch):
    admin = _admin()
    course_id, lessons, _ = _course(admin, lessons=1, quiz=None)
    student = _student()
    client.post(f'/courses/{course_id}/enroll', headers=student)

    original = repositories.ProgressRepository.replace
    versions = []

    def racing_replace(self, progress_id, expected_version, record):
        versions.append(expected_version)
        if len(versions) == 1:
            # another writer saves first, so this write is stale
            original(self, progress_id, expected_version, self.to_record(self.get(progress_id)))
        return original(self, progress_id, expected_version, record)

    monkeypatch.setattr(repositories.ProgressRepository, 'replace', racing_replace)
    r = client.post(f'/lessons/{lessons[0]}/complete', json={'time_spent': 3}, headers=student)
    assert r.status_code == 200
    assert r.json()['overall_progress'] == 100
    assert versions[1] == versions[0] + 1

    monkeypatch.undo()
    summary = client.get(f'/progress/course/{course_id}', headers=student).json()
    assert summary['overall_progress'] == 100
    assert summary['lesson_progress'][0]['time_spent_minutes'] == 3


def test_persistent_write_conflict_returns_409(monkeypatch):
    admin = _admin()
    course_id, lessons, _ = _course(admin, lessons=1, quiz=None)
    student = _student()
    client.post(f'/courses/{course_id}/enroll', headers=student)

    calls = []

    def always_stale(self, progress_id, expected_version, record):
        calls.append(expected_version)
        raise ConcurrentUpdateError(f'progress {progress_id} changed since version {expected_version}')

    monkeypatch.setattr(repositories.ProgressRepository, 'replace', always_stale)
    r = client.post(f'/lessons/{lessons[0]}/complete', json={}, headers=student)
    assert r.status_code == 409
    assert r.json()['error'] == 'ConcurrentUpdateError'
    assert len(calls) == settings.PROGRESS_WRITE_RETRIES

    monkeypatch.undo()
    assert client.get(f'/progress/course/{course_id}', headers=student).json()['overall_progress'] == 0


def test_failed_prune_keeps_the_lesson(monkeypatch):
    admin = _admin()
    course_id, lessons, _ = _course(admin, lessons=2, quiz=None)
    student = _student()
    client.post(f'/courses/{course_id}/enroll', headers=student)
    client.post(f'/lessons/{lessons[0]}/complete', json={}, headers=student)

    def always_stale(self, progress_id, expected_version, record):
        raise ConcurrentUpdateError('stale')

    monkeypatch.setattr(repositories.ProgressRepository, 'replace', always_stale)
    assert client.delete(f'/lessons/{lessons[0]}', headers=admin).status_code == 409
    detail = client.get(f'/courses/{course_id}').json()
    assert [l['id'] for l in detail['lessons']] == lessons

    monkeypatch.undo()
    r = client.delete(f'/lessons/{lessons[0]}', headers=admin)
    assert r.status_code == 200
    assert r.json()['progress_records_updated'] == 1
    summary = client.get(f'/progress/course/{course_id}', headers=student).json()
    assert summary['lesson_progress'] == []
    assert summary['stats']['total_lessons'] == 1
    assert summary['overall_progress'] == 0


def test_course_report_and_learning_stats():
    admin = _admin()
    course_id, lessons, quiz_id = _course(admin, lessons=1)
    done, idle = _student(), _student()
    for headers in (done, idle):
        client.post(f'/courses/{course_id}/enroll', headers=headers)
    client.post(f'/lessons/{lessons[0]}/complete', json={'time_spent': 6}, headers=done)
    client.post(f'/quizzes/{quiz_id}/submit', json={'answers': _answers(_KEYS[quiz_id])}, headers=done)

    assert client.get(f'/progress/course/{course_id}/detailed', headers=done).status_code == 403
    report = client.get(f'/progress/course/{course_id}/detailed', headers=admin).json()
    assert report['course']['id'] == course_id
    assert report['statistics']['total_enrolled'] == 2
    assert report['statistics']['completion_rate'] == 50
    assert report['lesson_stats'][0]['completion_rate'] == 50
    assert report['quiz_stats'][0]['pass_rate'] == 50
    assert report['quiz_stats'][0]['average_score'] == 50
    assert all(u['username'].startswith('student-') for u in report['user_progress'])

    stats = client.get('/progress/stats', params={'timeframe': 'week'}, headers=done).json()
    assert stats['summary']['courses_completed'] == 1
    assert stats['summary']['total_time_spent'] == 6
    assert [a['type'] for a in stats['recent_achievements']] == ['quiz', 'lesson']
    bad = client.get('/progress/stats', params={'timeframe': 'decade'}, headers=done)
    assert bad.status_code == 400
