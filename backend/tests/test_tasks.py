import io

from fastapi.testclient import TestClient
from PIL import Image

from ecolearn.main import app

client = TestClient(app)

DUE = '2030-06-01T12:00:00'


def _create_task(teacher, assigned=None, points=20, **extra):
    data = {
        'title': 'Litter pick',
        'description': 'Collect litter around the school field',
        'category': 'waste',
        'difficulty': 'easy',
        'points': str(points),
        'dueDate': DUE,
    }
    if assigned is not None:
        data['assignedTo'] = ','.join(str(i) for i in assigned) if isinstance(assigned, list) else assigned
    data.update(extra)
    r = client.post('/api/tasks', data=data, headers=teacher.headers)
    assert r.status_code == 201, r.text
    return r.json()['data']


def _submit(student, task_id, description='Picked up two bags of litter', files=None):
    return client.post(f'/api/tasks/{task_id}/submit', data={'description': description},
                       files=files, headers=student.headers)


def _review(teacher, task_id, submission_id, status, points=0, feedback=''):
    body = {'submissionId': submission_id, 'status': status, 'pointsAwarded': points, 'feedback': feedback}
    return client.put(f'/api/tasks/{task_id}/review', json=body, headers=teacher.headers)


def _me(account):
    return client.get('/api/auth/me', headers=account.headers).json()['data']['user']


def _png_bytes():
    buf = io.BytesIO()
    Image.new('RGB', (4, 4), (0, 128, 0)).save(buf, 'PNG')
    return buf.getvalue()


def test_only_staff_create_tasks(make_user):
    student = make_user('student')
    r = client.post('/api/tasks', data={'title': 't', 'description': 'd', 'points': '5', 'dueDate': DUE},
                    headers=student.headers)
    assert r.status_code == 403


def test_create_task_validates_fields_and_assignees(make_user):
    teacher = make_user('teacher')
    other_teacher = make_user('teacher')
    missing = client.post('/api/tasks', data={'title': 'No points'}, headers=teacher.headers)
    assert missing.status_code == 400
    assert missing.json()['message'] == 'Validation errors'

    bad = client.post('/api/tasks', data={'title': 't', 'description': 'd', 'points': '5', 'dueDate': DUE,
                                          'assignedTo': f'[{other_teacher.id}]'}, headers=teacher.headers)
    assert bad.status_code == 400
    assert bad.json()['message'] == 'Some assigned users are invalid or not students'


def test_create_task_with_json_assignees(make_user):
    teacher = make_user('teacher')
    s1 = make_user('student')
    s2 = make_user('student')
    task = _create_task(teacher, assigned=f'[{s1.id}, {s2.id}]')
    assert [u['id'] for u in task['assignedTo']] == sorted([s1.id, s2.id])
    assert task['createdBy']['id'] == teacher.id
    assert task['submissions'] == []


def test_submit_review_approve_credits_student_once(make_user):
    teacher = make_user('teacher')
    student = make_user('student')
    task = _create_task(teacher, assigned=[student.id])

    r = _submit(student, task['id'])
    assert r.status_code == 201
    sub = r.json()['data']
    assert sub['status'] == 'pending'
    assert _me(student)['points'] == 0

    again = _submit(student, task['id'])
    assert again.status_code == 400
    assert again.json()['message'] == 'You have already submitted this task'

    rev = _review(teacher, task['id'], sub['id'], 'approved', points=15, feedback='Great work')
    assert rev.status_code == 200
    reviewed = rev.json()['data']
    assert reviewed['status'] == 'approved'
    assert reviewed['pointsAwarded'] == 15
    assert reviewed['reviewedBy'] == teacher.id

    me = _me(student)
    assert me['points'] == 15
    assert me['tasksCompleted'] == 1

    # approved submissions cannot be replaced
    assert _submit(student, task['id']).status_code == 400


def test_rejection_allows_one_resubmission(make_user):
    teacher = make_user('teacher')
    student = make_user('student')
    task = _create_task(teacher)
    sub = _submit(student, task['id']).json()['data']

    rej = _review(teacher, task['id'], sub['id'], 'rejected', feedback='Add a photo')
    assert rej.json()['data']['status'] == 'rejected'
    assert _me(student)['points'] == 0
    assert _me(student)['tasksCompleted'] == 0

    re = _submit(student, task['id'], description='Now with a photo attached')
    assert re.status_code == 201
    resub = re.json()['data']
    assert resub['id'] == sub['id']
    assert resub['status'] == 'pending'
    assert resub['feedback'] == ''
    assert resub['reviewedBy'] is None
    assert resub['description'] == 'Now with a photo attached'

    assert _submit(student, task['id']).status_code == 400


def test_unassigned_student_cannot_submit(make_user):
    teacher = make_user('teacher')
    assigned = make_user('student')
    outsider = make_user('student')
    task = _create_task(teacher, assigned=[assigned.id])
    r = _submit(outsider, task['id'])
    assert r.status_code == 403
    assert r.json()['message'] == 'You are not assigned to this task'


def test_submit_rules(make_user):
    teacher = make_user('teacher')
    student = make_user('student')
    task = _create_task(teacher)
    assert _submit(teacher, task['id']).status_code == 403
    assert _submit(student, 9999).status_code == 404
    short = _submit(student, task['id'], description='no')
    assert short.status_code == 400


def test_review_requires_staff_and_existing_submission(make_user):
    teacher = make_user('teacher')
    student = make_user('student')
    task = _create_task(teacher)
    sub = _submit(student, task['id']).json()['data']
    assert _review(student, task['id'], sub['id'], 'approved', points=5).status_code == 403
    assert _review(teacher, task['id'], 9999, 'approved').status_code == 404
    assert _review(teacher, 9999, sub['id'], 'approved').status_code == 404
    bad_status = _review(teacher, task['id'], sub['id'], 'maybe')
    assert bad_status.status_code == 400


def test_submission_with_image_is_stored(make_user, upload_dir):
    teacher = make_user('teacher')
    student = make_user('student')
    task = _create_task(teacher)
    files = {'file': ('evidence.png', _png_bytes(), 'image/png')}
    r = _submit(student, task['id'], files=files)
    assert r.status_code == 201
    stored = r.json()['data']['files'][0]
    assert stored['originalName'] == 'evidence.png'
    assert stored['path'] == f"uploads/{stored['filename']}"
    assert (upload_dir / stored['filename']).exists()

    served = client.get(f"/uploads/{stored['filename']}")
    assert served.status_code == 200


def test_submission_rejects_bad_files(make_user):
    teacher = make_user('teacher')
    student = make_user('student')
    task = _create_task(teacher)
    exe = _submit(student, task['id'], files={'file': ('run.exe', b'MZ...', 'application/octet-stream')})
    assert exe.status_code == 400
    fake = _submit(student, task['id'], files={'file': ('photo.png', b'not an image', 'image/png')})
    assert fake.status_code == 400
    # nothing was recorded, so a clean submission still works
    assert _submit(student, task['id']).status_code == 201


def test_task_resource_file(make_user):
    teacher = make_user('teacher')
    r = client.post('/api/tasks', data={'title': 'Energy audit', 'description': 'Use the worksheet',
                                        'points': '10', 'dueDate': DUE},
                    files={'resourceFile': ('sheet.pdf', b'%PDF-1.4 worksheet', 'application/pdf')},
                    headers=teacher.headers)
    assert r.status_code == 201
    resource = r.json()['data']['resourceFile']
    assert resource['originalName'] == 'sheet.pdf'
    assert resource['mimetype'] == 'application/pdf'


def test_students_only_see_their_own_submissions(make_user):
    teacher = make_user('teacher')
    s1 = make_user('student')
    s2 = make_user('student')
    task = _create_task(teacher)
    _submit(s1, task['id'])
    _submit(s2, task['id'])

    mine = client.get(f"/api/tasks/{task['id']}", headers=s1.headers).json()['data']
    assert [s['student']['id'] for s in mine['submissions']] == [s1.id]
    everyone = client.get(f"/api/tasks/{task['id']}", headers=teacher.headers).json()['data']
    assert len(everyone['submissions']) == 2


def test_listing_filters(make_user):
    teacher = make_user('teacher')
    other = make_user('teacher')
    s1 = make_user('student')
    s2 = make_user('student')
    open_task = _create_task(teacher, category='energy')
    private = _create_task(other, assigned=[s2.id])

    mine = client.get('/api/tasks/my-tasks', headers=s1.headers).json()['data']
    assert [t['id'] for t in mine] == [open_task['id']]
    ids = {t['id'] for t in client.get('/api/tasks/my-tasks', headers=s2.headers).json()['data']}
    assert ids == {open_task['id'], private['id']}
    created = client.get('/api/tasks/my-tasks', headers=other.headers).json()['data']
    assert [t['id'] for t in created] == [private['id']]

    energy = client.get('/api/tasks?category=energy', headers=s1.headers).json()
    assert energy['count'] == 1

    _submit(s1, open_task['id'])
    pending = client.get('/api/tasks?status=pending', headers=s1.headers).json()['data']
    assert [t['id'] for t in pending] == [open_task['id']]
    assert client.get('/api/tasks?status=approved', headers=s1.headers).json()['count'] == 0


def test_update_is_creator_or_admin_and_delete_any_staff(make_user):
    creator = make_user('teacher')
    other = make_user('teacher')
    admin = make_user('admin')
    student = make_user('student')
    task = _create_task(creator)
    url = f"/api/tasks/{task['id']}"

    assert client.put(url, json={'title': 'Hijack'}, headers=other.headers).status_code == 403
    r = client.put(url, json={'title': 'Bigger litter pick', 'points': 30}, headers=creator.headers)
    assert r.status_code == 200
    assert r.json()['data']['title'] == 'Bigger litter pick'
    assert r.json()['data']['updatedAt'] is not None
    assert client.put(url, json={'difficulty': 'hard'}, headers=admin.headers).status_code == 200

    _submit(student, task['id'])
    assert client.delete(url, headers=student.headers).status_code == 403
    assert client.delete(url, headers=other.headers).status_code == 200
    assert client.get(url, headers=creator.headers).status_code == 404


def test_approvals_accumulate_points(make_user):
    teacher = make_user('teacher')
    student = make_user('student')
    total = 0
    for points in (5, 10, 20):
        task = _create_task(teacher, points=points)
        sub = _submit(student, task['id']).json()['data']
        _review(teacher, task['id'], sub['id'], 'approved', points=points)
        total += points
    me = _me(student)
    assert me['points'] == total
    assert me['tasksCompleted'] == 3


def test_due_dates_without_timezone_are_accepted(make_user):
    teacher = make_user('teacher')
    for due in ('2030-06-01', '2030-06-01T12:00:00', '2030-06-01T12:00:00Z', '2030-06-01T14:00:00+02:00'):
        r = client.post('/api/tasks', data={'title': 'Audit', 'description': 'Count the bins', 'points': '5',
                                            'dueDate': due}, headers=teacher.headers)
        assert r.status_code == 201, (due, r.text)

    task_id = r.json()['data']['id']
    url = f'/api/tasks/{task_id}'
    assert client.put(url, json={'dueDate': '2031-01-01T08:00:00'}, headers=teacher.headers).status_code == 200
    # the stored value is read back from the database before this update
    renamed = client.put(url, json={'title': 'Bin audit'}, headers=teacher.headers)
    assert renamed.status_code == 200
    assert renamed.json()['data']['dueDate'].startswith('2031-01-01T08:00:00')


def test_resubmission_resets_awarded_points(make_user):
    teacher = make_user('teacher')
    student = make_user('student')
    task = _create_task(teacher)
    sub = _submit(student, task['id']).json()['data']

    rej = _review(teacher, task['id'], sub['id'], 'rejected', points=7, feedback='Missing evidence')
    assert rej.json()['data']['pointsAwarded'] == 7
    assert _me(student)['points'] == 0

    resub = _submit(student, task['id'], description='Evidence attached this time').json()['data']
    assert resub['status'] == 'pending'
    assert resub['pointsAwarded'] == 0
    assert resub['reviewedAt'] is None


def test_each_approval_credits_and_rejection_never_debits(make_user):
    teacher = make_user('teacher')
    student = make_user('student')
    task = _create_task(teacher)
    sub = _submit(student, task['id']).json()['data']

    _review(teacher, task['id'], sub['id'], 'approved', points=10)
    me = _me(student)
    assert (me['points'], me['tasksCompleted']) == (10, 1)

    _review(teacher, task['id'], sub['id'], 'rejected')
    me = _me(student)
    assert (me['points'], me['tasksCompleted']) == (10, 1)

    final = _review(teacher, task['id'], sub['id'], 'approved', points=5)
    assert final.json()['data']['pointsAwarded'] == 5
    me = _me(student)
    assert (me['points'], me['tasksCompleted']) == (15, 2)


def test_resubmission_removes_replaced_attachment(make_user, upload_dir):
    teacher = make_user('teacher')
    student = make_user('student')
    task = _create_task(teacher)
    first = _submit(student, task['id'], files={'file': ('photo.png', _png_bytes(), 'image/png')}).json()['data']
    old_name = first['files'][0]['filename']
    _review(teacher, task['id'], first['id'], 'rejected', feedback='Blurry')

    second = _submit(student, task['id'], files={'file': ('photo.png', _png_bytes(), 'image/png')}).json()['data']
    new_name = second['files'][0]['filename']
    assert new_name != old_name
    assert (upload_dir / new_name).exists()
    assert not (upload_dir / old_name).exists()


def test_same_file_name_from_two_students_is_kept_apart(make_user, upload_dir):
    teacher = make_user('teacher')
    s1 = make_user('student')
    s2 = make_user('student')
    task = _create_task(teacher)
    names = []
    for student in (s1, s2):
        sub = _submit(student, task['id'], files={'file': ('photo.png', _png_bytes(), 'image/png')}).json()['data']
        names.append(sub['files'][0]['filename'])
    assert names[0] != names[1]
    assert all((upload_dir / n).exists() for n in names)
