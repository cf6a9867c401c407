from datetime import datetime

import pytest

from ecolearn import models, policy
from ecolearn.errors import Conflict, Forbidden
from ecolearn.policy import Action


def _user(uid, role, active=True):
    return models.User(id=uid, name=f'user{uid}', email=f'u{uid}@example.com', password_hash='x',
                       role=role, is_active=active)


def _task(created_by):
    return models.Task(id=1, title='t', description='d', points=5, due_date=datetime(2030, 1, 1),
                       created_by=created_by)


ADMIN = _user(1, models.Role.admin)
TEACHER = _user(2, models.Role.teacher)
OTHER_TEACHER = _user(3, models.Role.teacher)
STUDENT = _user(4, models.Role.student)


@pytest.mark.parametrize('action, allowed', [
    (Action.task_create, {'admin', 'teacher'}),
    (Action.task_delete, {'admin', 'teacher'}),
    (Action.task_submit, {'student'}),
    (Action.task_review, {'admin', 'teacher'}),
    (Action.quiz_attempt, {'student'}),
    (Action.module_create, {'admin', 'teacher'}),
    (Action.user_approve, {'admin'}),
    (Action.points_set, {'admin', 'teacher'}),
    (Action.challenge_complete, {'student'}),
])
def test_role_rules(action, allowed):
    for user in (ADMIN, TEACHER, STUDENT):
        assert policy.is_allowed(user, action) is (user.role.value in allowed)


def test_ownership_rules():
    task = _task(created_by=TEACHER.id)
    assert policy.is_allowed(TEACHER, Action.task_update, task)
    assert policy.is_allowed(ADMIN, Action.task_update, task)
    assert not policy.is_allowed(OTHER_TEACHER, Action.task_update, task)
    assert not policy.is_allowed(STUDENT, Action.task_update, task)
    # deletion is not ownership-scoped
    assert policy.is_allowed(OTHER_TEACHER, Action.task_delete, task)


def test_inactive_principal_is_never_allowed():
    inactive_admin = _user(9, models.Role.admin, active=False)
    assert not policy.is_allowed(inactive_admin, Action.user_approve)
    with pytest.raises(Forbidden):
        policy.enforce(inactive_admin, Action.user_approve)


def test_self_modification_is_a_conflict_for_admins():
    with pytest.raises(Conflict) as exc:
        policy.enforce(ADMIN, Action.user_change_role, ADMIN.id)
    assert exc.value.message == 'Cannot change your own role'
    with pytest.raises(Conflict):
        policy.enforce(ADMIN, Action.user_set_active, ADMIN.id)
    policy.enforce(ADMIN, Action.user_change_role, STUDENT.id)


def test_self_modification_by_non_admin_is_forbidden():
    with pytest.raises(Forbidden):
        policy.enforce(TEACHER, Action.user_change_role, TEACHER.id)


def test_forbidden_messages():
    with pytest.raises(Forbidden) as exc:
        policy.enforce(TEACHER, Action.task_submit)
    assert exc.value.message == 'Only students can submit tasks'
    with pytest.raises(Forbidden) as exc:
        policy.enforce(STUDENT, Action.user_list)
    assert exc.value.message == 'User role student is not authorized to access this route'


def test_performance_scope():
    assert policy.performance_scope(ADMIN) is None
    assert policy.performance_scope(TEACHER) is None
    assert policy.performance_scope(STUDENT) == STUDENT.id
