"""Role and ownership rules for every API operation.

All route handlers ask `enforce(principal, action, resource)` before
touching data, so read-scoping and write-authorization are decided in
one place. `resource` is whatever the rule needs: a `Task`/`Quiz` for
ownership checks, a target user id for self-modification checks.
"""

from enum import Enum
from typing import Any, Optional

from . import models
from .errors import Conflict, Forbidden

Role = models.Role
STAFF = frozenset({Role.teacher, Role.admin})


class Action(str, Enum):
    task_create = "task:create"
    task_update = "task:update"
    task_delete = "task:delete"
    task_submit = "task:submit"
    task_review = "task:review"
    quiz_create = "quiz:create"
    quiz_update = "quiz:update"
    quiz_delete = "quiz:delete"
    quiz_attempt = "quiz:attempt"
    module_create = "module:create"
    module_delete = "module:delete"
    user_list = "user:list"
    user_stats = "user:stats"
    user_create = "user:create"
    user_approve = "user:approve"
    user_change_role = "user:change_role"
    user_set_active = "user:set_active"
    user_award_badge = "user:award_badge"
    points_set = "points:set"
    performance_view_all = "performance:view_all"
    challenge_complete = "challenge:complete"


_ROLE_RULES = {
    Action.task_create: STAFF,
    Action.task_delete: STAFF,
    Action.task_submit: {Role.student},
    Action.task_review: STAFF,
    Action.quiz_create: STAFF,
    Action.quiz_attempt: {Role.student},
    Action.module_create: STAFF,
    Action.module_delete: STAFF,
    Action.user_list: STAFF,
    Action.user_stats: STAFF,
    Action.user_create: {Role.admin},
    Action.user_approve: {Role.admin},
    Action.user_change_role: {Role.admin},
    Action.user_set_active: {Role.admin},
    Action.user_award_badge: {Role.admin},
    Action.points_set: STAFF,
    Action.performance_view_all: STAFF,
    Action.challenge_complete: {Role.student},
}

# creator or admin
_OWNER_RULES = {Action.task_update, Action.quiz_update, Action.quiz_delete}

# never allowed against the caller's own account
_SELF_GUARDED = {
    Action.user_change_role: "Cannot change your own role",
    Action.user_set_active: "Cannot change the active status of your own account",
}

_DENY_MESSAGES = {
    Action.task_update: "Not authorized to update this task",
    Action.task_delete: "Not authorized to delete this task",
    Action.task_submit: "Only students can submit tasks",
    Action.quiz_update: "Not authorized to update this quiz",
    Action.quiz_delete: "Not authorized to delete this quiz",
    Action.quiz_attempt: "Only students can attempt quizzes",
}


def is_allowed(principal: models.User, action: Action, resource: Any = None) -> bool:
    """Return True if `principal` may perform `action` on `resource`."""
    if principal is None or not principal.is_active:
        return False
    if action in _SELF_GUARDED and resource is not None and resource == principal.id:
        return False
    if action in _OWNER_RULES:
        if principal.role == Role.admin:
            return True
        if principal.role != Role.teacher:
            return False
        return resource is not None and getattr(resource, "created_by", None) == principal.id
    allowed_roles = _ROLE_RULES.get(action)
    if allowed_roles is None:
        return False
    return principal.role in allowed_roles


def enforce(principal: models.User, action: Action, resource: Any = None) -> None:
    """Raise unless `is_allowed`; self-modification is reported as a conflict."""
    if is_allowed(principal, action, resource):
        return
    if (
        action in _SELF_GUARDED
        and principal is not None
        and principal.is_active
        and resource == principal.id
        and principal.role in _ROLE_RULES[action]
    ):
        raise Conflict(_SELF_GUARDED[action])
    raise Forbidden(_DENY_MESSAGES.get(action, f"User role {_role_name(principal)} is not authorized to access this route"))


def performance_scope(principal: models.User) -> Optional[int]:
    """Student id the performance report is limited to, or None for everyone."""
    if is_allowed(principal, Action.performance_view_all):
        return None
    return principal.id


def _role_name(principal: Optional[models.User]) -> str:
    if principal is None:
        return "anonymous"
    role = principal.role
    return role.value if isinstance(role, Role) else str(role)
