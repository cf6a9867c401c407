"""Turn models into the camelCase JSON shapes the client renders.

Controllers wrap these in `{"success": true, "data": ...}`. The user
projection never includes `password_hash`.
"""

from typing import Dict, Iterable, List, Optional

from . import models


def _value(v):
    return v.value if hasattr(v, "value") else v


def user_brief(user: Optional[models.User]) -> Optional[dict]:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "email": user.email}


def user_out(user: models.User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": _value(user.role),
        "points": user.points,
        "isActive": user.is_active,
        "isApproved": user.is_approved,
        "badges": list(user.badges or []),
        "streak": user.streak,
        "tasksCompleted": user.tasks_completed,
        "quizzesTaken": user.quizzes_taken,
        "createdAt": user.created_at,
    }


def leaderboard_entry(user: models.User, rank: int) -> dict:
    return {
        "rank": rank,
        "id": user.id,
        "name": user.name,
        "points": user.points,
        "badges": list(user.badges or []),
        "quizzesTaken": user.quizzes_taken,
        "tasksCompleted": user.tasks_completed,
        "streak": user.streak,
    }


def _attachment(filename, original_name, path, mimetype) -> Optional[dict]:
    if not filename:
        return None
    return {"filename": filename, "originalName": original_name, "path": path, "mimetype": mimetype}


def submission_out(sub: models.TaskSubmission, users: Dict[int, models.User]) -> dict:
    attachment = _attachment(sub.file_filename, sub.file_original_name, sub.file_path, sub.file_mimetype)
    return {
        "id": sub.id,
        "taskId": sub.task_id,
        "student": user_brief(users.get(sub.student_id)) or {"id": sub.student_id},
        "description": sub.description,
        "files": [attachment] if attachment else [],
        "status": _value(sub.status),
        "feedback": sub.feedback,
        "pointsAwarded": sub.points_awarded,
        "reviewedBy": sub.reviewed_by,
        "reviewedAt": sub.reviewed_at,
        "submittedAt": sub.submitted_at,
    }


def task_out(task: models.Task, assigned_to: Iterable[int], submissions: Iterable[models.TaskSubmission],
             users: Dict[int, models.User]) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "category": _value(task.category),
        "difficulty": _value(task.difficulty),
        "points": task.points,
        "dueDate": task.due_date,
        "isActive": task.is_active,
        "createdBy": user_brief(users.get(task.created_by)) or {"id": task.created_by},
        "assignedTo": [user_brief(users.get(uid)) or {"id": uid} for uid in assigned_to],
        "resourceFile": _attachment(task.resource_filename, task.resource_original_name,
                                    task.resource_path, task.resource_mimetype),
        "submissions": [submission_out(s, users) for s in submissions],
        "createdAt": task.created_at,
        "updatedAt": task.updated_at,
    }


def question_out(q: models.QuizQuestion, include_answers: bool) -> dict:
    out = {"id": q.id, "question": q.question, "options": list(q.options)}
    if include_answers:
        out["correctAnswer"] = q.correct_answer
        out["explanation"] = q.explanation
    return out


def attempt_out(attempt: models.QuizAttempt, users: Optional[Dict[int, models.User]] = None) -> dict:
    student = user_brief((users or {}).get(attempt.student_id)) or {"id": attempt.student_id}
    return {
        "id": attempt.id,
        "quizId": attempt.quiz_id,
        "student": student,
        "answers": list(attempt.answers),
        "score": attempt.score,
        "correctAnswers": attempt.correct_answers,
        "totalQuestions": attempt.total_questions,
        "pointsEarned": attempt.points_earned,
        "timeTaken": attempt.time_taken,
        "completedAt": attempt.completed_at,
    }


def quiz_out(quiz: models.Quiz, questions: List[models.QuizQuestion], attempts: Iterable[models.QuizAttempt],
             users: Dict[int, models.User], include_answers: bool = True) -> dict:
    return {
        "id": quiz.id,
        "title": quiz.title,
        "description": quiz.description,
        "category": _value(quiz.category),
        "points": quiz.points,
        "timeLimit": quiz.time_limit,
        "isActive": quiz.is_active,
        "createdBy": user_brief(users.get(quiz.created_by)) or {"id": quiz.created_by},
        "questions": [question_out(q, include_answers) for q in questions],
        "attempts": [attempt_out(a, users) for a in attempts],
        "createdAt": quiz.created_at,
        "updatedAt": quiz.updated_at,
    }


def module_out(module: models.Module, users: Dict[int, models.User]) -> dict:
    creator = users.get(module.created_by)
    return {
        "id": module.id,
        "title": module.title,
        "description": module.description,
        "videoUrl": module.video_url,
        "category": _value(module.category),
        "createdBy": {"id": module.created_by, "name": creator.name} if creator else {"id": module.created_by},
        "createdAt": module.created_at,
    }
