"""EcoLearn backend package.

Gamified environmental education: teachers publish tasks, quizzes and
video modules, students submit evidence and take quizzes, and points
earned through reviews, quizzes and daily challenges feed the
leaderboards. `main` holds the FastAPI app; the remaining modules are
the services, repositories, models and policy it is built from.
"""
