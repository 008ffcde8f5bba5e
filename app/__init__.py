# app/__init__.py
"""
Calendar sync service.

Подпакеты ``core.calendar``, ``core.reminders`` и ``core.projector`` не
импортируются здесь: Celery (``-A app.workers.tasks``) и FastAPI
(``app.main:app``) загружают только то, что им нужно.
"""
__all__: list[str] = ["main", "workers"]
