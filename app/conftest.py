# conftest.py
import os
import sys
import tempfile

# Добавляем корень репозитория в PYTHONPATH, чтобы 'import app...' работал
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Тестовое окружение: файловая SQLite (несколько соединений, как у Postgres) и eager Celery
_TEST_DB = os.path.join(tempfile.gettempdir(), "calendar_sync_test.db")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB}")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

# Обязательно после установки ENVIRONMENT подключаем Celery-конфиг eager
from app.workers.tasks import celery_app

celery_app.conf.task_always_eager = True
celery_app.conf.task_eager_propagates = True
