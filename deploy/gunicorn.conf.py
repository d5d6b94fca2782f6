import multiprocessing
import os

wsgi_app = "tutorhub.main:app"
bind = os.getenv("TUTORHUB_BIND", "127.0.0.1:8000")
# The in-process APScheduler runs once per worker; keep a single worker unless
# the scheduler is disabled and detection is driven by /api/cron/detect-classes.
# TUTORHUB_WORKERS=0 sizes the pool from the CPU count.
workers = int(os.getenv("TUTORHUB_WORKERS", "1")) or (multiprocessing.cpu_count() * 2) + 1
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 60
graceful_timeout = 30
keepalive = 5
loglevel = "info"
accesslog = "-"
errorlog = "-"
