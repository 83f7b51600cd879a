"""
Gunicorn Configuration for the Lending Ledger
uvicorn workers serving the webhook + admin FastAPI app

    gunicorn -c gunicorn_conf.py
"""
import logging
import os

# Application factory; each worker builds its own engine and gateway client
wsgi_app = "webhook_server:create_app()"

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '8000')}"
backlog = 2048

# Worker processes
workers = int(os.getenv("WEB_CONCURRENCY", "2"))
worker_class = "uvicorn.workers.UvicornWorker"
max_requests = 10000
max_requests_jitter = 1000
timeout = 60  # gateway calls are bounded by GATEWAY_TIMEOUT_SECONDS
keepalive = 30

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()

proc_name = "lending_ledger"

preload_app = False

logger = logging.getLogger("gunicorn.error")


def when_ready(server):
    logger.info(f"✅ Lending ledger ready with {workers} uvicorn workers on {bind}")


def post_fork(server, worker):
    logger.info(f"🔧 Worker {worker.pid} started")


def worker_abort(worker):
    logger.error(f"❌ Worker {worker.pid} aborted")


def worker_exit(server, worker):
    logger.info(f"👋 Worker {worker.pid} exited")
