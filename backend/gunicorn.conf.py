"""Gunicorn configuration for production deployment.

Run with: gunicorn -c gunicorn.conf.py app.main:app
"""

import multiprocessing
import os

# Server socket
bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
# Requests mostly wait on the AI provider, storage and OAuth providers
workers = int(os.getenv("GUNICORN_WORKERS", min(multiprocessing.cpu_count() * 2 + 1, 8)))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000  # Restart workers after N requests
max_requests_jitter = 1000

# Timeout configuration
timeout = int(os.getenv("GUNICORN_TIMEOUT", "150"))  # Above VIDEO_GENERATION_TIMEOUT
graceful_timeout = 30
keepalive = 5

# Process naming
proc_name = "mockupsuite-api"

# Logging
accesslog = "-"  # stdout
errorlog = "-"  # stderr
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")
# %(U)s omits the query string; OAuth callbacks carry authorization codes
access_log_format = '%(h)s %(t)s "%(m)s %(U)s" %(s)s %(b)s %(D)s'

# Server mechanics
daemon = False
pidfile = None
umask = 0
tmp_upload_dir = None

# SSL configuration: set via environment variables GUNICORN_KEYFILE and GUNICORN_CERTFILE
keyfile = os.getenv("GUNICORN_KEYFILE")
certfile = os.getenv("GUNICORN_CERTFILE")


def post_fork(server, worker):
    """Called just after a worker has been forked."""
    server.log.info("Worker spawned (pid: %s)", worker.pid)


def worker_abort(worker):
    """Called when a worker times out, usually on a stuck provider call."""
    worker.log.warning("Worker aborted (pid: %s)", worker.pid)
