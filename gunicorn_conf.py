"""
Gunicorn configuration for the swap settlement service
Uvicorn workers serving webhook_server:app
"""
import os

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"
backlog = 2048

# Worker processes
workers = int(os.getenv("WEB_CONCURRENCY", "2"))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000  # Restart workers after 10k requests to cap memory growth
max_requests_jitter = 1000
timeout = 120  # Ledger and payout calls can be slow
graceful_timeout = 30  # Lets pollers stop during lifespan shutdown
keepalive = 30

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

proc_name = "switcherfi_settlement"

daemon = False
pidfile = None
umask = 0

# Each worker owns its own event loop and pollers
preload_app = False


def when_ready(server):
    server.log.info(f"✅ Gunicorn ready with {workers} uvicorn workers on {bind}")


def worker_int(worker):
    worker.log.info(f"⚠️ Worker {worker.pid} interrupted")


def worker_abort(worker):
    worker.log.warning(f"🚨 Worker {worker.pid} aborted (timeout)")
