# Gunicorn configuration for the OnlyAccess backend
# Run with: gunicorn -c gunicorn.conf.py

import os

wsgi_app = 'app:create_app()'

# Server socket
port = os.environ.get('PORT', '5000')
bind = f"0.0.0.0:{port}"
backlog = 2048

# Worker processes
workers = int(os.environ.get('WEB_CONCURRENCY', '2'))
worker_class = 'sync'
max_requests = 1000  # Restart workers after 1000 requests to prevent memory leaks
max_requests_jitter = 50

# Timeouts: provider verification calls are bounded by PAYMENT_TIMEOUT_SECONDS
timeout = 60
keepalive = 5
graceful_timeout = 30

# Each worker builds its own app (MongoClient is not fork-safe)
preload_app = False

# Logging
accesslog = '-'
errorlog = '-'
loglevel = os.environ.get('LOG_LEVEL', 'info').lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = 'onlyaccess-backend'

# Security
limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190


def when_ready(server):
    server.log.info("OnlyAccess backend is ready. Listening on %s", server.address)


def worker_int(worker):
    worker.log.info("Worker received INT or QUIT signal")


def post_fork(server, worker):
    server.log.info("Worker spawned (pid: %s)", worker.pid)
