# ==============================================================================
# GUNICORN CONFIGURATION
# gunicorn config.asgi:application -c config/gunicorn_conf.py
# ==============================================================================

import os
import multiprocessing

# (2 * CPU_COUNT) + 1, overridable with GUNICORN_WORKERS
workers = int(os.getenv("GUNICORN_WORKERS", (multiprocessing.cpu_count() * 2) + 1))
worker_class = "uvicorn.workers.UvicornWorker"

port = int(os.getenv("PORT", 8000))
bind = [f"0.0.0.0:{port}"]
proc_name = "jewel-store-api"

# Razorpay gives up on a webhook after a few seconds and redelivers;
# a worker stuck longer than this is killed and the delivery retried.
timeout = int(os.getenv("GUNICORN_TIMEOUT", 30))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", 30))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", 5))

# Logs go to stdout/stderr for the container runtime
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")
access_log_format = '%(h)s %(t)s "%(r)s" %(s)s %(b)s %(D)s %({x-request-id}o)s'

# Recycle workers with jitter to avoid a thundering herd on restart
max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", 1000))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", 100))

# Trust X-Forwarded-* from the platform's reverse proxy
forwarded_allow_ips = "*"

preload_app = True


def on_starting(server):
    server.log.info(f"Starting {proc_name}: {workers} x {worker_class} on {bind[0]}, timeout {timeout}s")
