"""
Gunicorn configuration for the image gallery API

Every setting shows its DEFAULT and the environment variable that overrides
it. Unset the variable to fall back to the default used here.

Run:
  gunicorn main:app --config gunicorn.conf.py

Notes:
- Uses Uvicorn workers for FastAPI.
- The image catalog cache lives in each worker process. With more than one
  worker every process keeps (and refreshes) its own copy of the catalog.
- Writes access/error logs to ./logs/ by default.
"""

import os
from pathlib import Path


# --- Paths / Logs ---
# DEFAULT: ./logs (override with GUNICORN_LOGDIR)
LOG_DIR = Path(os.getenv("GUNICORN_LOGDIR", "logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)


# --- Binding / Network ---
# DEFAULT: 127.0.0.1:8000; set GUNICORN_BIND=0.0.0.0:8000 to expose on the LAN
bind = os.getenv("GUNICORN_BIND", "127.0.0.1:8000")


# --- Concurrency ---
# DEFAULT: 1 worker so one process owns the catalog cache (override via WEB_CONCURRENCY)
workers = int(os.getenv("WEB_CONCURRENCY", "1"))

# DEFAULT: Uvicorn worker class for ASGI/FastAPI
worker_class = os.getenv("GUNICORN_WORKER_CLASS", "uvicorn.workers.UvicornWorker")

# DEFAULT: do not preload the app; the cache and HTTP client are built per worker at startup
preload_app = os.getenv("GUNICORN_PRELOAD", "false").lower() == "true"


# --- Timeouts / Keepalive ---
# DEFAULT: 60s worker timeout; a cold catalog refresh pages through the whole account
timeout = int(os.getenv("GUNICORN_TIMEOUT", "60"))

# DEFAULT: 30s graceful timeout so in-flight uploads can finish
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))

# DEFAULT: 5s HTTP keep-alive
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))


# --- Logging ---
# Unset these to get Gunicorn's own defaults (errorlog='-', accesslog=None)
errorlog = os.getenv("GUNICORN_ERRORLOG", str(LOG_DIR / "gunicorn_error.log"))
accesslog = os.getenv("GUNICORN_ACCESSLOG", str(LOG_DIR / "gunicorn_access.log"))

# DEFAULT: info
loglevel = os.getenv("GUNICORN_LOGLEVEL", "info")

# DEFAULT: capture stdout/stderr from workers into the error log
capture_output = os.getenv("GUNICORN_CAPTURE_OUTPUT", "true").lower() == "true"

access_log_format = os.getenv(
    "GUNICORN_ACCESS_FORMAT",
    '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s %(M)sms "%(a)s"',
)


# --- Dev convenience ---
# DEFAULT: auto-reload disabled. Enable for local dev with GUNICORN_RELOAD=true
reload = os.getenv("GUNICORN_RELOAD", "false").lower() == "true"


# --- Proxies ---
# DEFAULT: trust X-Forwarded-* only from localhost
forwarded_allow_ips = os.getenv("GUNICORN_FORWARDED_ALLOW_IPS", "127.0.0.1")
