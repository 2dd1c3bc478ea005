import os


bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8080")
# Notes live in process memory, so exactly one worker may serve them.
workers = 1
threads = int(os.getenv("GUNICORN_THREADS", "4"))
timeout = int(os.getenv("GUNICORN_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))
worker_class = "gthread"

accesslog = os.getenv("GUNICORN_ACCESS_LOG", "-")
errorlog = os.getenv("GUNICORN_ERROR_LOG", "-")
loglevel = os.getenv(
    "GUNICORN_LOG_LEVEL",
    os.getenv("APP_LOG_LEVEL", "info")
).lower()
capture_output = True
access_log_format = (
    '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s '
    '"%(f)s" "%(a)s" %(D)sus'
)

# Import app.py from backend/ regardless of the caller's cwd.
chdir = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "backend")
