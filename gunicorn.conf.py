"""Gunicorn config: `gunicorn -c gunicorn.conf.py csv_server.main:app`."""
import os

# Bind to CSV_SERVER_PORT or default 8000
bind = f"0.0.0.0:{os.environ.get('CSV_SERVER_PORT', '8000')}"

# Uvicorn async workers; each loads its own copy of every dataset.
# Refresh and upload only reach the worker that serves the request, so keep
# a single worker unless datasets are read-only. Tune via WEB_CONCURRENCY.
worker_class = "uvicorn.workers.UvicornWorker"
workers = int(os.environ.get("WEB_CONCURRENCY", "1"))

# Startup parses every dataset before the worker accepts requests
timeout = 120

# Graceful timeout for shutdown
graceful_timeout = 30

keepalive = 65

# Logging
accesslog = "-"
errorlog = "-"
loglevel = "info"
