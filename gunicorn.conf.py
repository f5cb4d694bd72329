# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

import multiprocessing
import os

# Gunicorn config for the waitlist app: gunicorn -c gunicorn.conf.py main:app

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")
workers = int(os.getenv("GUNICORN_WORKERS", multiprocessing.cpu_count() * 2 + 1))
worker_class = "sync"
accesslog = "-"  # log to stdout
errorlog = "-"   # log to stdout
loglevel = os.getenv("GUNICORN_LOGLEVEL", "info")
proc_name = "toyb_waitlist_gunicorn"

logger_class = "gunicorn.glogging.Logger"

# Rate-limit counters are per worker, so the effective limit scales with `workers`.

def post_fork(server, worker):
    # Used by GunicornWorkerFilter to tag log lines
    os.environ["GUNICORN_WORKER_ID"] = str(worker.age)
    server.log.info(f"Worker spawned (pid: {worker.pid})")

# No client address (%(h)s, X-Forwarded-For) and no query string (%(q)s / %(r)s):
# logs carry neither raw IPs nor the email address in unsubscribe links
access_log_format = '%(t)s "%(m)s %(U)s %(H)s" %(s)s %(b)s "%(a)s" %(L)s "%({X-Request-ID}o)s"'

