#!/usr/bin/env python3
"""
Gunicorn configuration for the clinic backup service.

The storage monitor is an in-process scheduler, so a single worker keeps
exactly one monitor per deployment.
"""

import os

# Server socket
bind = os.environ.get("GUNICORN_BIND", "127.0.0.1:8000")
backlog = 2048

# One worker: the storage monitor and backup jobs live in the worker process
workers = 1
worker_class = "gthread"
threads = 4
# Manual backups stream whole-database archives
timeout = 300
keepalive = 2

# Logging
accesslog = os.environ.get("GUNICORN_ACCESS_LOG", "-")
errorlog = os.environ.get("GUNICORN_ERROR_LOG", "-")
loglevel = "info"
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s"'

# Process naming
proc_name = "clinic_backup"

# Daemon mode
daemon = False

# Load the app in the worker so the monitor's scheduler thread is not lost on fork
preload_app = False

# Security
limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190

def on_starting(server):
    server.log.info("Starting clinic backup service")

def on_reload(server):
    server.log.info("Reloading clinic backup service")

def when_ready(server):
    server.log.info("Clinic backup service is ready. Listening on: %s", server.address)

def on_exit(server):
    server.log.info("Shutting down clinic backup service")
