"""
Production Server Configuration

Run the booking analytics API with Uvicorn workers under Gunicorn:

    gunicorn booking_cdc.main:app -c gunicorn.conf.py
"""

import multiprocessing
import os

# Server socket
bind = os.getenv("BIND", f"0.0.0.0:{os.getenv('API_PORT', '8000')}")
backlog = 2048

# Worker processes. The derivation lock is per worker; trigger
# POST /pipeline/run from a single scheduler
workers = int(os.getenv("WORKERS", multiprocessing.cpu_count() * 2 + 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000
max_requests_jitter = 1000
timeout = 120
keepalive = 5
graceful_timeout = 30

# Process naming
proc_name = "booking-cdc-api"

# Server mechanics
daemon = False
pidfile = "/tmp/booking-cdc-gunicorn.pid"

# Logging; application logs go through structlog
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
accesslog = None
