"""
Gunicorn configuration.
"""
import os

bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"

# Worker configuration
workers = int(os.getenv('GUNICORN_WORKERS', '2'))
worker_class = 'sync'
timeout = 120
keepalive = 5

# Logging
accesslog = '-'
errorlog = '-'
loglevel = os.getenv('LOG_LEVEL', 'info')
capture_output = True

proc_name = 'frequent-buyer'

# The scheduler starts once in the master when the app is preloaded
preload_app = True

graceful_timeout = 30


def on_starting(server):
    server.log.info("[Gunicorn] Starting frequent buyer server...")


def worker_exit(server, worker):
    from frequent_buyer.services.pos_sync_queue import sync_queue
    sync_queue.shutdown(wait=True)


def on_exit(server):
    server.log.info("[Gunicorn] Frequent buyer server shutting down...")
