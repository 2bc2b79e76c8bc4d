bind = "0.0.0.0:9102"  # Overridden by host/port from config.yaml when started via dbquery-exporter
workers = 1  # !!!KEEP THIS AS 1: the query scheduler runs inside the worker
threads = 4  # Scrapes only serialize in-memory gauges
worker_class = "gthread"

loglevel = "info"
accesslog = "-"  # Log to stdout
errorlog = "-"   # Log to stderr

# Timeout settings for client disconnects and stuck requests
timeout = 30      # Worker heartbeat timeout; queries run on scheduler threads, not request threads
keepalive = 2     # Keep-alive for HTTP connections
graceful_timeout = 30  # Graceful shutdown timeout
worker_connections = 1000  # Maximum concurrent requests per worker

# A restarted worker would drop every gauge, so never recycle it
max_requests = 0
preload_app = False       # The scheduler's threads must start after the fork

# Enable proper signal handling for Docker
enable_stdio_inheritance = True

disable_redirect_access_to_syslog = True


### For TLS support, uncomment and set certfile and keyfile paths below.
# certfile = "/certs/server.crt"
# keyfile = "/certs/server.key"

def worker_exit(server, worker):
    """Called when a worker is exiting: stop the scheduler and close database pools."""
    import logging
    from dbquery_exporter import graceful_shutdown
    logging.info(f"Worker {worker.pid} exiting - cleanup initiated")
    graceful_shutdown(getattr(worker, 'wsgi', None))

def on_exit(server):
    """Called when the master process is exiting."""
    import logging
    logging.info("Exporter shutting down")
