import multiprocessing

bind = "0.0.0.0:8000"
wsgi_app = "chatapp.main:app"
workers = multiprocessing.cpu_count()
worker_class = "uvicorn.workers.UvicornWorker"
max_requests = 1000
max_requests_jitter = 50
# Above REQUEST_TIMEOUT_SECONDS so a hung model call fails with 504, not a worker kill
timeout = 120
keepalive = 5
accesslog = "-"
errorlog = "-"
loglevel = "info"
