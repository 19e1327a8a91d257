import os


def cpu():
    return max(1, (os.cpu_count() or 1))


workers = min(max(2, cpu() * 2), 8)

# PayPal calls are blocking IO
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "4"))

# must outlast HTTP_TIMEOUT_SECS times the retry attempts of one PayPal call
timeout = int(os.getenv("GUNI_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

preload_app = True
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

wsgi_app = "config.wsgi:application"
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")
access_log_format = '{"remote":"%(h)s","request":"%(r)s","status":%(s)s,"bytes":%(b)s,"ms":%(M)s,"request_id":"%({x-request-id}o)s"}'
