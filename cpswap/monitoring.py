import time
import socket
import threading
import logging
from socketserver import ThreadingMixIn
from wsgiref.simple_server import make_server, WSGIServer

import psutil
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app

logger = logging.getLogger(__name__)


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """Serves metric scrapes off the engine's threads."""
    allow_reuse_address = True
    daemon_threads = True


class Monitor:
    """
    Prometheus metrics for one engine. Every engine owns an isolated registry,
    so several engines (e.g. in tests) never collide on metric names.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 9090):
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

        self.registry = CollectorRegistry()

        self.operations = Counter(
            'amm_operations_total', 'Engine operations by kind and outcome',
            ['operation', 'status'], registry=self.registry)
        self.latency = Histogram(
            'amm_operation_latency_seconds', 'Time to apply one operation',
            ['operation'], registry=self.registry)
        self.pool_k = Gauge(
            'amm_invariant_k', 'Constant product of tradable reserves',
            ['pool'], registry=self.registry)
        self.swap_volume = Counter(
            'amm_swap_volume_total', 'Raw input units swapped',
            ['mint'], registry=self.registry)
        self.discount_token_paid = Counter(
            'amm_discount_token_paid_total', 'Discount-token units settled to treasuries',
            ['mint'], registry=self.registry)
        self.cpu_usage = Gauge('system_cpu_percent', 'Current CPU usage percent', registry=self.registry)
        self.memory_usage = Gauge('system_memory_percent', 'Current memory usage percent', registry=self.registry)

    def start_server(self):
        """Start the exposition server in a daemon thread, retrying while the port is busy."""
        app = self.metrics_app()

        max_retries = 5
        retry_delay = 2

        for attempt in range(max_retries):
            try:
                self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
                self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

                self.thread = threading.Thread(target=self.server.serve_forever)
                self.thread.daemon = True
                self.thread.start()
                logger.info(f"Prometheus server started on http://{self.host}:{self.port}")
                return
            except OSError as e:
                if e.errno == 98 and attempt < max_retries - 1:
                    logger.warning(
                        f"Port {self.port} in use, retrying in {retry_delay}s "
                        f"(attempt {attempt+1}/{max_retries})..."
                    )
                    time.sleep(retry_delay)
                else:
                    logger.error(f"Failed to bind metrics server to port {self.port}: {e}")
                    raise

    def stop_server(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Prometheus server stopped.")

    def record_operation(self, operation: str, status: str, latency: float):
        self.operations.labels(operation=operation, status=status).inc()
        self.latency.labels(operation=operation).observe(latency)

    def record_pool(self, pool_address: bytes, reserve_a: int, reserve_b: int):
        self.pool_k.labels(pool=pool_address.hex()[:16]).set(reserve_a * reserve_b)

    def record_swap(self, input_mint: bytes, amount_in: int, discount_mint: bytes = None, discount_paid: int = 0):
        self.swap_volume.labels(mint=input_mint.hex()[:16]).inc(amount_in)
        if discount_mint and discount_paid:
            self.discount_token_paid.labels(mint=discount_mint.hex()[:16]).inc(discount_paid)

    def update_system(self):
        self.cpu_usage.set(psutil.cpu_percent())
        self.memory_usage.set(psutil.virtual_memory().percent)

    def metrics_app(self):
        """WSGI exposition app that refreshes the system gauges on every scrape."""
        exposition = make_wsgi_app(self.registry)

        def app(environ, start_response):
            self.update_system()
            return exposition(environ, start_response)

        return app
