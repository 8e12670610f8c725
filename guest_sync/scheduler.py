"""
Sync triggers.

A periodic scheduler thread and an optional HTTP endpoint for administrative
runs. Both go through the engine's cycle guard, so a trigger that arrives
while a cycle is running is discarded.
"""

import threading
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional

logger = logging.getLogger(__name__)

TRIGGER_PATH = '/sync/users'
TRIGGER_RESPONSE = 'Sync started/finished'


class SyncScheduler:
    """
    Runs a refresh + sync cycle after an initial delay and then at a fixed
    delay measured from the end of the previous run.

    Args:
        engine: ReconciliationEngine
        initial_delay: Seconds before the first run
        interval: Seconds between the end of one run and the start of the next
    """

    def __init__(self, engine, initial_delay: float = 5.0, interval: float = 300.0):
        self.engine = engine
        self.initial_delay = initial_delay
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name='sync-scheduler', daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started initialDelay={self.initial_delay}s interval={self.interval}s")

    def _loop(self) -> None:
        if self._stop.wait(self.initial_delay):
            return
        while True:
            self.run_scheduled()
            if self._stop.wait(self.interval):
                return

    def run_scheduled(self) -> None:
        """One scheduled run. Errors are logged so the schedule keeps going."""
        try:
            self.engine.run_cycle()
        except Exception as e:
            logger.error(f"Scheduled sync run failed: {e}", exc_info=True)

    def trigger_now(self) -> str:
        """Run a cycle synchronously for an administrative request."""
        logger.info("Manual sync triggered")
        summary = self.engine.run_cycle()
        if summary is None:
            logger.info("Manual sync discarded - a cycle is already running")
        return TRIGGER_RESPONSE

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class TriggerHandler(BaseHTTPRequestHandler):
    """Answers ``POST /sync/users`` by running a cycle."""

    scheduler: Optional[SyncScheduler] = None

    def do_POST(self):
        if self.path.split('?', 1)[0].rstrip('/') != TRIGGER_PATH or self.scheduler is None:
            self._send(404, 'Not found')
            return
        try:
            message = self.scheduler.trigger_now()
        except Exception as e:
            logger.error(f"Manual sync failed: {e}", exc_info=True)
            self._send(500, 'Sync failed')
            return
        self._send(200, message)

    def _send(self, status: int, text: str) -> None:
        payload = text.encode('utf-8')
        self.send_response(status)
        self.send_header('Content-Type', 'text/plain; charset=utf-8')
        self.send_header('Content-Length', str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):
        logger.debug(f"Trigger request from {self.client_address[0]}: {format % args}")


class TriggerServer:
    """HTTP server thread for the administrative trigger."""

    def __init__(self, scheduler: SyncScheduler, host: str = '127.0.0.1', port: int = 0):
        handler = type('BoundTriggerHandler', (TriggerHandler,), {'scheduler': scheduler})
        self.httpd = ThreadingHTTPServer((host, port), handler)
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self):
        return self.httpd.server_address

    def start(self) -> None:
        self._thread = threading.Thread(target=self.httpd.serve_forever, name='sync-trigger-http', daemon=True)
        self._thread.start()
        host, port = self.address[:2]
        logger.info(f"Sync trigger listening on http://{host}:{port}{TRIGGER_PATH}")

    def stop(self) -> None:
        self.httpd.shutdown()
        self.httpd.server_close()
        if self._thread is not None:
            self._thread.join(5)
            self._thread = None
