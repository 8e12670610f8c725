"""
Main entry point for the Guest Sync service.

Wires configuration, logging, the source and directory clients, the cache and
the reconciliation engine together, and runs either a single cycle, the
scheduled service or a health check.
"""

import sys
import signal
import threading
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from guest_sync.cache import DirectoryCache
from guest_sync.clients import GraphDirectoryClient, QlikUserClient
from guest_sync.config import load_config, ConfigurationError, SyncSettings
from guest_sync.engine import ReconciliationEngine
from guest_sync.logging_setup import setup_logging
from guest_sync.mapping import GroupMapping
from guest_sync.refresher import CacheRefresher
from guest_sync.scheduler import SyncScheduler, TriggerServer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SKIPPED = 1
EXIT_CONFIG_ERROR = 2
EXIT_UNEXPECTED = 4


class GuestSyncApp:
    """
    Application wiring for Guest Sync.

    Builds every component from the configuration file and owns their lifetime.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the application.

        Args:
            config_path: Path to configuration file
        """
        self.config_path = config_path
        self.config = None
        self.settings = None
        self.source = None
        self.directory = None
        self.cache = None
        self.engine = None
        self.scheduler = None
        self.trigger_server = None
        self._stop = threading.Event()

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path)
        self.settings = SyncSettings.from_config(self.config)

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def build(self) -> ReconciliationEngine:
        """Create clients, cache, mapping, refresher and engine from the loaded configuration."""
        self.source = QlikUserClient(self.config['source'])
        self.directory = GraphDirectoryClient(self.config['directory'])
        self.cache = DirectoryCache()

        mapping = GroupMapping(self.settings.group_mappings, self.settings.group_prefix)
        refresher = CacheRefresher(self.directory, self.cache, self.settings.group_mappings)
        self.engine = ReconciliationEngine(
            source=self.source,
            directory=self.directory,
            cache=self.cache,
            mapping=mapping,
            settings=self.settings,
            refresher=refresher
        )
        return self.engine

    def run_once(self) -> int:
        """
        Run a single refresh + sync cycle.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._start()
            summary = self.engine.run_cycle()

            if summary is None:
                return EXIT_SKIPPED
            if summary.status == 'fetch_failed':
                logger.warning("Sync aborted because the source fetch failed")
                return EXIT_SKIPPED

            logger.info(f"Sync finished with status {summary.status}")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def run_service(self) -> int:
        """
        Run the scheduler (and HTTP trigger if configured) until stopped.

        Returns:
            Exit code
        """
        try:
            self._start()
            schedule = self.config['schedule']
            self.scheduler = SyncScheduler(self.engine,
                                           initial_delay=float(schedule['initial_delay_seconds']),
                                           interval=float(schedule['interval_seconds']))
            self.scheduler.start()

            port = int(schedule.get('trigger_port') or 0)
            if port > 0:
                self.trigger_server = TriggerServer(self.scheduler, schedule.get('trigger_host', '127.0.0.1'), port)
                self.trigger_server.start()

            logger.info("Guest Sync service running")
            while not self._stop.wait(1.0):
                pass
            logger.info("Guest Sync service stopping")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except KeyboardInterrupt:
            logger.info("Interrupted")
            return EXIT_OK
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def stop(self, *_args):
        self._stop.set()

    def _start(self):
        self._load_configuration()
        self._setup_logging()
        logger.info("Starting Guest Sync")
        self.build()

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self.build()
        except Exception as e:
            health_status['checks']['clients'] = {
                'status': 'fail',
                'message': f'Client setup failed: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            if self.directory.check_access().get('authenticated'):
                health_status['checks']['directory'] = {
                    'status': 'pass',
                    'message': 'Directory token acquired'
                }
            else:
                raise RuntimeError('token request was rejected')
        except Exception as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory authentication failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            if self.source.check_access().get('reachable'):
                health_status['checks']['source'] = {
                    'status': 'pass',
                    'message': 'Source users API reachable'
                }
            else:
                raise RuntimeError('users endpoint did not answer')
        except Exception as e:
            health_status['checks']['source'] = {
                'status': 'fail',
                'message': f'Source API check failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        health_status['checks']['cache'] = {
            'status': 'info',
            'details': self.cache.stats()
        }

        self._cleanup()
        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.trigger_server is not None:
            self.trigger_server.stop()
            self.trigger_server = None
        if self.scheduler is not None:
            self.scheduler.stop()
            self.scheduler = None
        if self.engine is not None:
            self.engine.close()
            self.engine = None
        for client in (self.source, self.directory):
            if client is not None:
                client.close_connection()


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Guest Sync - source users to directory guest groups')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--once', action='store_true',
                        help='Run a single refresh + sync cycle and exit')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')

    args = parser.parse_args()

    app = GuestSyncApp(config_path=args.config)

    if args.health_check:
        health_status = app.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.once:
        sys.exit(app.run_once())

    else:
        signal.signal(signal.SIGTERM, app.stop)
        sys.exit(app.run_service())


if __name__ == "__main__":
    main()
