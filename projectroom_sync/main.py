"""
Service entry point for Project Room Sync.

This module wires the directory client, room service client, persistence
gateway, reconciliation engine and scheduler together, and provides the
command line interface.
"""

import sys
import json
import signal
import logging
import threading
import importlib
from datetime import datetime
from typing import Dict, Any, Optional

from projectroom_sync.config import load_config, ConfigurationError
from projectroom_sync.ldap_client import DirectoryClient, DirectoryUnavailable
from projectroom_sync.logging_setup import setup_logging
from projectroom_sync.notifications import send_drift_alert, send_startup_failure
from projectroom_sync.reconcile import ReconciliationEngine, TickSummary
from projectroom_sync.rooms.base import RoomServiceBase
from projectroom_sync.scheduler import Scheduler
from projectroom_sync.storage import Storage, PersistenceError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TICK_ERRORS = 1
EXIT_CONFIG_ERROR = 2
EXIT_UNEXPECTED = 4


class SyncError(Exception):
    """Raised when the service cannot be assembled."""
    pass


class SyncService:
    """
    Owns the long-lived clients and drives reconciliation.

    The directory connection and the room service session are created once and
    reused by every tick; both reconnect lazily after a failure.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the service.

        Args:
            config_path: Path to configuration file
        """
        self.config_path = config_path
        self.config = None
        self.directory = None
        self.rooms = None
        self.storage = None
        self.engine = None
        self.scheduler = None
        self.stop_event = threading.Event()
        self._previous_handlers = {}

    def run_forever(self) -> int:
        """
        Run the scheduler until SIGINT or SIGTERM.

        Returns:
            Exit code
        """
        return self._run(self._serve)

    def run_once(self) -> int:
        """
        Run a single tick.

        Returns:
            0 if the tick completed without errors, 1 otherwise, or a startup exit code
        """
        return self._run(self._single_tick)

    def _run(self, body) -> int:
        self._install_signal_handlers()
        try:
            self._load_configuration()
            self._setup_logging()
            logger.info("Starting Project Room Sync")
            self._build_components()
            self._connect_directory()
            return body()

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._notify_startup_failure('Service', f"Unexpected error: {e}")
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()
            self._restore_signal_handlers()

    def _serve(self) -> int:
        self.scheduler = Scheduler.from_config(self.engine, self.config['sync'],
                                               on_tick=self._on_tick, stop_event=self.stop_event)
        self.scheduler.start()

        while self.scheduler.is_running:
            self.scheduler.join(1.0)

        logger.info(f"Project Room Sync stopped: {json.dumps(self.scheduler.status(), sort_keys=True)}")
        return EXIT_OK

    def _single_tick(self) -> int:
        summary = self.engine.run_tick()
        if summary.ok:
            logger.info("Tick completed successfully")
            return EXIT_OK
        logger.warning(f"Tick completed with {len(summary.errors)} errors")
        return EXIT_TICK_ERRORS

    def stop(self):
        """Request shutdown; the running tick is cancelled before its next network call."""
        self.stop_event.set()

    def _install_signal_handlers(self):
        """Route SIGINT and SIGTERM to :meth:`stop` for the lifetime of a run."""
        if threading.current_thread() is not threading.main_thread():
            return

        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, shutting down")
            self.stop()

        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, handle_signal)

    def _restore_signal_handlers(self):
        for signum, handler in self._previous_handlers.items():
            if handler is not None:
                signal.signal(signum, handler)
        self._previous_handlers = {}

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
            logger.debug("Configuration loaded successfully")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _build_components(self):
        """Create the clients and the engine from configuration."""
        self.directory = DirectoryClient(self.config['ldap'], cancel_event=self.stop_event)
        self.rooms = self._load_room_service_module(self.config['room_service'])

        database_config = self.config['database']
        self.storage = Storage.from_url(database_config['url'], echo=database_config.get('echo', False))

        self.engine = ReconciliationEngine(
            self.directory,
            self.rooms,
            self.storage,
            cancel_event=self.stop_event
        )

    def _connect_directory(self):
        """
        Bind to the directory before the first tick.

        An unreachable directory does not stop the service: room membership
        still reconciles, and every tick binds again lazily.
        """
        error_config = self.config.get('error_handling', {})
        try:
            self.directory.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except DirectoryUnavailable as e:
            logger.warning(f"LDAP not reachable at startup, each tick will retry: {e}")

    def _load_room_service_module(self, room_config: Dict[str, Any]) -> RoomServiceBase:
        """Dynamically load the room service module and create its client."""
        module_name = room_config.get('module', 'matrix')

        try:
            room_module = importlib.import_module(f"projectroom_sync.rooms.{module_name}")
        except ImportError as e:
            raise SyncError(f"Failed to import room service module {module_name}: {e}")

        service_class = None
        for attr_name in dir(room_module):
            attr = getattr(room_module, attr_name)
            if (isinstance(attr, type) and
                    issubclass(attr, RoomServiceBase) and
                    attr is not RoomServiceBase):
                service_class = attr
                break

        if not service_class:
            raise SyncError(f"No RoomServiceBase subclass found in module {module_name}")

        return service_class(room_config, cancel_event=self.stop_event)

    def _on_tick(self, summary: TickSummary):
        """Send a drift alert once the failure streak reaches the configured threshold."""
        threshold = self.config.get('error_handling', {}).get('alert_after_failed_ticks', 3)
        failures = self.scheduler.consecutive_failures if self.scheduler else 0

        if threshold and failures == threshold:
            logger.error(f"{failures} reconciliation ticks in a row failed, alerting operators")
            send_drift_alert(summary, failures, self.config.get('notifications', {}))

    def _notify_startup_failure(self, component: str, message: str):
        if self.config:
            send_startup_failure(component, message, self.config.get('notifications', {}))

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the service's dependencies.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        def record(name, passed, message, details=None):
            health_status['checks'][name] = {'status': 'pass' if passed else 'fail', 'message': message}
            if details:
                health_status['checks'][name]['details'] = details
            if not passed:
                health_status['status'] = 'unhealthy'

        try:
            self._load_configuration()
            record('configuration', True, 'Configuration loaded successfully')
        except ConfigurationError as e:
            record('configuration', False, f'Configuration error: {e}')
            return health_status

        try:
            directory = DirectoryClient(self.config['ldap'])
            with directory:
                directory.connect(max_retries=0)
                stats = directory.get_connection_stats()
            record('ldap', True, 'LDAP connection successful', stats)
        except Exception as e:
            record('ldap', False, f'LDAP connection failed: {e}')

        try:
            rooms = self._load_room_service_module(self.config['room_service'])
            with rooms:
                authenticated = rooms.authenticate()
            record('room_service', authenticated,
                   'Room service login successful' if authenticated else 'Room service login failed')
        except Exception as e:
            record('room_service', False, f'Room service check failed: {e}')

        try:
            storage = Storage.from_url(self.config['database']['url'])
            connected = storage.check_connection()
            record('database', connected,
                   'Database connection successful' if connected else 'Database query failed')
        except PersistenceError as e:
            record('database', False, f'Database check failed: {e}')

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                record('notifications', False, f'Missing notification config: {missing_fields}')
            else:
                record('notifications', True, 'Email notification configuration valid')
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def init_db(self) -> int:
        """Create the database schema."""
        try:
            self._load_configuration()
            storage = Storage.from_url(self.config['database']['url'])
            storage.create_schema()
            return EXIT_OK
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except PersistenceError as e:
            logger.error(f"Schema creation failed: {e}")
            return EXIT_UNEXPECTED

    def _cleanup(self):
        """Clean up resources."""
        if self.scheduler:
            self.scheduler.stop(timeout=30)
        if self.directory:
            self.directory.disconnect()
        if self.rooms:
            self.rooms.close_connection()


def main():
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='Project Room Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--once', action='store_true',
                        help='Run a single reconciliation tick and exit')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--init-db', action='store_true',
                        help='Create the database schema and exit')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    service = SyncService(config_path=args.config)

    if args.health_check:
        health_status = service.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.init_db:
        sys.exit(service.init_db())

    elif args.test_email:
        try:
            service._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIG_ERROR)

        from projectroom_sync.notifications import test_notification_config
        if test_notification_config(service.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        else:
            print("Failed to send test email")
            sys.exit(1)

    elif args.once:
        sys.exit(service.run_once())

    else:
        sys.exit(service.run_forever())


if __name__ == "__main__":
    main()
