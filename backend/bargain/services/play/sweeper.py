import time
from typing import Set

from bargain import socketio
from .sessions import SessionController
from .store import SqlStore
from .config import SqlConfigStore


_running_apps: Set[int] = set()


def run_expiry_sweep(app) -> int:
    """Move pending sessions older than SESSION_TTL_SEC to expired."""
    with app.app_context():
        controller = SessionController(
            SqlStore(retry_attempts=app.config.get('STORE_RETRY_ATTEMPTS', 3)),
            SqlConfigStore(),
            ttl_seconds=int(app.config.get('SESSION_TTL_SEC', 1800)),
        )
        expired = controller.expire_stale()
        app.logger.info(f"[sweep] expired={expired}")
        return expired


def schedule_expiry_sweep(app) -> None:
    """Start the periodic expiry sweep for this app.

    - No-ops in TESTING mode unless ENABLE_SWEEPER_IN_TESTS is set, in which
      case a single sweep runs synchronously
    - One loop per app instance
    """
    if app.config.get('TESTING') and not app.config.get('ENABLE_SWEEPER_IN_TESTS'):
        return
    if app.config.get('TESTING'):
        run_expiry_sweep(app)
        return
    if id(app) in _running_apps:
        app.logger.info("[sweep-skip] already scheduled")
        return
    _running_apps.add(id(app))

    interval = int(app.config.get('SESSION_SWEEP_INTERVAL_SEC', 300))
    app.logger.info(f"[sweep-set] interval={interval}s")

    def _worker():
        while True:
            time.sleep(interval)
            try:
                run_expiry_sweep(app)
            except Exception as exc:
                # The next tick retries
                app.logger.error(f"[sweep-fail] error={exc!r}")

    socketio.start_background_task(_worker)
