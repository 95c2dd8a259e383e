"""
Reservation Sweeper - background release of expired material reservations.

This module provides a background service that periodically releases
reservations whose soft deadline (expires_at) has passed. The service runs
on a daemon thread and is the only autonomous actor in the engine; every
other state change is request-driven.

Example usage:
    from atelier.services.reservation_sweeper import ReservationSweeper

    sweeper = ReservationSweeper()
    sweeper.start()  # Begins periodic sweeping
    # ... service runs ...
    sweeper.stop()   # Clean shutdown
"""

import logging
import threading
from typing import Any, Dict, Optional

from ..utils.config import get_config
from .exceptions import InvariantViolation
from .reservation_service import sweep_expired_reservations


class ReservationSweeper:
    """
    Background service that runs sweep_expired_reservations() periodically.

    Attributes:
        _interval: Seconds between sweeps
        _stop_event: Threading event for signaling shutdown
        _thread: Background daemon thread
        last_result: Result dict of the most recent sweep
        fault: The InvariantViolation that halted the sweeper, if any
    """

    def __init__(self, interval_seconds: Optional[int] = None):
        """
        Initialize the sweeper.

        Args:
            interval_seconds: Seconds between sweeps (default: config
                sweep_interval_seconds)
        """
        self._logger = logging.getLogger(__name__)
        self._interval = interval_seconds or get_config().sweep_interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_result: Optional[Dict[str, Any]] = None
        self.fault: Optional[InvariantViolation] = None

        self._logger.info(f"Reservation sweeper initialized (interval: {self._interval}s)")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """
        Start the background sweep thread.

        If the sweeper is already running, this method does nothing.
        """
        if self.is_running:
            self._logger.warning("Reservation sweeper is already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._sweep_loop,
            name="ReservationSweeperThread",
            daemon=True,
        )
        self._thread.start()
        self._logger.info("Reservation sweeper started")

    def stop(self, timeout: float = 2.0) -> None:
        """
        Stop the background sweep thread and wait for it to finish.

        Args:
            timeout: Maximum seconds to wait for thread termination
        """
        if not self.is_running:
            self._logger.info("Reservation sweeper is not running")
            return

        self._logger.info("Stopping reservation sweeper...")
        self._stop_event.set()
        self._thread.join(timeout=timeout)

        if self._thread.is_alive():
            self._logger.warning("Reservation sweeper thread did not stop within timeout")
        else:
            self._logger.info("Reservation sweeper stopped")

    def run_once(self) -> Dict[str, Any]:
        """Run a single sweep synchronously and remember its result."""
        self.last_result = sweep_expired_reservations()
        return self.last_result

    def _sweep_loop(self) -> None:
        """
        Main loop (runs in background thread).

        Sweeps every `_interval` seconds until stop() is called. Event.wait()
        with a timeout allows clean shutdown without polling. A broken ledger
        invariant halts the loop; other errors are logged and retried on the
        next sweep.
        """
        self._logger.info("Reservation sweep loop started")

        while not self._stop_event.is_set():
            try:
                result = self.run_once()
                self._logger.debug(
                    f"Sweep performed: released={len(result['released'])}, "
                    f"failed={len(result['failed'])}"
                )
            except InvariantViolation as e:
                self.fault = e
                self._logger.critical(
                    f"Ledger invariant broken, reservation sweeper halted: {e}", exc_info=True
                )
                self._stop_event.set()
                break
            except Exception as e:
                # Retried on the next sweep
                self._logger.error(f"Error during reservation sweep: {e}", exc_info=True)

            self._stop_event.wait(timeout=self._interval)

        self._logger.info("Reservation sweep loop stopped")
