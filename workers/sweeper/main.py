from __future__ import annotations

import logging
import signal
import sys
import threading
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from src.app.domain.errors import WorkerConfigurationError
from src.app.infra.db.base import TaskRepository
from src.app.infra.state.base import TaskStateStore
from src.app.services.expiration_sweeper import ExpirationSweeper
from workers.sweeper.config import WorkerConfig, get_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("sweeper-worker")


class SweeperWorker:
    def __init__(
        self,
        config: WorkerConfig,
        task_repository: TaskRepository,
        state_store: TaskStateStore,
    ):
        self.config = config
        self.sweeper = ExpirationSweeper(
            task_repository,
            state_store,
            window=timedelta(days=config.draft_expiration_days),
            interval=timedelta(minutes=config.sweep_interval_minutes),
            initial_delay=timedelta(seconds=config.initial_delay_seconds),
            batch_size=config.batch_size,
            state_ttl=timedelta(hours=config.task_state_ttl_hours),
        )
        self.running = False
        self.runs_completed = 0
        self.tasks_expired = 0
        self._wake = threading.Event()

    def start(self) -> None:
        self._validate_configuration()
        self._setup_signal_handlers()
        self._log_startup_info()
        self.running = True
        self._run_main_loop()
        self._shutdown()

    def _validate_configuration(self) -> None:
        errors = self.config.validate()
        if errors:
            raise WorkerConfigurationError(errors)

    def _setup_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_shutdown_signal)
        signal.signal(signal.SIGINT, self._handle_shutdown_signal)

    def _log_startup_info(self) -> None:
        logger.info(
            "Starting expiration sweeper: id=%s, interval=%dm, window=%dd",
            self.config.worker_id,
            self.config.sweep_interval_minutes,
            self.config.draft_expiration_days,
        )

    def _run_main_loop(self) -> None:
        if self._sleep(self.config.initial_delay_seconds):
            return

        while self.running:
            self.run_once()

            if self._reached_max_runs():
                break

            if self._sleep(self.config.sweep_interval_minutes * 60):
                break

    def run_once(self) -> int:
        try:
            expired = self.sweeper.sweep_once()
        except Exception:
            logger.exception("Sweep run failed; will retry next interval")
            expired = 0
        self.runs_completed += 1
        self.tasks_expired += expired
        return expired

    def _reached_max_runs(self) -> bool:
        if self.config.max_runs <= 0:
            return False
        if self.runs_completed >= self.config.max_runs:
            logger.info("Reached max runs (%d), shutting down", self.config.max_runs)
            return True
        return False

    def _sleep(self, seconds: float) -> bool:
        """Waits between runs; True when a shutdown signal interrupted the wait."""
        self._wake.wait(seconds)
        return not self.running

    def _handle_shutdown_signal(self, signum: int, frame: object) -> None:
        logger.info("Received shutdown signal %d", signum)
        self.running = False
        self._wake.set()

    def _shutdown(self) -> None:
        logger.info(
            "Sweeper shutting down: runs=%d, tasks_expired=%d",
            self.runs_completed,
            self.tasks_expired,
        )


def create_default_dependencies(config: WorkerConfig) -> tuple[TaskRepository, TaskStateStore]:
    from supabase import create_client

    from src.app.infra.db.supabase_repos import SupabaseTaskRepository
    from src.app.infra.state.supabase_state_store import SupabaseTaskStateStore

    client = create_client(config.supabase_url, config.supabase_key)
    task_repository = SupabaseTaskRepository(client)
    state_store = SupabaseTaskStateStore(client, default_ttl=timedelta(hours=config.task_state_ttl_hours))
    return task_repository, state_store


def main() -> None:
    config = get_config()
    task_repo, state_store = create_default_dependencies(config)

    worker = SweeperWorker(
        config=config,
        task_repository=task_repo,
        state_store=state_store,
    )

    worker.start()


if __name__ == "__main__":
    main()
