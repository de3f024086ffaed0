"""RQ worker process that runs queued iCal syncs."""

from __future__ import annotations

import logging
import signal
from types import FrameType

from rq import Queue, Worker

from .config import AppSettings
from .db import init_db
from .jobs import get_queue

_logger = logging.getLogger(__name__)


def build_sync_worker(settings: AppSettings, *, queue: Queue | None = None) -> Worker:
    target = queue or get_queue(settings)
    worker = Worker([target], connection=target.connection)
    _logger.info(
        "sync worker ready queue=%s job_timeout=%ss lock_ttl=%ss burst=%s",
        target.name,
        settings.rq_job_timeout_seconds,
        settings.sync_lock_ttl_seconds,
        settings.rq_worker_burst,
    )
    return worker


def _install_signal_handlers(worker: Worker) -> None:
    def _stop_after_current_sync(signum: int, frame: FrameType | None) -> None:
        try:
            signal_name = signal.Signals(signum).name
        except ValueError:
            signal_name = str(signum)
        _logger.info("%s received; sync worker stops once the running sync finishes", signal_name)
        worker.request_stop(signum, frame)

    signal.signal(signal.SIGTERM, _stop_after_current_sync)
    signal.signal(signal.SIGINT, _stop_after_current_sync)


def run_sync_worker(settings: AppSettings | None = None, *, queue: Queue | None = None) -> bool:
    """Process sync jobs until stopped, or until the queue drains in burst mode."""
    cfg = settings or AppSettings()
    init_db(cfg)
    worker = build_sync_worker(cfg, queue=queue)
    _install_signal_handlers(worker)
    return worker.work(with_scheduler=False, burst=cfg.rq_worker_burst)


def main() -> None:
    run_sync_worker()


if __name__ == "__main__":
    main()
