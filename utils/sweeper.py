import atexit
import logging

from apscheduler.schedulers.background import BackgroundScheduler

from security.bruteforce import purge_old_attempts, purge_expired_lockouts
from security.store import get_store

logger = logging.getLogger(__name__)


def sweep_store(name: str) -> int:
    removed = get_store(name).sweep()
    if removed:
        logger.debug("Swept %s expired %s entries", removed, name)
    return removed


def purge_login_records() -> int:
    return purge_old_attempts() + purge_expired_lockouts()


# job id -> (callable, config key holding its interval in seconds)
JOBS = {
    "otp_sweep": (lambda: sweep_store("otp"), "OTP_SWEEP_SECONDS"),
    "csrf_sweep": (lambda: sweep_store("csrf"), "CSRF_SWEEP_SECONDS"),
    "rate_sweep": (lambda: sweep_store("rate"), "RATE_SWEEP_SECONDS"),
    "attempt_purge": (purge_login_records, "ATTEMPT_PURGE_SECONDS"),
}


def _in_app_context(app, job_id, fn):
    def runner():
        with app.app_context():
            try:
                return fn()
            except Exception:
                # a failed sweep is retried on the next tick
                logger.exception("Sweep job %s failed", job_id)
                return None
    return runner


def run_sweeps(app) -> dict:
    """Run every sweep once, synchronously. Returns job id -> removed count."""
    with app.app_context():
        return {job_id: fn() for job_id, (fn, _) in JOBS.items()}


def start_sweeps(app) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(daemon=True)
    for job_id, (fn, interval_key) in JOBS.items():
        scheduler.add_job(
            _in_app_context(app, job_id, fn),
            "interval",
            seconds=app.config.get(interval_key, 300),
            id=job_id,
            coalesce=True,
            max_instances=1,
        )
    scheduler.start()
    app.extensions["propertyguard_scheduler"] = scheduler
    logger.info("Started %s background sweep jobs", len(JOBS))

    def shutdown_scheduler():
        if scheduler.running:
            scheduler.shutdown(wait=False)

    atexit.register(shutdown_scheduler)
    return scheduler
