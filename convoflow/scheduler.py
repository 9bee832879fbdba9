"""
Background jobs: delayed resumption, idle-session sweep and variable TTL
eviction, run on an APScheduler ``BackgroundScheduler``.
"""

import structlog
from apscheduler.schedulers.background import BackgroundScheduler

from convoflow.config import settings
from convoflow.engine import FlowEngine

logger = structlog.get_logger(__name__)


class EngineScheduler:
    def __init__(self, engine: FlowEngine, scheduler: BackgroundScheduler = None):
        self.engine = engine
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")

    def fire_timers(self):
        fired = self.engine.sessions.fire_due_timers()
        if fired:
            logger.info("timers_fired", count=len(fired))

    def sweep(self):
        expired = self.engine.sessions.expire_idle_sessions()
        evicted = self.engine.variables.sweep_expired()
        logger.info("sweep_done", sessions_timed_out=len(expired), variables_evicted=evicted)

    def start(self):
        self.scheduler.add_job(
            self.fire_timers,
            "interval",
            seconds=settings.timer_interval_seconds,
            id="flow_timers_job",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info("scheduled_job", job="fire_timers", every_seconds=settings.timer_interval_seconds)

        self.scheduler.add_job(
            self.sweep,
            "interval",
            seconds=settings.sweep_interval_seconds,
            id="flow_sweep_job",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info("scheduled_job", job="sweep", every_seconds=settings.sweep_interval_seconds)

        self.scheduler.start()

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
