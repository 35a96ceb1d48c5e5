# job_monitor_scheduler.py
# Description: Periodic metrics sync and performance analysis jobs
#
# Imports
import asyncio
from typing import Optional
#
# 3rd-party imports
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger
#
# Local imports
from job_monitor.app.core.Analysis.performance_analyzer import PerformanceAnalyzer
from job_monitor.app.core.config import JobMonitorSettings, get_settings
from job_monitor.app.core.Monitoring.notification_service import get_notification_service
from job_monitor.app.core.Sync.sync_engine import SyncEngine, SyncOptions

#######################################################################################################################
#
# Scheduled Jobs
#

class JobMonitorScheduler:
    """Runs the sync engine and the performance analyzer on fixed intervals, never overlapping."""

    def __init__(
        self,
        settings: Optional[JobMonitorSettings] = None,
        engine: Optional[SyncEngine] = None,
        analyzer: Optional[PerformanceAnalyzer] = None,
    ):
        self.settings = settings or get_settings()
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._engine = engine
        self._analyzer = analyzer
        self._started = False

    @property
    def engine(self) -> SyncEngine:
        if self._engine is None:
            self._engine = SyncEngine(settings=self.settings)
        return self._engine

    @property
    def analyzer(self) -> PerformanceAnalyzer:
        if self._analyzer is None:
            self._analyzer = PerformanceAnalyzer(settings=self.settings)
        return self._analyzer

    async def start(self):
        """Start the scheduler and register the enabled jobs"""
        if self._started and self.scheduler and self.scheduler.running:
            logger.warning("Job monitor scheduler already started")
            return

        self.scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        if self.settings.SYNC_ENABLED:
            self._register_metrics_sync()
        if self.settings.ANALYZE_ENABLED:
            self._register_performance_analysis()

        if self.settings.NOTIFY_ENABLED:
            get_notification_service().attach()

        self.scheduler.start()
        self._started = True
        logger.info("Job monitor scheduler started")

    async def stop(self):
        """Stop the scheduler"""
        if self.scheduler and self.scheduler.running:
            try:
                self.scheduler.shutdown(wait=True)
            except Exception as e:
                logger.debug(f"Ignoring scheduler shutdown error: {e}")
        get_notification_service().detach()
        self.scheduler = None
        self._started = False
        logger.info("Job monitor scheduler stopped")

    def _register_metrics_sync(self):
        """Register the Redis -> database sync job"""
        self.scheduler.add_job(
            self._run_metrics_sync,
            trigger=IntervalTrigger(minutes=self.settings.SYNC_INTERVAL_MINUTES),
            id='job_monitor_sync',
            name='Sync job monitor metrics',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.debug(f"Registered metrics sync job (every {self.settings.SYNC_INTERVAL_MINUTES} minutes)")

    def _register_performance_analysis(self):
        """Register the anomaly detection job"""
        self.scheduler.add_job(
            self._run_performance_analysis,
            trigger=IntervalTrigger(minutes=self.settings.ANALYSIS_INTERVAL_MINUTES),
            id='job_monitor_analysis',
            name='Analyze command performance',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.debug(f"Registered performance analysis job (every {self.settings.ANALYSIS_INTERVAL_MINUTES} minutes)")

    async def _run_metrics_sync(self):
        """Run one sync off the event loop"""
        try:
            report = await asyncio.to_thread(self.engine.run_sync, SyncOptions())
        except Exception as e:
            logger.error(f"Job monitor sync failed: {e}")
            return None
        if not report.ok:
            logger.error(f"Job monitor sync reported a fatal error: {report.fatal_error}")
        return report

    async def _run_performance_analysis(self):
        """Run one analysis pass off the event loop"""
        try:
            report = await asyncio.to_thread(self.analyzer.analyze_all_commands)
        except Exception as e:
            logger.error(f"Job monitor analysis failed: {e}")
            return None
        if report.errors:
            logger.error(f"Job monitor analysis finished with errors for: {', '.join(report.errors)}")
        return report


_scheduler: Optional[JobMonitorScheduler] = None


async def get_job_monitor_scheduler() -> JobMonitorScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = JobMonitorScheduler()
    return _scheduler


async def start_job_monitor_scheduler() -> JobMonitorScheduler:
    scheduler = await get_job_monitor_scheduler()
    await scheduler.start()
    return scheduler


async def stop_job_monitor_scheduler():
    global _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None
