"""
Periodic insight clustering across all forms with recent feedback.

A cron expression (INSIGHT_CLUSTERING_TIMER, hourly by default) drives a timer that
clusters every active form concurrently. At most one run is in flight at a time;
forms clustered in the last few hours or with too few insights are skipped.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Callable, List, Optional
import argparse
import logging
import threading
import time

from celery.schedules import crontab

from src.config.settings import Settings
from src.data_access.feedback_store import FeedbackStore
from src.models.errors import InvalidScheduleError
from src.models.schemas import (
    FormRunOutcome,
    RunStatus,
    SchedulerRunSummary,
    SchedulerState,
    SchedulerStatus,
    utc_now,
)
from src.pipelines.cluster_insights import InsightClusteringPipeline

logger = logging.getLogger(__name__)


CRON_DESCRIPTIONS = {
    "0 * * * *": "Every hour",
    "*/30 * * * *": "Every 30 minutes",
    "0 */2 * * *": "Every 2 hours",
    "0 */6 * * *": "Every 6 hours",
    "0 8,20 * * *": "Twice daily (8 AM and 8 PM)",
    "0 2 * * *": "Daily at 2 AM",
}


def describe_cron_expression(expression: str) -> str:
    return CRON_DESCRIPTIONS.get(expression, f"Custom: {expression}")


def parse_cron_expression(expression: str, nowfun: Optional[Callable[[], datetime]] = None) -> crontab:
    """
    Parse a five-field cron expression (minute hour day-of-month month day-of-week).

    Raises:
        InvalidScheduleError: If the expression cannot be parsed
    """
    try:
        minute, hour, day_of_month, month_of_year, day_of_week = (expression or "").strip().split()
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
            nowfun=nowfun,
        )
    except Exception as e:
        raise InvalidScheduleError(f"Invalid cron expression for clustering timer: {expression!r} ({e})") from e


class CronTimer:
    """
    Re-arming timer that calls ``callback`` at every fire time of a crontab schedule.
    Created inert; ``start`` arms it and ``stop`` cancels it.
    """

    def __init__(self, schedule: crontab, callback: Callable[[], None], nowfun: Callable[[], datetime] = utc_now):
        self.schedule = schedule
        self.callback = callback
        self.nowfun = nowfun
        self.next_run: Optional[datetime] = None
        self._timer: Optional[threading.Timer] = None
        self._active = False
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def next_fire_time(self) -> datetime:
        now = self.nowfun()
        return now + self.schedule.remaining_estimate(now)

    def start(self) -> None:
        with self._lock:
            self._active = True
            self._arm()

    def stop(self) -> None:
        with self._lock:
            self._active = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self.next_run = None

    def _arm(self) -> None:
        self.next_run = self.next_fire_time()
        delay = max(0.0, (self.next_run - self.nowfun()).total_seconds())
        self._timer = threading.Timer(delay, self._fire)
        self._timer.daemon = True
        self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            if not self._active:
                return
            # Re-arm first so a long run does not shift the schedule
            self._arm()
        self.callback()


class ClusteringScheduler:
    """
    Runs the insight clustering pipeline for all active forms on a cron schedule.

    ``enabled`` means the timer is registered; ``busy`` means a run is in flight.
    Together they give the reported state: stopped, idle or processing.
    """

    def __init__(
        self,
        config: Settings,
        pipeline: Optional[InsightClusteringPipeline] = None,
        store: Optional[FeedbackStore] = None,
    ):
        self.config = config
        self.store = store or (pipeline.store if pipeline is not None else FeedbackStore(config))
        self.pipeline = pipeline or InsightClusteringPipeline(config, store=self.store)
        self.cron_expression = config.insight_clustering_timer
        self.enabled = False
        self.busy = False
        self.run_count = 0
        self.last_summary: Optional[SchedulerRunSummary] = None
        self._timer: Optional[CronTimer] = None
        self._run_lock = threading.Lock()

    @property
    def state(self) -> SchedulerState:
        if self.busy:
            return SchedulerState.PROCESSING
        if self.enabled:
            return SchedulerState.IDLE
        return SchedulerState.STOPPED

    def start(self) -> None:
        """
        Register and activate the clustering timer.

        Raises:
            InvalidScheduleError: If the configured cron expression is invalid
        """
        if self.enabled:
            logger.warning("Clustering scheduler already started")
            return

        try:
            schedule = parse_cron_expression(self.cron_expression, nowfun=utc_now)
        except InvalidScheduleError:
            logger.error(f"Invalid cron expression for clustering timer: {self.cron_expression!r}")
            raise

        logger.info(
            f"Starting clustering scheduler with cron expression '{self.cron_expression}' "
            f"({describe_cron_expression(self.cron_expression)})"
        )

        self._timer = CronTimer(schedule, self._on_timer)
        self._timer.start()
        self.enabled = True

        logger.info(f"Clustering scheduler started, next run at {self._timer.next_run}")

    def stop(self) -> None:
        """Deactivate and release the timer. A no-op when already stopped."""
        if self._timer is not None:
            self._timer.stop()
            self._timer = None
        if self.enabled:
            logger.info("Clustering scheduler stopped")
        self.enabled = False

    def restart(self) -> None:
        self.stop()
        self.start()

    def get_status(self) -> SchedulerStatus:
        next_run = self._timer.next_run if (self.enabled and self._timer is not None) else None
        return SchedulerStatus(
            is_running=self.state,
            enabled=self.enabled,
            busy=self.busy,
            cron_expression=self.cron_expression,
            description=describe_cron_expression(self.cron_expression),
            next_run=next_run,
            run_count=self.run_count,
        )

    def _on_timer(self) -> None:
        try:
            self.run_scheduled_clustering()
        except Exception as e:
            logger.error(f"Unhandled error in scheduled clustering: {e}")

    def run_scheduled_clustering(self) -> Optional[SchedulerRunSummary]:
        """
        Cluster all active forms once.

        Returns:
            Run summary, or None if a run was already in progress
        """
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Clustering already in progress, skipping this run")
            return None

        self.busy = True
        started_at = utc_now()
        start_time = time.monotonic()
        summary = SchedulerRunSummary(started_at=started_at)

        try:
            logger.info("Starting scheduled clustering run")

            form_ids = self.find_active_forms()
            if not form_ids:
                logger.info("No active forms found for clustering")
            else:
                logger.info(f"Found {len(form_ids)} active forms for clustering: {form_ids}")
                summary.outcomes = self._cluster_forms(form_ids)

            summary.total_forms = len(form_ids)
            summary.successful = sum(1 for o in summary.outcomes if o.status == RunStatus.SUCCEEDED.value)
            summary.skipped = sum(1 for o in summary.outcomes if o.status == RunStatus.SKIPPED.value)
            summary.failed = sum(1 for o in summary.outcomes if o.status == RunStatus.FAILED.value)
            summary.errors = [o.error for o in summary.outcomes if o.error]
            summary.duration_seconds = time.monotonic() - start_time

            logger.info(
                f"Scheduled clustering completed in {summary.duration_seconds:.1f}s: "
                f"{summary.total_forms} forms, {summary.successful} successful, "
                f"{summary.skipped} skipped, {summary.failed} failed"
                + (f", errors: {summary.errors}" if summary.errors else "")
            )
        except Exception as e:
            summary.duration_seconds = time.monotonic() - start_time
            summary.errors.append(str(e))
            logger.error(f"Error during scheduled clustering after {summary.duration_seconds:.1f}s: {e}")
        finally:
            self.run_count += 1
            self.last_summary = summary
            self.busy = False
            self._run_lock.release()

        return summary

    def find_active_forms(self) -> List[str]:
        """Forms with at least one feedback submission in the active window."""
        since = utc_now() - timedelta(hours=self.config.active_form_window_hours)
        try:
            return self.store.find_form_ids_with_feedback_since(since)
        except Exception as e:
            logger.error(f"Error finding active forms: {e}")
            return []

    def _cluster_forms(self, form_ids: List[str]) -> List[FormRunOutcome]:
        """Cluster forms concurrently; one form's failure never affects the others."""
        outcomes = []

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            future_to_form = {
                executor.submit(self._cluster_form, form_id): form_id
                for form_id in form_ids
            }

            for future in as_completed(future_to_form):
                form_id = future_to_form[future]
                try:
                    outcomes.append(future.result())
                except Exception as e:
                    logger.error(f"Error clustering form insights for form {form_id}: {e}")
                    outcomes.append(FormRunOutcome(form_id=form_id, status=RunStatus.FAILED, error=str(e)))

        return outcomes

    def _cluster_form(self, form_id: str) -> FormRunOutcome:
        """Apply the freshness and sufficiency guards, then cluster one form."""
        logger.info(f"Processing scheduled clustering for form {form_id}")

        cooldown_start = utc_now() - timedelta(hours=self.config.clustering_cooldown_hours)
        latest = self.store.find_cluster_analyses_by_form(form_id, limit=1)
        if latest and latest[0].created_at >= cooldown_start:
            logger.info(f"Clustering recently performed for form {form_id} at {latest[0].created_at}, skipping")
            return FormRunOutcome(form_id=form_id, status=RunStatus.SKIPPED, reason="recent_clustering")

        insight_count = self.store.count_insights_for_form(form_id)
        if insight_count < self.config.min_insights_for_clustering:
            logger.info(f"Form {form_id} has insufficient insights for clustering (count={insight_count})")
            return FormRunOutcome(
                form_id=form_id,
                status=RunStatus.SKIPPED,
                reason="insufficient_insights",
                total_insights=insight_count,
            )

        result = self.pipeline.run(form_id)
        logger.info(
            f"Scheduled clustering completed for form {form_id}: "
            f"{len(result.clusters)} clusters, {result.total_insights} insights"
        )
        return FormRunOutcome(
            form_id=form_id,
            status=RunStatus.SUCCEEDED,
            clusters_found=len(result.clusters),
            total_insights=result.total_insights,
        )


def main():
    """Run the clustering scheduler, trigger one run, or show its status."""
    parser = argparse.ArgumentParser(description="Periodic insight clustering scheduler.")
    parser.add_argument(
        "command",
        choices=["serve", "trigger", "status"],
        help="serve: run on the cron schedule until interrupted; trigger: cluster all active forms once; status: print scheduler status.",
    )
    parser.add_argument("--cron", type=str, help="Override INSIGHT_CLUSTERING_TIMER.")
    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    config = Settings()
    if args.cron:
        config.insight_clustering_timer = args.cron

    scheduler = ClusteringScheduler(config)

    try:
        if args.command == "serve":
            scheduler.start()
            stop_event = threading.Event()
            try:
                while not stop_event.wait(60):
                    pass
            except KeyboardInterrupt:
                logger.info("Interrupted, shutting down")
            finally:
                scheduler.stop()
        elif args.command == "trigger":
            summary = scheduler.run_scheduled_clustering()
            print(summary.model_dump_json(indent=2) if summary else "Clustering already in progress")
        else:
            print(scheduler.get_status().model_dump_json(indent=2))
    finally:
        scheduler.store.close()


if __name__ == "__main__":
    main()
