"""Unit tests for the clustering scheduler."""
import threading
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

from conftest import FORM_ID, OTHER_FORM_ID, make_analysis
from src.models.errors import InvalidScheduleError, PersistenceError
from src.models.schemas import ClusteringResult, utc_now
from src.pipelines.scheduler import (
    ClusteringScheduler,
    CronTimer,
    describe_cron_expression,
    parse_cron_expression,
)

THIRD_FORM_ID = "507f1f77bcf86cd799439033"


@pytest.fixture
def mock_pipeline():
    pipeline = Mock()
    pipeline.run.side_effect = lambda form_id: ClusteringResult(form_id=form_id, total_insights=4)
    return pipeline


@pytest.fixture
def scheduler(mock_config, mock_store, mock_pipeline):
    mock_store.find_form_ids_with_feedback_since.return_value = []
    mock_store.count_insights_for_form.return_value = 5
    return ClusteringScheduler(mock_config, pipeline=mock_pipeline, store=mock_store)


class TestCronExpressions:
    """Test cron parsing and descriptions."""

    @pytest.mark.parametrize("expression,description", [
        ("0 * * * *", "Every hour"),
        ("*/30 * * * *", "Every 30 minutes"),
        ("0 2 * * *", "Daily at 2 AM"),
        ("15 3 * * 1", "Custom: 15 3 * * 1"),
    ])
    def test_describe(self, expression, description):
        assert describe_cron_expression(expression) == description

    @pytest.mark.parametrize("expression", ["not a cron", "* * *", "abc * * * *", "", None])
    def test_invalid_expression(self, expression):
        with pytest.raises(InvalidScheduleError):
            parse_cron_expression(expression)

    def test_next_fire_time_hourly(self):
        now = datetime(2024, 1, 1, 10, 15, tzinfo=timezone.utc)
        schedule = parse_cron_expression("0 * * * *", nowfun=lambda: now)

        timer = CronTimer(schedule, Mock(), nowfun=lambda: now)
        next_run = timer.next_fire_time()

        assert next_run > now
        assert next_run - now <= timedelta(hours=1)
        assert next_run.minute == 0


class TestCronTimer:
    """Test the re-arming timer."""

    @patch('src.pipelines.scheduler.threading.Timer')
    def test_start_arms_timer(self, mock_timer):
        timer = CronTimer(parse_cron_expression("0 * * * *"), Mock())

        timer.start()

        assert timer.active
        assert timer.next_run is not None
        mock_timer.return_value.start.assert_called_once()

    @patch('src.pipelines.scheduler.threading.Timer')
    def test_fire_rearms_and_calls_back(self, mock_timer):
        callback = Mock()
        timer = CronTimer(parse_cron_expression("0 * * * *"), callback)
        timer.start()

        timer._fire()

        callback.assert_called_once()
        assert mock_timer.call_count == 2

    @patch('src.pipelines.scheduler.threading.Timer')
    def test_stop_cancels(self, mock_timer):
        callback = Mock()
        timer = CronTimer(parse_cron_expression("0 * * * *"), callback)
        timer.start()

        timer.stop()
        timer._fire()

        mock_timer.return_value.cancel.assert_called_once()
        callback.assert_not_called()
        assert timer.next_run is None


class TestSchedulerLifecycle:
    """Test start, stop and status."""

    def test_initial_status(self, scheduler):
        status = scheduler.get_status()

        assert status.is_running == "stopped"
        assert status.enabled is False
        assert status.next_run is None
        assert status.cron_expression == "0 * * * *"
        assert status.description == "Every hour"
        assert status.run_count == 0

    @patch('src.pipelines.scheduler.threading.Timer')
    def test_start_and_stop(self, mock_timer, scheduler):
        scheduler.start()
        status = scheduler.get_status()

        assert status.is_running == "idle"
        assert status.enabled is True
        assert status.next_run is not None
        assert status.next_run > utc_now() - timedelta(seconds=1)

        scheduler.stop()
        status = scheduler.get_status()

        assert status.is_running == "stopped"
        assert status.next_run is None

    @patch('src.pipelines.scheduler.threading.Timer')
    def test_start_twice_registers_one_timer(self, mock_timer, scheduler):
        scheduler.start()
        scheduler.start()

        assert mock_timer.call_count == 1
        scheduler.stop()

    def test_stop_when_stopped(self, scheduler):
        scheduler.stop()
        scheduler.stop()

        assert scheduler.get_status().is_running == "stopped"

    @patch('src.pipelines.scheduler.threading.Timer')
    def test_restart(self, mock_timer, scheduler):
        scheduler.start()
        scheduler.restart()

        assert scheduler.enabled is True
        assert mock_timer.call_count == 2
        scheduler.stop()

    def test_invalid_cron_on_start(self, mock_config, mock_store, mock_pipeline):
        mock_config.insight_clustering_timer = "every hour"
        scheduler = ClusteringScheduler(mock_config, pipeline=mock_pipeline, store=mock_store)

        with pytest.raises(InvalidScheduleError):
            scheduler.start()

        assert scheduler.enabled is False
        assert scheduler.get_status().is_running == "stopped"


class TestScheduledClustering:
    """Test run_scheduled_clustering."""

    def test_no_active_forms(self, scheduler, mock_pipeline):
        summary = scheduler.run_scheduled_clustering()

        assert summary.total_forms == 0
        assert summary.successful == 0
        mock_pipeline.run.assert_not_called()
        assert scheduler.run_count == 1

    def test_active_window(self, scheduler, mock_store):
        before = utc_now()

        scheduler.run_scheduled_clustering()

        since = mock_store.find_form_ids_with_feedback_since.call_args.args[0]
        assert before - timedelta(hours=24, seconds=5) <= since <= utc_now() - timedelta(hours=24)

    def test_clusters_each_active_form(self, scheduler, mock_store, mock_pipeline):
        mock_store.find_form_ids_with_feedback_since.return_value = [FORM_ID, OTHER_FORM_ID]

        summary = scheduler.run_scheduled_clustering()

        assert summary.total_forms == 2
        assert summary.successful == 2
        assert sorted(call.args[0] for call in mock_pipeline.run.call_args_list) == [FORM_ID, OTHER_FORM_ID]

    def test_one_failing_form_does_not_affect_others(self, scheduler, mock_store, mock_pipeline):
        mock_store.find_form_ids_with_feedback_since.return_value = [FORM_ID, OTHER_FORM_ID, THIRD_FORM_ID]

        def run(form_id):
            if form_id == OTHER_FORM_ID:
                raise RuntimeError("embedding service down")
            return ClusteringResult(form_id=form_id, total_insights=4)

        mock_pipeline.run.side_effect = run

        summary = scheduler.run_scheduled_clustering()

        assert summary.total_forms == 3
        assert summary.successful == 2
        assert summary.failed == 1
        assert summary.errors == ["embedding service down"]
        assert mock_pipeline.run.call_count == 3

    def test_recently_clustered_form_is_skipped(self, scheduler, mock_store, mock_pipeline):
        mock_store.find_form_ids_with_feedback_since.return_value = [FORM_ID]
        mock_store.find_cluster_analyses_by_form.return_value = [
            make_analysis(created_at=utc_now() - timedelta(hours=2))
        ]

        summary = scheduler.run_scheduled_clustering()

        assert summary.skipped == 1
        assert summary.outcomes[0].reason == "recent_clustering"
        mock_pipeline.run.assert_not_called()
        mock_store.count_insights_for_form.assert_not_called()
        mock_store.find_cluster_analyses_by_form.assert_called_once_with(FORM_ID, limit=1)

    def test_stale_clustering_runs_again(self, scheduler, mock_store, mock_pipeline):
        mock_store.find_form_ids_with_feedback_since.return_value = [FORM_ID]
        mock_store.find_cluster_analyses_by_form.return_value = [
            make_analysis(created_at=utc_now() - timedelta(hours=7))
        ]

        summary = scheduler.run_scheduled_clustering()

        assert summary.successful == 1
        mock_store.count_insights_for_form.assert_called_once_with(FORM_ID)
        mock_pipeline.run.assert_called_once_with(FORM_ID)

    def test_insufficient_insights_skipped(self, scheduler, mock_store, mock_pipeline):
        mock_store.find_form_ids_with_feedback_since.return_value = [FORM_ID]
        mock_store.count_insights_for_form.return_value = 1

        summary = scheduler.run_scheduled_clustering()

        assert summary.skipped == 1
        assert summary.outcomes[0].reason == "insufficient_insights"
        mock_pipeline.run.assert_not_called()

    def test_active_form_lookup_failure(self, scheduler, mock_store, mock_pipeline):
        mock_store.find_form_ids_with_feedback_since.side_effect = PersistenceError("connection refused")

        summary = scheduler.run_scheduled_clustering()

        assert summary.total_forms == 0
        mock_pipeline.run.assert_not_called()
        assert scheduler.busy is False

    def test_busy_scheduler_skips_run(self, scheduler, mock_store, mock_pipeline):
        entered = threading.Event()
        release = threading.Event()

        def slow_lookup(since):
            entered.set()
            release.wait(5)
            return []

        mock_store.find_form_ids_with_feedback_since.side_effect = slow_lookup

        first = threading.Thread(target=scheduler.run_scheduled_clustering)
        first.start()
        assert entered.wait(5)

        assert scheduler.get_status().is_running == "processing"
        assert scheduler.run_scheduled_clustering() is None
        assert mock_store.find_form_ids_with_feedback_since.call_count == 1
        assert scheduler.run_count == 0

        release.set()
        first.join(5)

        assert scheduler.run_count == 1
        assert scheduler.busy is False

    def test_busy_flag_cleared_after_error(self, scheduler):
        with patch.object(scheduler, 'find_active_forms', side_effect=RuntimeError("unexpected")):
            summary = scheduler.run_scheduled_clustering()

        assert summary.errors == ["unexpected"]
        assert scheduler.busy is False
        assert scheduler.run_scheduled_clustering() is not None
        assert scheduler.run_count == 2
