"""APScheduler를 이용해 집계/차트 갱신/정리 작업을 주기적으로 실행하는 스케줄러 모듈."""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .utils import elapsed_ms, get_timezone, utc_now

logger = logging.getLogger(__name__)

JOB_NAMES = ('aggregation', 'chartUpdate', 'dailyRecalc', 'cleanup', 'healthCheck')
PIPELINE_STAGES = ('aggregation', 'chartUpdate', 'all')

# 이 시간(초)을 넘긴 실행은 경고 로그
SLOW_RUN_SECONDS = {'aggregation': 30, 'chartUpdate': 60}

# 시작 직후 1회 실행 지연(초)
INITIAL_RUN_DELAYS = {'aggregation': 5, 'chartUpdate': 10}


def parse_cron(cron_expr: str, tz) -> CronTrigger:
    """"minute hour day month day_of_week" 형식의 cron 문자열을 CronTrigger로 변환한다."""
    parts = cron_expr.split()
    if len(parts) != 5:
        raise ValueError(
            f"Invalid cron expression: {cron_expr}. Expected format: 'minute hour day month day_of_week'"
        )
    minute, hour, day, month, day_of_week = parts
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
        timezone=tz,
    )


@dataclass
class JobState:
    """작업 하나의 상태. Idle → Running → Idle."""
    name: str
    running: bool = False
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_status: Optional[str] = None  # 'success' | 'failed'
    last_error: Optional[str] = None
    last_duration_ms: Optional[int] = None
    last_result: Any = None
    run_count: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def as_dict(self) -> dict:
        return {
            'running': self.running,
            'last_started_at': self.last_started_at,
            'last_finished_at': self.last_finished_at,
            'last_status': self.last_status,
            'last_error': self.last_error,
            'last_duration_ms': self.last_duration_ms,
            'last_result': self.last_result,
            'run_count': self.run_count,
        }


@dataclass
class SchedulerState:
    """
    스케줄러 실행 상태.

    여러 ChartScheduler 가 공유할 수 있지만 실제 BackgroundScheduler 는 start() 에
    성공한 owner 하나만 갖고, owner 만 중지할 수 있다.
    """
    jobs: Dict[str, JobState] = field(default_factory=lambda: {name: JobState(name) for name in JOB_NAMES})
    started: bool = False
    owner: Any = field(default=None, repr=False, compare=False)
    lifecycle_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    # aggregation 과 차트 빌드는 같은 일별 통계를 다루므로 서로 배타적으로 실행
    stats_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    stats_cutoff: Optional[datetime] = None  # 마지막으로 완료된 집계 구간의 끝


class ChartScheduler:
    """차트 파이프라인 작업 스케줄러."""

    def __init__(self, engine, state: Optional[SchedulerState] = None):
        """
        스케줄러를 초기화한다.

        Args:
            engine: ChartEngine (aggregator, builder, maintenance, alerts 사용)
            state: 공유할 상태 객체 (기본: 새로 생성)
        """
        self.engine = engine
        self.config = engine.config
        self.state = state or SchedulerState()
        self.tz = get_timezone(self.config.get('timezone', 'UTC'))
        self.scheduler: Optional[BackgroundScheduler] = None
        self._bodies: Dict[str, Callable[[], Any]] = {
            'aggregation': self._aggregation_job,
            'chartUpdate': self._chart_update_job,
            'dailyRecalc': self._daily_recalc_job,
            'cleanup': self._cleanup_job,
            'healthCheck': self._health_check_job,
        }

    def start(self) -> None:
        """스케줄러를 시작한다. 이미 시작된 경우 아무것도 하지 않는다."""
        with self.state.lifecycle_lock:
            if self.state.started:
                logger.info("스케줄러가 이미 실행 중입니다.")
                return

            schedule_config = self.config.get('schedule', {})
            if not schedule_config.get('enabled', True):
                logger.warning("Scheduler is disabled in config")
                return

            scheduler = BackgroundScheduler(timezone=self.tz)
            jobs_config = schedule_config.get('jobs', {})
            for name in JOB_NAMES:
                cron_expr = jobs_config.get(name)
                if not cron_expr:
                    logger.warning(f"No schedule configured for {name}, skipping")
                    continue
                scheduler.add_job(
                    self._scheduled_run,
                    trigger=parse_cron(cron_expr, self.tz),
                    args=[name],
                    id=name,
                    name=name,
                    replace_existing=True,
                    max_instances=1,
                    coalesce=True,
                )
                logger.info(f"{name} 작업이 cron='{cron_expr}'로 설정되었습니다.")

            if schedule_config.get('run_on_start', True):
                now = datetime.now(self.tz)
                for name, delay in INITIAL_RUN_DELAYS.items():
                    scheduler.add_job(
                        self._scheduled_run,
                        trigger='date',
                        run_date=now + timedelta(seconds=delay),
                        args=[name],
                        id=f"initial_{name}",
                        name=f"Initial {name}",
                        replace_existing=True,
                    )

            logger.info("스케줄러를 시작합니다...")
            scheduler.start()
            self.scheduler = scheduler
            self.state.owner = self
            self.state.started = True

    def stop(self) -> None:
        """새 실행을 막는다. 진행 중인 실행은 끝까지 수행된다. 이 인스턴스가 시작한 스케줄러만 중지한다."""
        with self.state.lifecycle_lock:
            if self.state.owner is not self:
                if self.state.started:
                    logger.warning("다른 인스턴스가 시작한 스케줄러는 중지할 수 없습니다.")
                return
            logger.info("스케줄러를 중지합니다...")
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            self.state.owner = None
            self.state.started = False

    def status(self) -> dict:
        """작업별 실행 상태와 다음 실행 시각."""
        jobs = {}
        for name, job in self.state.jobs.items():
            info = job.as_dict()
            scheduled = self.scheduler.get_job(name) if self.scheduler is not None else None
            info['next_run_time'] = getattr(scheduled, 'next_run_time', None)
            jobs[name] = info
        return {
            'started': self.state.started,
            'stats_cutoff': self.state.stats_cutoff,
            'jobs': jobs,
        }

    def trigger_job(self, name: str) -> Any:
        """
        작업을 즉시 동기 실행한다 (운영/테스트용).

        Raises:
            ValueError: 알 수 없는 작업 이름
            RuntimeError: 같은 작업이 이미 실행 중인 경우
            Exception: 작업 본문에서 발생한 오류 (기록/알림 후 재전파)
        """
        return self._run_job(name, manual=True)

    def trigger_pipeline_stage(self, stage: str) -> Any:
        """aggregation | chartUpdate | all 단계를 수동 실행하고 결과를 반환한다."""
        if stage not in PIPELINE_STAGES:
            raise ValueError(f"Invalid stage: {stage}. Use one of {list(PIPELINE_STAGES)}")
        if stage != 'all':
            return self.trigger_job(stage)
        return {
            'aggregation': self.trigger_job('aggregation'),
            'chartUpdate': self.trigger_job('chartUpdate'),
        }

    def _scheduled_run(self, name: str) -> None:
        logger.info(f"스케줄러에 의해 {name} 작업을 시작합니다...")
        self._run_job(name, manual=False)

    def _run_job(self, name: str, manual: bool) -> Any:
        body = self._bodies.get(name)
        if body is None:
            raise ValueError(f"Unknown job: {name}. Available: {list(JOB_NAMES)}")

        job = self.state.jobs[name]
        if not job.lock.acquire(blocking=False):
            if manual:
                raise RuntimeError(f"Job {name} is already running")
            logger.warning(f"Job {name} is still running, skipping this firing")
            return None

        started = time.monotonic()
        job.running = True
        job.last_started_at = utc_now()
        try:
            result = body()
            job.last_status = 'success'
            job.last_error = None
            job.last_result = result
            return result
        except Exception as e:
            job.last_status = 'failed'
            job.last_error = str(e)
            logger.error(f"{name} 작업 중 오류 발생: {e}", exc_info=True)
            self.engine.alerts.send(f"{name} job failed", str(e))
            if manual:
                raise
            return None
        finally:
            duration = elapsed_ms(started)
            job.running = False
            job.last_finished_at = utc_now()
            job.last_duration_ms = duration
            job.run_count += 1
            threshold = SLOW_RUN_SECONDS.get(name)
            if threshold and duration > threshold * 1000:
                logger.warning(f"Slow {name} run: {duration}ms (threshold {threshold}s)")
            job.lock.release()

    def _aggregation_job(self) -> dict:
        with self.state.stats_lock:
            window_end = utc_now()
            merged = self.engine.aggregator.aggregate(window_end=window_end)
            self.state.stats_cutoff = window_end
        logger.info(f"집계 완료: merged_groups={merged}")
        return {'merged_groups': merged, 'window_end': window_end}

    def _chart_update_job(self) -> dict:
        with self.state.stats_lock:
            result = self.engine.builder.update_all_charts()
            result['stats_cutoff'] = self.state.stats_cutoff
        logger.info(
            f"차트 갱신 완료: total={result['total_updated']}, countries={result['countries_updated']}"
        )
        return result

    def _daily_recalc_job(self) -> dict:
        with self.state.stats_lock:
            orphaned = self.engine.maintenance.prune_orphaned_snapshots()
            charts = self.engine.builder.update_all_charts()
        peak_updates = self.engine.maintenance.recompute_peak_positions()
        return {'orphaned_snapshots': orphaned, 'charts': charts, 'peak_updates': peak_updates}

    def _cleanup_job(self) -> dict:
        return self.engine.maintenance.cleanup()

    def _health_check_job(self) -> dict:
        report = self.engine.maintenance.health_check()
        if report['issues']:
            self.engine.alerts.send("Chart system health", "; ".join(report['issues']))
        return report
