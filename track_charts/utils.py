"""로깅, 재시도, 타임존/날짜 유틸리티 함수 모음."""

import logging
import os
import time
from datetime import date, datetime, timedelta
from functools import wraps
from pathlib import Path
from typing import Any, Callable, TypeVar, Union

import pytz

T = TypeVar('T')

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: Union[int, str, None] = None) -> None:
    """기본 로깅 설정을 수행한다. level이 없으면 LOG_LEVEL 환경변수를 따른다."""
    if level is None:
        level = os.getenv('LOG_LEVEL', 'INFO').upper()
    if isinstance(level, str):
        level = getattr(logging, level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def ensure_dir(path: Path) -> Path:
    """디렉토리가 없으면 생성하고 Path를 반환한다."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_timezone(name: str):
    """타임존 이름을 pytz 타임존 객체로 변환한다."""
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        raise ValueError(f"Unknown timezone: {name}")


def utc_now() -> datetime:
    """현재 UTC 시각을 tzinfo 없는(naive) datetime으로 반환한다. DB 저장 기준 시각."""
    return datetime.now(pytz.utc).replace(tzinfo=None)


def local_date(moment: datetime, tz) -> date:
    """naive UTC 시각을 지정 타임존의 달력 날짜로 변환한다."""
    if moment.tzinfo is None:
        moment = pytz.utc.localize(moment)
    return moment.astimezone(tz).date()


def date_str(day: date) -> str:
    """날짜를 'YYYY-MM-DD' 문자열로 반환한다."""
    return day.strftime('%Y-%m-%d')


def days_before(day: date, days: int) -> str:
    """day 기준 days일 전 날짜 문자열."""
    return date_str(day - timedelta(days=days))


def elapsed_ms(started: float) -> int:
    """time.monotonic() 기준 경과 시간(ms)."""
    return int((time.monotonic() - started) * 1000)


def retry(max_retries: int = 3, backoff_sec: float = 2.0, exceptions: tuple = (Exception,)):
    """지수 백오프를 적용해 함수를 재시도하는 데코레이터."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            last_exception = None
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        wait_time = backoff_sec * (2 ** attempt)
                        logger.warning(
                            f"Attempt {attempt + 1}/{max_retries} failed for {func.__name__}: {e}. "
                            f"Retrying in {wait_time:.1f}s..."
                        )
                        time.sleep(wait_time)
                    else:
                        logger.error(f"All {max_retries} attempts failed for {func.__name__}: {e}")
            raise last_exception
        return wrapper
    return decorator
