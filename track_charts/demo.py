"""로컬 실행용 데모 트랙/청취 데이터 생성."""

import logging
import random
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .catalog import SqlTrackCatalog
from .db import ListenEvent
from .events import is_valid_listen
from .utils import utc_now

logger = logging.getLogger(__name__)

DEMO_COUNTRIES = ("US", "GB", "DE", "FR", "CA", "AU", "GLOBAL")
DEMO_GENRES = ("pop", "rock", "hip-hop", "electronic", "jazz")


def create_demo_data(
    engine,
    track_count: int = 10,
    days: int = 5,
    countries: Iterable[str] = DEMO_COUNTRIES,
    seed: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    데모 트랙과 최근 days 일간의 청취 이벤트를 만들고 집계/차트 갱신까지 수행한다.

    트랙 순번이 낮을수록, 최근 날짜일수록 청취 수가 많도록 생성한다.

    Returns:
        생성/처리 결과 요약 딕셔너리
    """
    if not isinstance(engine.catalog, SqlTrackCatalog):
        raise ValueError("Demo data can only be created with the SQL track catalog")
    if track_count < 1 or days < 1:
        raise ValueError("track_count and days must be >= 1")

    rng = random.Random(seed)
    now = now or utc_now()
    countries = list(countries)

    track_ids = []
    for index in range(track_count):
        track_id = f"demo-{index + 1:03d}"
        engine.catalog.upsert_track(
            track_id,
            name=f"Demo Track {index + 1}",
            duration=rng.randint(150, 300),
            artist_id=f"demo-artist-{index % 4 + 1}",
            artist_name=f"Demo Artist {index % 4 + 1}",
            genre=DEMO_GENRES[index % len(DEMO_GENRES)],
        )
        track_ids.append(track_id)

    tracks = engine.catalog.get_tracks(track_ids)
    events = []
    for day in range(days):
        for index, track_id in enumerate(track_ids):
            base_listens = max(1, 100 - index * 10 - day * 5)
            for country in countries:
                for _ in range(int(base_listens * rng.uniform(0.5, 1.0))):
                    duration = rng.randint(10, 150)
                    events.append(ListenEvent(
                        track_id=track_id,
                        user_id=None,
                        session_id=f"demo_session_{rng.getrandbits(40):010x}",
                        country=country,
                        listen_duration=duration,
                        is_valid=is_valid_listen(duration, tracks[track_id].duration),
                        timestamp=now - timedelta(days=day, minutes=rng.randint(1, 24 * 60 - 1)),
                    ))

    with engine.database.session() as session:
        session.add_all(events)
    logger.info(f"Created {len(events)} demo listen events for {len(track_ids)} tracks")

    merged = engine.aggregator.aggregate(window_start=now - timedelta(days=days + 1), window_end=now)
    charts = engine.builder.update_all_charts(now=now)
    return {
        'tracks': len(track_ids),
        'events': len(events),
        'merged_groups': merged,
        'charts': charts,
    }
