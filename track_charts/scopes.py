"""차트 스코프(국가 코드), 차트 타입, limit 인자 정규화/검증 유틸리티."""

import re
from typing import Optional, Tuple

from .config import GLOBAL_SCOPE
from .models import CHART_TYPES

_COUNTRY_RE = re.compile(r'^[A-Z]{2}$')


def normalize_country(value: Optional[str]) -> str:
    """
    청취 이벤트의 국가 값을 스코프 키로 변환한다.

    처리 예시:
    - None / "" -> "GLOBAL"
    - "us" -> "US"
    - "global" -> "GLOBAL"
    - "USA" -> "GLOBAL" (2자리 ISO 코드가 아니면 위치 불명으로 취급)
    """
    if not value:
        return GLOBAL_SCOPE
    code = value.strip().upper()
    if code == GLOBAL_SCOPE or not _COUNTRY_RE.match(code):
        return GLOBAL_SCOPE
    return code


def normalize_scope(scope: Optional[str]) -> str:
    """
    조회/빌드 인자로 받은 스코프를 검증한다.

    Raises:
        ValueError: GLOBAL도 2자리 국가 코드도 아닌 경우
    """
    if scope is None:
        return GLOBAL_SCOPE
    code = str(scope).strip().upper()
    if code == GLOBAL_SCOPE:
        return code
    if not _COUNTRY_RE.match(code):
        raise ValueError(f"Invalid scope: {scope!r}. Use 'GLOBAL' or a 2-letter country code")
    return code


def normalize_chart_scope(chart_type: str, scope: Optional[str] = None) -> Tuple[str, str]:
    """
    (chart_type, scope) 조합을 검증해 정규화된 튜플로 반환한다.

    - global 차트는 항상 GLOBAL 스코프
    - country 차트는 2자리 국가 코드 필수
    """
    chart_type = (chart_type or "").strip().lower()
    if chart_type not in CHART_TYPES:
        raise ValueError(f"Unsupported chart type: {chart_type!r}. Supported: {list(CHART_TYPES)}")

    if chart_type == "global":
        if scope is not None and normalize_scope(scope) != GLOBAL_SCOPE:
            raise ValueError("Global chart only supports the GLOBAL scope")
        return chart_type, GLOBAL_SCOPE

    code = normalize_scope(scope)
    if code == GLOBAL_SCOPE:
        raise ValueError("Country chart requires a 2-letter country code")
    return chart_type, code


def chart_type_for_scope(scope: str) -> str:
    """스코프로부터 차트 타입을 결정한다."""
    return "global" if scope == GLOBAL_SCOPE else "country"


def position_key(chart_type: str, scope: str) -> str:
    """카탈로그의 현재/최고 순위 딕셔너리 키 ('global' 또는 국가 코드)."""
    return "global" if chart_type == "global" else scope


def validate_limit(value, maximum: int, name: str = "limit") -> int:
    """1..maximum 범위의 정수인지 검증한다."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if number < 1 or number > maximum:
        raise ValueError(f"{name} must be between 1 and {maximum}, got {number}")
    return number
