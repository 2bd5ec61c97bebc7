"""작업 실패/헬스 이상 알림 전송 (로그 + 선택적 웹훅)."""

import logging
from typing import Optional

import requests

from .utils import retry

logger = logging.getLogger(__name__)


class AlertSender:
    """관리자 알림. 항상 ERROR 로그를 남기고, 설정된 경우 웹훅으로도 전송한다."""

    def __init__(self, config: dict):
        alert_config = config.get('alerts', {})
        self.enabled = alert_config.get('enabled', False)
        self.webhook_url: Optional[str] = alert_config.get('webhook_url')
        self.timeout = alert_config.get('timeout_sec', 10)

    def send(self, subject: str, message: str) -> bool:
        """
        알림을 전송한다. 전송 실패는 호출한 작업으로 전파하지 않는다.

        Returns:
            웹훅 전송에 성공했으면 True
        """
        logger.error(f"[ALERT] {subject}: {message}")
        if not self.enabled or not self.webhook_url:
            return False

        try:
            self._post({'text': f"[{subject}] {message}"})
            return True
        except requests.RequestException as e:
            logger.warning(f"Failed to deliver alert '{subject}': {e}")
            return False

    @retry(max_retries=3, backoff_sec=1.0, exceptions=(requests.RequestException,))
    def _post(self, payload: dict) -> None:
        response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
