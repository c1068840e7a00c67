import logging
import time
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..integrations.pms.errors import PmsError, describe_error
from ..integrations.pms.session import SessionManager
from ..models.integration import HealthCheckLog, HealthState, PmsIntegrationConfig
from ..schemas.integration import HealthCheckResult
from .audit import AuditService
from .sync_state import get_or_create_health_record

logger = logging.getLogger(__name__)

# every failed probe raises an operator alert at the severity of its state
ALERT_SEVERITY = {
    HealthState.DEGRADED: "warning",
    HealthState.DOWN: "critical",
}


def next_health_state(
    current: HealthState,
    consecutive_failures: int,
    ok: bool,
    down_threshold: int = 3,
) -> Tuple[HealthState, int]:
    """Apply one probe outcome. Returns ``(state, consecutive_failures)``.

    A success from any state goes straight to healthy. A failure degrades
    first and only reaches down after ``down_threshold`` failures in a row.
    """
    if ok:
        return HealthState.HEALTHY, 0
    failures = consecutive_failures + 1
    if failures >= down_threshold:
        return HealthState.DOWN, failures
    if current == HealthState.DOWN:
        return HealthState.DOWN, failures
    return HealthState.DEGRADED, failures


class HealthMonitor:
    def __init__(self, session_manager: Optional[SessionManager] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.session_manager = session_manager or SessionManager(self.settings)

    def _probe(self, config: PmsIntegrationConfig) -> Tuple[bool, str]:
        try:
            with self.session_manager.open(config) as session:
                page = session.call(lambda client: client.list_providers(per_page=1), description="health_probe")
        except PmsError as e:
            return False, describe_error(e)
        return True, f"OK ({len(page.data)} provider(s) visible)"

    def check(self, db: Session, config: PmsIntegrationConfig) -> HealthCheckResult:
        record = get_or_create_health_record(db, config.id)
        previous = HealthState(record.status)

        t0 = time.monotonic()
        ok, message = self._probe(config)
        response_ms = int((time.monotonic() - t0) * 1000)

        if ok and response_ms > self.settings.health_latency_warning_ms:
            message = f"{message}; elevated latency {response_ms}ms"
            logger.warning(
                "[pms_health] config_id=%s slow probe response_ms=%d threshold_ms=%d",
                config.id, response_ms, self.settings.health_latency_warning_ms,
            )

        state, failures = next_health_state(
            previous, record.consecutive_failures, ok, self.settings.health_down_threshold
        )
        now = datetime.utcnow()
        record.status = state.value
        record.consecutive_failures = failures
        record.last_checked_at = now
        record.last_response_ms = response_ms
        record.last_error = None if ok else message

        db.add(HealthCheckLog(
            config_id=config.id,
            status=state.value,
            ok=ok,
            response_ms=response_ms,
            message=message,
            checked_at=now,
        ))

        severity = ALERT_SEVERITY.get(state)
        if severity is not None:
            AuditService.log_health_alert(db, config.practice_id, config.id, severity, state.value, message)
        db.commit()

        log = logger.info if state == previous else logger.warning
        log(
            "[pms_health] config_id=%s %s -> %s failures=%d response_ms=%d message=%s",
            config.id, previous.value, state.value, failures, response_ms, message,
        )
        return HealthCheckResult(
            config_id=config.id,
            ok=ok,
            previous_status=previous.value,
            status=state.value,
            consecutive_failures=failures,
            response_ms=response_ms,
            message=message,
            alert_severity=severity,
            checked_at=now,
        )
