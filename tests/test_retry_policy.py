"""测试重试安排与调度抖动"""

from datetime import datetime, timedelta, timezone

import pytest

from monitoring_engine.models.monitoring import (
    Target, TargetState, CheckResult, ErrorKind, MonitorSettings
)
from monitoring_engine.services.retry_policy import (
    splitmix64, jitter_delay_seconds, retry_delay, decide_retry, eligible_at
)

NOW = datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)


def failed(kind):
    return CheckResult(ok=False, latency=1.0, error=kind.value, error_kind=kind)


class TestJitter:
    """测试确定性抖动"""

    def test_splitmix64_known_value(self):
        assert splitmix64(0) == 0xE220A8397B1DCDAF

    def test_jitter_deterministic_and_bounded(self):
        first = jitter_delay_seconds('api', 60, 20, 10)
        assert first == jitter_delay_seconds('api', 60, 20, 10)
        assert 0 <= first <= 10

    def test_jitter_capped_by_max_seconds(self):
        for target_id in ('a', 'b', 'c', 'd', 'e'):
            assert 0 <= jitter_delay_seconds(target_id, 3600, 20, 3) <= 3

    @pytest.mark.parametrize('interval, percent', [(60, 0), (0, 20), (4, 20)])
    def test_jitter_disabled(self, interval, percent):
        assert jitter_delay_seconds('api', interval, percent, 10) == 0

    def test_targets_spread(self):
        delays = {jitter_delay_seconds(f't{i}', 600, 50, 0) for i in range(20)}
        assert len(delays) > 1


class TestRetryDelay:
    """测试重试延迟"""

    def test_delay_within_jitter_window(self):
        delay = retry_delay('api', 1, 5)
        assert timedelta(seconds=5) <= delay <= timedelta(seconds=6)
        assert delay == retry_delay('api', 1, 5)

    def test_jitter_capped_at_two_seconds(self):
        assert retry_delay('api', 2, 60) <= timedelta(seconds=62)

    def test_non_positive_base_uses_default(self):
        assert retry_delay('api', 1, 0) >= timedelta(seconds=5)


class TestDecideRetry:
    """测试重试决策"""

    def setup_method(self):
        self.settings = MonitorSettings(default_retry_interval_seconds=5)
        self.target = Target(id='api', name='api', kind='http',
                             url='https://api.example.com', retries=2,
                             retry_interval_seconds=5)

    def test_schedules_on_retryable_error(self):
        decision = decide_retry(self.target, None, failed(ErrorKind.TIMEOUT), NOW, self.settings)
        assert decision.scheduled
        assert decision.attempt == 1
        assert decision.retry_at == NOW + retry_delay('api', 1, 5)

    def test_stops_after_retries_exhausted(self):
        previous = TargetState(target_id='api', status='down', retry_attempt=2)
        decision = decide_retry(self.target, previous, failed(ErrorKind.DNS), NOW, self.settings)
        assert not decision.scheduled
        assert decision.attempt == 0
        assert decision.retry_at is None

    def test_http_status_not_retried(self):
        decision = decide_retry(self.target, None, failed(ErrorKind.HTTP_STATUS), NOW,
                                self.settings)
        assert not decision.scheduled

    def test_success_clears_retry(self):
        previous = TargetState(target_id='api', status='down', retry_attempt=1,
                               retry_at=NOW)
        decision = decide_retry(self.target, previous, CheckResult(ok=True, latency=0.1),
                                NOW, self.settings)
        assert decision.retry_at is None

    def test_settings_default_interval(self):
        target = Target(id='api', name='api', kind='tcp', host='h', port=1, retries=1)
        settings = MonitorSettings(default_retry_interval_seconds=30)
        decision = decide_retry(target, None, failed(ErrorKind.CONNECTION_REFUSED), NOW, settings)
        assert decision.retry_at >= NOW + timedelta(seconds=30)


class TestEligibleAt:
    """测试下一次检查时间"""

    def setup_method(self):
        self.target = Target(id='db', name='db', kind='tcp', host='h', port=1,
                             interval_seconds=60)

    def test_never_checked(self):
        assert eligible_at(self.target, None, MonitorSettings()) is None

    def test_interval_without_jitter(self):
        state = TargetState(target_id='db', last_checked_at=NOW)
        assert eligible_at(self.target, state, MonitorSettings()) == NOW + timedelta(seconds=60)

    def test_retry_at_wins(self):
        state = TargetState(target_id='db', last_checked_at=NOW,
                            retry_at=NOW + timedelta(seconds=7))
        assert eligible_at(self.target, state, MonitorSettings()) == NOW + timedelta(seconds=7)
