"""
Prometheus metrics exporter
"""
import logging
from prometheus_client import Counter, Histogram, Gauge, start_http_server
from functools import wraps
import time

logger = logging.getLogger(__name__)

# Counters
validations = Counter('reaction_shield_validations_total', 'Total reaction times validated', ['action'])
validation_flags = Counter('reaction_shield_validation_flags_total', 'Validation flags raised', ['flag'])
rate_limit_decisions = Counter('reaction_shield_rate_limit_decisions_total', 'Rate-limit decisions', ['scope', 'outcome'])
penalties_applied = Counter('reaction_shield_penalties_applied_total', 'Penalties applied', ['level'])
security_events = Counter('reaction_shield_security_events_total', 'Security events logged', ['type', 'severity'])
alerts_raised = Counter('reaction_shield_alerts_total', 'Security alerts generated', ['type'])
store_errors = Counter('reaction_shield_store_errors_total', 'Store failures by operation', ['operation'])
submissions = Counter('reaction_shield_submissions_total', 'Score submissions evaluated', ['outcome'])

# Histograms (for latency)
validation_latency = Histogram('reaction_shield_validation_duration_seconds', 'Validation duration', ['stage'])

# Gauges (for current state)
events_last_hour = Gauge('reaction_shield_security_events_last_hour', 'Security events in the rolling hour window')


class MetricsExporter:
    """Prometheus metrics exporter"""

    def __init__(self, port: int = 8000):
        self.port = port
        self.server_started = False

    def start(self):
        """Start Prometheus HTTP server"""
        if not self.server_started:
            start_http_server(self.port)
            self.server_started = True
            logger.info(f"Prometheus metrics server started on port {self.port}")

    @staticmethod
    def track_duration(stage: str):
        """Decorator to track processing time"""
        def decorator(func):
            @wraps(func)
            def wrapper(*args, **kwargs):
                start_time = time.perf_counter()
                try:
                    return func(*args, **kwargs)
                finally:
                    validation_latency.labels(stage=stage).observe(time.perf_counter() - start_time)
            return wrapper
        return decorator

    @staticmethod
    def record_validation(action: str, flags):
        """Record a plausibility decision and its flags"""
        validations.labels(action=action).inc()
        for flag in flags:
            validation_flags.labels(flag=str(getattr(flag, 'value', flag))).inc()

    @staticmethod
    def record_rate_limit(scope: str, allowed: bool):
        rate_limit_decisions.labels(scope=scope, outcome='allowed' if allowed else 'denied').inc()

    @staticmethod
    def record_penalty(level: int):
        penalties_applied.labels(level=str(level)).inc()

    @staticmethod
    def record_security_event(event_type: str, severity: str):
        security_events.labels(type=event_type, severity=severity).inc()

    @staticmethod
    def record_alert(alert_type: str):
        alerts_raised.labels(type=alert_type).inc()

    @staticmethod
    def record_store_error(operation: str):
        """Record a store failure that was degraded to fail-open"""
        store_errors.labels(operation=operation).inc()

    @staticmethod
    def record_submission(outcome: str):
        submissions.labels(outcome=outcome).inc()

    @staticmethod
    def update_events_last_hour(count: int):
        events_last_hour.set(count)
