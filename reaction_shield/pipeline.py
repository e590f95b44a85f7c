"""
Pipeline wiring - builds every service from Settings and handles submissions
"""
import logging
import time
from typing import Any, Dict, Optional
from pydantic import ValidationError

from reaction_shield.lib.config import Settings
from reaction_shield.lib.store import KVStore, PostgresStore, create_store
from reaction_shield.lib.kafka_client import MessageBroker
from reaction_shield.lib.metrics import MetricsExporter
from reaction_shield.models.validation import SessionData
from reaction_shield.models.submission import SubmissionPayload, SubmissionDecision
from reaction_shield.models.enums import ValidationAction, Verdict
from reaction_shield.services.statistics_service import OutlierDetector, BehaviorProfiler
from reaction_shield.services.security_service import SecurityMonitor
from reaction_shield.services.plausibility_service import PlausibilityValidator
from reaction_shield.services.penalty_service import PenaltyEscalator
from reaction_shield.services.rate_limit_service import RateLimiter
from reaction_shield.services.submission_service import SubmissionService

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = 'INFO'):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


class Pipeline:
    """End-to-end wiring of the anti-abuse services"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[KVStore] = None,
        broker: Optional[MessageBroker] = None,
        clock=time.time
    ):
        self.settings = settings or Settings.from_env()
        self.clock = clock
        self.store = store or create_store(self.settings)
        if broker is None and self.settings.kafka_enabled:
            broker = MessageBroker.from_settings(self.settings)
        self.broker = broker

        self.monitor = SecurityMonitor(self.store, broker=self.broker, clock=clock)
        self.penalties = PenaltyEscalator(self.store, clock=clock)
        self.rate_limiter = RateLimiter(
            self.store,
            penalties=self.penalties,
            monitor=self.monitor,
            fail_open=self.settings.rate_limit_fail_open,
            clock=clock,
        )
        self.validator = PlausibilityValidator(self.store, monitor=self.monitor, clock=clock)
        self.submissions = SubmissionService(
            self.store,
            rate_limiter=self.rate_limiter,
            validator=self.validator,
            detector=OutlierDetector(clock=clock),
            profiler=BehaviorProfiler(),
            monitor=self.monitor,
            clock=clock,
        )

        self.metrics = MetricsExporter(port=self.settings.metrics_port)
        if self.settings.metrics_enabled:
            self.metrics.start()
        logger.info(f"Pipeline initialized (store={self.settings.store_backend}, kafka={self.broker is not None})")

    def handle_submission(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Evaluate one score submission given as a plain dict (e.g. a decoded request body).
        Returns the decision as JSON-compatible data; a malformed payload is a reject.
        """
        start_time = time.perf_counter()
        try:
            submission = SubmissionPayload.model_validate(payload)
        except ValidationError as e:
            decision = self._malformed_payload(payload, e)
        else:
            decision = self.submissions.evaluate_submission(
                user_id=submission.user_id,
                reaction_time=submission.reaction_time,
                session_data=submission.session or SessionData(user_id=submission.user_id),
                device_capabilities=submission.device,
                game_start_time=submission.game_start_time,
                ip_address=submission.ip_address,
                whitelist_level=submission.whitelist_level,
                contextual_factors=submission.context,
            )

        latency_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(f"Submission for {decision.user_id} handled in {latency_ms:.2f}ms")
        return decision.model_dump(mode="json")

    def _malformed_payload(self, payload: Any, error: ValidationError) -> SubmissionDecision:
        user_id = payload.get("user_id") if isinstance(payload, dict) else None
        reasons = [
            f"Invalid {'.'.join(str(part) for part in err['loc']) or 'payload'}: {err['msg']}"
            for err in error.errors()
        ]
        logger.warning(f"Rejected malformed submission payload (user_id={user_id!r}): {reasons}")
        MetricsExporter.record_submission('malformed')
        return SubmissionDecision(
            user_id=str(user_id) if user_id is not None else "",
            action=ValidationAction.REJECT,
            accepted=False,
            verdict=Verdict.FAIL,
            reasons=reasons,
            timestamp=int(self.clock() * 1000),
        )

    def shutdown(self):
        logger.info("Shutting down pipeline...")
        if isinstance(self.store, PostgresStore):
            self.store.close()
        if self.broker is not None:
            self.broker.close()


def build_pipeline(settings: Optional[Settings] = None) -> Pipeline:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    return Pipeline(settings)
