"""
Kafka publisher for security alerts
"""
import json
import logging
from typing import Dict, Any, Optional
from kafka import KafkaProducer
from kafka.errors import KafkaError

from reaction_shield.lib.config import Settings

logger = logging.getLogger(__name__)


class MessageBroker:
    """Kafka producer wrapper"""

    def __init__(
        self,
        bootstrap_servers: str = 'localhost:9092',
        alert_topic: str = 'security-alerts',
        max_block_ms: int = 500
    ):
        self.bootstrap_servers = bootstrap_servers
        self.alert_topic = alert_topic
        self.max_block_ms = max_block_ms
        self.producer = None
        self._initialize_producer()

    @classmethod
    def from_settings(cls, settings: Settings) -> "MessageBroker":
        return cls(settings.kafka_bootstrap_servers, settings.security_alert_topic, settings.kafka_max_block_ms)

    def _initialize_producer(self):
        """Initialize Kafka producer"""
        try:
            self.producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=lambda v: json.dumps(v).encode('utf-8'),
                key_serializer=lambda k: k.encode('utf-8') if k else None,
                acks='all',
                retries=3,
                max_in_flight_requests_per_connection=1,
                max_block_ms=self.max_block_ms
            )
            logger.info(f"Kafka producer initialized: {self.bootstrap_servers}")
        except KafkaError as e:
            logger.error(f"Failed to initialize Kafka producer: {e}")
            raise

    def publish(self, topic: str, message: Dict[str, Any], key: Optional[str] = None) -> bool:
        """
        Queue message for topic without waiting for the broker.
        Delivery failures are logged from the producer's I/O thread; close() flushes.
        """
        try:
            future = self.producer.send(
                topic,
                value=message,
                key=key
            )
            future.add_callback(self._on_send_success, topic)
            future.add_errback(self._on_send_error, topic)
            return True
        except KafkaError as e:
            logger.error(f"Failed to send message to {topic}: {e}")
            return False

    @staticmethod
    def _on_send_success(topic: str, record_metadata):
        logger.debug(f"Message sent to {topic} partition {record_metadata.partition} offset {record_metadata.offset}")

    @staticmethod
    def _on_send_error(topic: str, error: Exception):
        logger.error(f"Failed to deliver message to {topic}: {error}")

    def publish_alert(self, alert: Dict[str, Any]) -> bool:
        """Publish a generated security alert"""
        return self.publish(self.alert_topic, alert, key=alert.get('type'))

    def publish_critical_event(self, event: Dict[str, Any]) -> bool:
        """Publish a critical security event, keyed by user"""
        return self.publish(self.alert_topic, {'kind': 'critical_event', 'event': event}, key=event.get('user_id'))

    def close(self):
        """Close producer"""
        if self.producer:
            self.producer.flush()
            self.producer.close()
        logger.info("Kafka connections closed")
