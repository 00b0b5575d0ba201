from __future__ import annotations

import json
import logging

from kafka import KafkaProducer

from media_pipeline.models.domain import JobTransition


class JobEventPublisher:
    """Publishes generation job status transitions to Kafka, keyed by job id.

    Sends are best effort: a broker failure is logged and never fails the
    job that produced the transition.
    """

    def __init__(self, bootstrap_servers: str, topic: str, logger: logging.Logger | None = None) -> None:
        if not bootstrap_servers:
            raise ValueError("bootstrap_servers is required")
        if not topic:
            raise ValueError("topic is required")
        self._topic = topic
        self._logger = logger or logging.getLogger(__name__)
        self._producer = KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            key_serializer=lambda key: key.encode("utf-8"),
            value_serializer=lambda payload: json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            linger_ms=5,
        )

    def publish_transition(self, transition: JobTransition) -> None:
        payload = {"event": "job.transition", **transition.model_dump(mode="json")}
        try:
            self._producer.send(self._topic, key=transition.job_id, value=payload)
        except Exception:
            self._logger.warning(
                "failed to publish job transition",
                extra={"job_id": transition.job_id, "topic": self._topic, "status": transition.status.value},
                exc_info=True,
            )
            return
        self._logger.debug(
            "job transition published",
            extra={
                "job_id": transition.job_id,
                "previous_status": transition.previous_status.value if transition.previous_status else None,
                "status": transition.status.value,
            },
        )

    def close(self) -> None:
        try:
            self._producer.flush()
            self._producer.close()
        except Exception:
            self._logger.debug("job event publisher close failed", exc_info=True)
