"""Job payload encoding.

Payload format is JSON text: {"job": <type name>, "data": <model fields>}.
"""

import json
from typing import Optional

from pydantic import ValidationError

from jobqueue.errors import InvalidPayloadError
from jobqueue.jobs.base import Job
from jobqueue.jobs.registry import JobRegistry, default_registry


class JobSerializer:
    """Converts Job instances to persisted payloads and back."""

    def __init__(self, registry: Optional[JobRegistry] = None):
        self._registry = registry or default_registry

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    def job_type(self, job: Job) -> str:
        return self._registry.name_for(job)

    def serialize(self, job: Job) -> str:
        return json.dumps(
            {"job": self.job_type(job), "data": job.model_dump(mode="json")},
            separators=(",", ":"),
        )

    def deserialize(self, payload: str) -> Job:
        """Rebuild an executable job.

        Raises:
            InvalidPayloadError: Undecodable JSON, unknown job type, or data
                that no longer validates against the job class.
        """
        try:
            envelope = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise InvalidPayloadError(f"Payload is not valid JSON: {e}") from e

        if not isinstance(envelope, dict) or "job" not in envelope:
            raise InvalidPayloadError("Payload has no job type")

        try:
            job_cls = self._registry.resolve(envelope["job"])
        except KeyError as e:
            raise InvalidPayloadError(f"Unknown job type {envelope['job']!r}") from e

        try:
            return job_cls.model_validate(envelope.get("data") or {})
        except ValidationError as e:
            raise InvalidPayloadError(
                f"Payload data invalid for {envelope['job']}: {e.error_count()} error(s)"
            ) from e
