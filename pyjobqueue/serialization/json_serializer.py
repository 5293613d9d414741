# pyjobqueue/serialization/json_serializer.py
import json
import logging
from typing import Any, Dict

from pyjobqueue.serialization.base import BaseSerializer
from pyjobqueue.common.job import JobMetadata

logger = logging.getLogger(__name__)


class JsonSerializer(BaseSerializer):
    def serialize_payload(self, payload: Any) -> str:
        if payload is None:
            return ""
        if isinstance(payload, str):
            return payload
        if isinstance(payload, (bytes, bytearray)):
            return bytes(payload).decode("utf-8")
        return json.dumps(payload, default=str)

    def deserialize_payload(self, payload_str: str) -> Dict[str, Any]:
        # Handlers always receive a mapping; non-JSON payloads are wrapped.
        if not payload_str:
            return {}
        try:
            data = json.loads(payload_str)
        except (TypeError, json.JSONDecodeError):
            return {"raw": payload_str}
        if not isinstance(data, dict):
            return {"raw": data}
        return data

    def serialize_output(self, output: Any) -> str:
        return json.dumps(output, default=str)

    def serialize_metadata(self, metadata: JobMetadata) -> str:
        return json.dumps(metadata.to_dict(), default=str)

    def deserialize_metadata(self, data_str: str) -> JobMetadata:
        if not data_str:
            return JobMetadata()
        try:
            return JobMetadata.from_dict(json.loads(data_str))
        except (TypeError, json.JSONDecodeError):
            logger.warning("Discarding unreadable job metadata", exc_info=True)
            return JobMetadata()
