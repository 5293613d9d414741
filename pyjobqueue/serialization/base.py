# pyjobqueue/serialization/base.py
from abc import ABC, abstractmethod
from typing import Any, Dict

from pyjobqueue.common.job import JobMetadata


class BaseSerializer(ABC):
    @abstractmethod
    def serialize_payload(self, payload: Any) -> str: ...

    @abstractmethod
    def deserialize_payload(self, payload_str: str) -> Dict[str, Any]: ...

    @abstractmethod
    def serialize_output(self, output: Any) -> str: ...

    @abstractmethod
    def serialize_metadata(self, metadata: JobMetadata) -> str: ...

    @abstractmethod
    def deserialize_metadata(self, data_str: str) -> JobMetadata: ...
