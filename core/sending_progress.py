# core/sending_progress.py
"""
Sending progress stored as JSON on the newsletter record

The blob is the only durable chunk state. It is read through
SendingProgress.from_json, which validates field types and raises
CorruptedProgressError rather than letting a malformed blob reach the
orchestration logic.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.errors import CorruptedProgressError


def utc_timestamp() -> str:
    return datetime.utcnow().isoformat() + 'Z'


@dataclass
class ChunkResultRecord:
    """Outcome of one completed chunk"""
    chunk_index: int
    sent_count: int
    failed_count: int
    completed_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'chunkIndex': self.chunk_index,
            'sentCount': self.sent_count,
            'failedCount': self.failed_count,
            'completedAt': self.completed_at,
        }


@dataclass
class RetryStageResult:
    """Outcome of one retry submission"""
    stage: int
    chunk_index: int
    sent_count: int
    failed_count: int
    completed_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stage': self.stage,
            'chunkIndex': self.chunk_index,
            'sentCount': self.sent_count,
            'failedCount': self.failed_count,
            'completedAt': self.completed_at,
        }


# JSON key -> (attribute, expected type, default factory)
_FIELDS = {
    'totalSent': ('total_sent', int, lambda: 0),
    'totalFailed': ('total_failed', int, lambda: 0),
    'completedChunks': ('completed_chunks', int, lambda: 0),
    'totalChunks': ('total_chunks', int, lambda: 0),
    'chunkSize': ('chunk_size', int, lambda: 0),
    'retryInProgress': ('retry_in_progress', bool, lambda: False),
    'failedEmails': ('failed_emails', list, list),
    'currentRetryStage': ('current_retry_stage', int, lambda: 0),
    'retryChunkSizes': ('retry_chunk_sizes', list, list),
    'processedChunks': ('processed_chunks', list, list),
    'expectedChunks': ('expected_chunks', list, list),
    'finalFailedEmails': ('final_failed_emails', list, list),
    'lastChunkCompletedAt': ('last_chunk_completed_at', str, lambda: None),
    'retryStartedAt': ('retry_started_at', str, lambda: None),
    'retryCompletedAt': ('retry_completed_at', str, lambda: None),
}


@dataclass
class SendingProgress:
    """Typed view of the per-newsletter sending state"""
    chunk_results: List[ChunkResultRecord] = field(default_factory=list)
    total_sent: int = 0
    total_failed: int = 0
    completed_chunks: int = 0
    total_chunks: int = 0
    chunk_size: int = 0
    retry_in_progress: bool = False
    failed_emails: List[str] = field(default_factory=list)
    current_retry_stage: int = 0
    retry_chunk_sizes: List[int] = field(default_factory=list)
    retry_results: List[RetryStageResult] = field(default_factory=list)
    processed_chunks: List[str] = field(default_factory=list)
    expected_chunks: List[str] = field(default_factory=list)
    last_chunk_completed_at: Optional[str] = None
    retry_started_at: Optional[str] = None
    retry_completed_at: Optional[str] = None
    final_failed_emails: List[str] = field(default_factory=list)

    @classmethod
    def new(cls, total_chunks: int, chunk_size: int) -> 'SendingProgress':
        return cls(total_chunks=total_chunks, chunk_size=chunk_size)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> 'SendingProgress':
        """
        Parse and validate a persisted progress blob

        Args:
            raw: JSON text from the newsletter's settings column; empty means no progress yet

        Returns:
            SendingProgress

        Raises:
            CorruptedProgressError: malformed JSON or fields of the wrong type
        """
        if raw is None or not raw.strip():
            return cls()

        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CorruptedProgressError('Newsletter sending progress is not valid JSON', e)

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> 'SendingProgress':
        if not isinstance(data, dict):
            raise CorruptedProgressError('Newsletter sending progress must be an object')

        progress = cls()
        for key, (attr, expected, default) in _FIELDS.items():
            value = data.get(key)
            if value is None:
                setattr(progress, attr, default())
                continue
            # bool is a subclass of int; counters must not be booleans
            if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
                raise CorruptedProgressError(
                    f"Field '{key}' has invalid type {type(value).__name__}"
                )
            setattr(progress, attr, value)

        for key in ('failedEmails', 'processedChunks', 'expectedChunks', 'finalFailedEmails'):
            if not all(isinstance(item, str) for item in data.get(key) or []):
                raise CorruptedProgressError(f"Field '{key}' must contain strings")

        if not all(isinstance(size, int) and not isinstance(size, bool) and size > 0
                   for size in progress.retry_chunk_sizes):
            raise CorruptedProgressError("Field 'retryChunkSizes' must contain positive integers")

        try:
            progress.chunk_results = [
                ChunkResultRecord(
                    chunk_index=int(item['chunkIndex']),
                    sent_count=int(item['sentCount']),
                    failed_count=int(item['failedCount']),
                    completed_at=str(item.get('completedAt') or ''),
                )
                for item in data.get('chunkResults') or []
            ]
            progress.retry_results = [
                RetryStageResult(
                    stage=int(item['stage']),
                    chunk_index=int(item['chunkIndex']),
                    sent_count=int(item['sentCount']),
                    failed_count=int(item['failedCount']),
                    completed_at=str(item.get('completedAt') or ''),
                )
                for item in data.get('retryResults') or []
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptedProgressError('Chunk results have an invalid shape', e)

        return progress

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'chunkResults': [r.to_dict() for r in self.chunk_results],
            'retryResults': [r.to_dict() for r in self.retry_results],
        }
        for key, (attr, _expected, _default) in _FIELDS.items():
            data[key] = getattr(self, attr)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def chunk_result(self, chunk_index: int) -> Optional[ChunkResultRecord]:
        for record in self.chunk_results:
            if record.chunk_index == chunk_index:
                return record
        return None

    def completed_chunk_indexes(self) -> List[int]:
        return sorted({r.chunk_index for r in self.chunk_results})

    @property
    def retry_stage_count(self) -> int:
        return len(self.retry_chunk_sizes)

    def copy(self) -> 'SendingProgress':
        return SendingProgress.from_dict(self.to_dict())


def chunk_token(chunk_index: int, emails: List[str]) -> str:
    """Idempotency token for a chunk submission (order-independent)"""
    payload = f"chunk:{chunk_index}:" + ','.join(sorted(emails))
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def retry_token(stage: int, chunk_index: int, emails: List[str]) -> str:
    payload = f"retry:{stage}:{chunk_index}:" + ','.join(sorted(emails))
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()
