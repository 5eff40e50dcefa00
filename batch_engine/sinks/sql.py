"""
Upsert sink -- persists accepted records keyed by natural key.

A record whose stored amount, group and payload hash already match is left
untouched, so replaying a committed chunk changes nothing.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from batch_kernel.utils.hashing import hash_payload, json_safe
from batch_engine.models.batch import OutputRecordModel
from batch_engine.sinks.base import ChunkOutput


class RecordUpsertSink:
    """Transactional sink writing ``OutputRecordModel`` rows."""

    transactional = True

    def __init__(self, name: str = "output_records") -> None:
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def write(self, output: ChunkOutput, session: Session | None) -> None:
        if session is None:
            raise ValueError(f"{self._name} requires the chunk session")
        if not output.records:
            return

        keys = [record.key for record in output.records]
        existing = {
            row.natural_key: row
            for row in session.execute(
                select(OutputRecordModel).where(
                    OutputRecordModel.job_name == output.job_name,
                    OutputRecordModel.natural_key.in_(keys),
                )
            ).scalars()
        }

        for record in output.records:
            payload = json_safe(dict(record.payload))
            payload_hash = hash_payload(payload)
            group_key = None if record.group_key is None else str(json_safe(record.group_key))
            row = existing.get(record.key)
            if row is None:
                row = OutputRecordModel(
                    job_name=output.job_name,
                    natural_key=record.key,
                    group_key=group_key,
                    amount=record.amount,
                    payload=payload,
                    payload_hash=payload_hash,
                )
                session.add(row)
                existing[record.key] = row
                continue
            if (
                row.payload_hash == payload_hash
                and row.amount == record.amount
                and row.group_key == group_key
            ):
                continue
            row.group_key = group_key
            row.amount = record.amount
            row.payload = payload
            row.payload_hash = payload_hash

        session.flush()
