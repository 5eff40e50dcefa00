"""
batch_engine -- Chunked, fault-tolerant batch processing engine.

Reads ordered records from a paginated source, runs them through a stage
pipeline, accumulates page / group / grand control-break totals, and
persists results in bounded chunk transactions with restart checkpoints.
One parameterized engine serves every job; per-entity behavior lives in
small stage and sink implementations under batch_engine/jobs.

Architecture:
    batch_engine/ is a top-level package on top of batch_kernel.
    Nothing in batch_kernel imports from batch_engine (except
    create_tables, which loads the models for metadata).

Invariants:
    BE-1  Chunk atomicity: sinks + checkpoint commit in one transaction
    BE-2  Strict order-key ordering within and across chunks
    BE-3  Idempotent sinks (upsert by natural key) so chunks can be replayed
    BE-4  Clock injection (no datetime.now() calls)
    BE-5  Retry bound per chunk (max_retry_attempts)
    BE-6  FAILED iff skip_count > skip_limit (or a fatal error)
    BE-7  One running execution per job key
    BE-8  Break totals reconcile: grand == sum(group) == sum(page)
    BE-9  Graceful stop at chunk boundaries; abort rolls back in-flight chunk
    BE-10 Restart resumes after the last committed order key
"""
