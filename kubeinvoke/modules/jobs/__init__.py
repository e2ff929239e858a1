"""
Jobs Module - Black Box Interface

Purpose: Turn a Task definition plus kwargs into a Job manifest
Interface: JobBuilder.build(), JobBuilder.matches_provenance()
Hidden: Manifest layout, environment encoding, provenance labels

The container entrypoint reads LAMBDA_HANDLER, LAMBDA_TASK_NAME,
LAMBDA_REQUEST_ID and LAMBDA_KWARGS (a JSON object).
"""

from .builder import KWARGS_ENV, RESERVED_ENV, JobBuilder, encode_kwargs

__all__ = ["JobBuilder", "KWARGS_ENV", "RESERVED_ENV", "encode_kwargs"]
