"""Idempotent command layer.

A write command run through :class:`~newsletter.idempotency.executor.IdempotentExecutor`
with an idempotency key executes at most once per ``(caller, key)`` pair.
Retries receive the saved response byte for byte.
"""
