"""Durable task queue: store, recovery, processor and handlers.

The queue is a single-process claim -> execute -> commit loop on top of
SQLite. Task rows are the only durable shared state; gateway queues and
rate-limit windows live in process memory and are rebuilt empty on start.
"""
