"""
Overdue task reminder pipeline.

A scanner publishes one reminder per overdue, incomplete task to Kafka; a
consumer turns each delivery into a notification at most once per dedup
window, despite at-least-once delivery.

Run with:
    python -m reminder_pipeline [--worker scanner|consumer|all]
"""

__version__ = "0.1.0"
