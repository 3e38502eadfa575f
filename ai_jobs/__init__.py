"""
AI Job Queue

Asynchronous processing of long-running AI computations (grading, explanations,
table-of-contents and class-page generation) with durable queueing, leased
claims, retries with backoff, dead-lettering and pollable job status.
"""

__version__ = "1.0.0"
