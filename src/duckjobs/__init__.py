"""
duckjobs - pipeline and query job orchestration for the data catalog backend.

Subpackages:
- orchestration: DAG resolution, pipeline runs, query job scheduling
- infra: configuration, logging, webhook notifications
"""

__version__ = "0.4.0"
