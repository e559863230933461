"""
clouddump

Cron-driven, strictly sequential runner for cloud storage syncs and
PostgreSQL dumps, with an e-mailed report per job run.
"""

__version__ = "1.0.0"
