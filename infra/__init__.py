"""
Publication Approvals — Ambient infrastructure.

Structured logging, bounded retry and configuration loading shared by
the approvals core, the API and the workers.
"""
