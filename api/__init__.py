"""
Publication Approvals — HTTP surface and background workers.

FastAPI server, worker backends (inline / thread / arq) and the arq
worker entry point.
"""
