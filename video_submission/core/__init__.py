"""
Core logic for video submissions.

This module is framework-agnostic - it doesn't import FastAPI, Snowflake,
boto3 or httpx. Storage backends, the record store and the rate-limit
cache arrive through the protocols in ports.py, so the upload lifecycle,
retry and rate limiting can be tested with in-memory collaborators.
"""
