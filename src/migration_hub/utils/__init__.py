"""Shared utilities (structured logging, audit events, hashing)."""
