"""Pydantic models for persisted state and the port registry."""
