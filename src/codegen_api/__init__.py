"""Code generation orchestration service."""
