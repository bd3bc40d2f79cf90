"""Deployment Stack Orchestrator (DSO).

Single-host orchestrator for a small web stack:
 - dependency-ordered start-up from a YAML descriptor
 - health probing and restart policies with backoff
 - one-shot schema migrations, applied exactly once per version
 - TLS certificate issuance and renewal
 - reverse proxy configuration generation
"""
