"""Orchestration service for autonomous software-change agents.

This package coordinates two long-running workflows:
- Pipeline requests: classify a changeset by size tier, fan out quality
  agents concurrently, aggregate their verdicts
- Sessions: drive an issue from plan to merged pull request, reacting to
  CI and review signals through a declarative reaction table

Every lifecycle is guarded by a state machine and every step is published
on the event bus, which keeps an append-only JSONL log per correlation id.
"""

__version__ = "0.4.0"
